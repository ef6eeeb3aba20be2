"""In-process stand-ins for the feeds, rpc endpoints and metadata extraction."""

import os
import tempfile
from typing import Dict, List, Optional

from chaindata.config import Settings
from chaindata.database import EntityStore
from chaindata.feeds import Chaindata, FeedError
from chaindata.metadata import ChainMetadata, DerivedToken
from chaindata.pipeline import PipelineContext
from chaindata.rpc import RpcError, RpcProbe


def make_settings(**overrides) -> Settings:
    values = dict(
        database_path=":memory:",
        chain_rpc_timeout=1.0,
        evm_rpc_timeout=1.0,
        coingecko_currencies="usd,eur",
    )
    values.update(overrides)
    return Settings(**values)


class TempStore:
    """An EntityStore on a throwaway sqlite file."""

    def __init__(self):
        self._dir = tempfile.TemporaryDirectory()
        self.store = EntityStore(os.path.join(self._dir.name, "chaindata.db"))

    async def __aenter__(self) -> EntityStore:
        await self.store.connect()
        return self.store

    async def __aexit__(self, *exc_info):
        await self.store.close()
        self._dir.cleanup()


class FakeProbe(RpcProbe):
    """RpcProbe whose endpoints answer from dictionaries instead of the network."""

    def __init__(self, settings: Settings, chain_health: Dict[str, bool] = None, evm_ids: Dict[str, str] = None):
        super().__init__(settings)
        self.chain_health = chain_health or {}
        self.evm_ids = evm_ids or {}

    async def probe_substrate_rpc(self, url: str, label: str = "") -> bool:
        return self.chain_health.get(url, False)

    async def probe_ethereum_rpc(self, url: str, label: str = "") -> Optional[str]:
        return self.evm_ids.get(url)


class FakeExtractor:
    """Returns canned ChainMetadata per chain id; chains without healthy rpcs fail."""

    def __init__(self, results: Dict[str, ChainMetadata] = None):
        self.results = results or {}
        self.calls: List[str] = []

    async def extract(self, chain_id: str, healthy_urls) -> Optional[ChainMetadata]:
        self.calls.append(chain_id)
        if not healthy_urls:
            return None
        return self.results.get(chain_id)


class FakeFeeds:
    """Serves a fixed Chaindata and price response, recording every request."""

    def __init__(self, chaindata: Chaindata = None, prices: Dict[str, Dict[str, float]] = None):
        self.chaindata = chaindata or Chaindata()
        self.prices = prices or {}
        self.fail = False
        self.chaindata_requests = 0
        self.price_requests: List[List[str]] = []

    async def fetch_chaindata(self, settings: Settings) -> Chaindata:
        self.chaindata_requests += 1
        if self.fail:
            raise FeedError("chaindata feed unreachable")
        return self.chaindata

    async def fetch_token_prices(self, settings: Settings, coingecko_ids, currencies):
        self.price_requests.append(list(coingecko_ids))
        return {key: value for key, value in self.prices.items() if key in coingecko_ids}


class FailingClient:
    """A websocket client whose every batch fails."""

    instances: List["FailingClient"] = []

    def __init__(self, url: str):
        self.url = url
        self.batches = 0
        self.closed = False
        FailingClient.instances.append(self)

    async def send_batch(self, calls):
        self.batches += 1
        raise RpcError(f"{self.url} is down")

    async def close(self):
        self.closed = True


def chain_metadata(symbols=("DOT",), decimals=(10,), derived=(), existential_deposit=10_000_000_000) -> ChainMetadata:
    return ChainMetadata(
        genesis_hash="0x91b171bb158e2d3848fa23a9f1c25182fb8e20313b2c1eb49219da7a70ce90c3",
        chain_name="Polkadot",
        spec_name="polkadot",
        spec_version="9370",
        impl_name="parity-polkadot",
        ss58_prefix=0,
        existential_deposit=existential_deposit,
        tokens_currency_id_index=0 if derived else None,
        native_symbol=symbols[0] if symbols else None,
        native_decimals=decimals[0] if decimals else None,
        derived_tokens=[DerivedToken(symbol=s, decimals=d, state_key=f"0x{i:02x}") for i, (s, d) in enumerate(derived)],
    )


def make_context(store: EntityStore, feeds: FakeFeeds, probe: FakeProbe = None,
                 extractor: FakeExtractor = None, settings: Settings = None) -> PipelineContext:
    settings = settings or make_settings()
    return PipelineContext(
        settings=settings,
        store=store,
        probe=probe or FakeProbe(settings),
        extractor=extractor or FakeExtractor(),
        fetch_chaindata=feeds.fetch_chaindata,
        fetch_token_prices=feeds.fetch_token_prices,
        chaindata=feeds.chaindata,
    )
