"""Sync steps for chains, evm networks and tokens."""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional

from web3 import Web3

from chaindata.metadata import ChainMetadata, DerivedToken
from chaindata.models import (
    Chain,
    ConfigChain,
    ConfigEvmNetwork,
    ConfigToken,
    Erc20Token,
    EthereumRpc,
    EvmNetwork,
    NativeToken,
    OrmlToken,
    SubstrateRpc,
    TokenBase,
    erc20_token_id,
    native_token_id,
    orml_token_id,
    token_anchor,
)
from chaindata.reconciler import reconcile
from chaindata.rpc import EvmProbeResult

if TYPE_CHECKING:
    from chaindata.pipeline import PipelineContext

logger = logging.getLogger(__name__)

DEFAULT_EVM_SYMBOL = "ETH"
DEFAULT_EVM_DECIMALS = 18


#
# chains
#

async def update_chains_from_config(ctx: "PipelineContext"):
    """Create, update and delete chains to match the config feed."""
    store = ctx.store
    incoming = ctx.chaindata.chains
    incoming_ids = {source.id for source in incoming}

    async def upsert(chain: Optional[Chain], source: ConfigChain) -> Chain:
        chain = chain or Chain(id=source.id)

        # the relay must already be persisted and must survive this run
        relay = None
        if source.relay is not None and source.relay.id in incoming_ids:
            relay = await store.find_one(Chain, id=source.relay.id)

        chain.is_testnet = source.is_testnet
        chain.name = source.name
        chain.account = source.account
        chain.subscan_url = source.subscan_url
        chain.rpcs = [SubstrateRpc(url=url) for url in source.rpcs]

        # only set relay and para_id if both exist
        is_parachain = relay is not None and source.para_id is not None
        chain.para_id = source.para_id if is_parachain else None
        chain.relay_id = relay.id if is_parachain else None
        return chain

    result = await reconcile(store, Chain, await store.find(Chain), incoming, lambda source: source.id, upsert)
    logger.info(f"Synced {len(result.kept)} chains, deleted {len(result.deleted)}")


async def update_chain_data(ctx: "PipelineContext"):
    """Probe every chain's rpcs and refresh its runtime data and tokens."""
    chains = await ctx.store.find(Chain)
    semaphore = asyncio.Semaphore(ctx.settings.process_chains_concurrency)

    async def process(index: int, chain: Chain):
        async with semaphore:
            logger.info(f"Updating chain {index + 1} of {len(chains)} ({chain.id})")
            await update_chain(ctx, chain)

    await asyncio.gather(*[process(index, chain) for index, chain in enumerate(chains)])


async def update_chain(ctx: "PipelineContext", chain: Chain):
    store = ctx.store

    # get health status of rpcs
    chain.rpcs = await ctx.probe.probe_chain(chain.rpcs, chain.id)
    healthy_urls = [rpc.url for rpc in chain.rpcs if rpc.is_healthy]
    chain.is_healthy = len(healthy_urls) > 0
    await store.save(chain)

    data = await ctx.extractor.extract(chain.id, healthy_urls)
    if data is None:
        # previously derived tokens are kept, a failed extraction proves nothing
        chain.is_healthy = False
        await store.save(chain)
        return

    await update_orml_tokens(ctx, chain, data)
    native = await update_chain_native_token(ctx, chain, data)

    chain.genesis_hash = data.genesis_hash
    chain.prefix = data.ss58_prefix
    chain.chain_name = data.chain_name
    chain.impl_name = data.impl_name
    chain.spec_name = data.spec_name
    chain.spec_version = data.spec_version
    chain.tokens_currency_id_index = data.tokens_currency_id_index
    chain.native_token_id = native.id if native is not None else None
    await store.save(chain)


async def update_orml_tokens(ctx: "PipelineContext", chain: Chain, data: ChainMetadata):
    """Reconcile a chain's orml tokens against the tokens found in its metadata."""

    def upsert(token: Optional[OrmlToken], derived: DerivedToken) -> OrmlToken:
        token = token or OrmlToken(id=orml_token_id(chain.id, derived.symbol))
        token.symbol = derived.symbol
        token.decimals = derived.decimals
        token.state_key = derived.state_key
        token.chain_id = chain.id
        return token

    await reconcile(
        ctx.store,
        OrmlToken,
        await ctx.store.find(OrmlToken, chain_id=chain.id),
        data.derived_tokens,
        lambda derived: orml_token_id(chain.id, derived.symbol),
        upsert,
    )


async def update_chain_native_token(ctx: "PipelineContext", chain: Chain, data: ChainMetadata) -> Optional[NativeToken]:
    def upsert(token: Optional[NativeToken], data: ChainMetadata) -> NativeToken:
        token = token or NativeToken(id=native_token_id(chain.id, data.native_symbol))
        token.symbol = data.native_symbol
        token.decimals = data.native_decimals
        token.existential_deposit = data.existential_deposit
        token.chain_id = chain.id
        return token

    result = await reconcile(
        ctx.store,
        NativeToken,
        await ctx.store.find(NativeToken, chain_id=chain.id),
        [data] if data.native_symbol is not None else [],
        lambda data: native_token_id(chain.id, data.native_symbol),
        upsert,
    )
    return result.kept[0] if result.kept else None


#
# evm networks
#

@dataclass
class EvmNetworkCandidate:
    """A config-feed evm network, its resolved chain (if linked) and its probe outcome."""
    source: ConfigEvmNetwork
    chain: Optional[Chain]
    previous: Optional[EvmNetwork]
    probe: Optional[EvmProbeResult] = None

    @property
    def label(self) -> str:
        return self.source.name or self.source.substrate_chain_id or "unnamed"


async def _evm_network_candidates(ctx: "PipelineContext") -> List[EvmNetworkCandidate]:
    store = ctx.store
    candidates = []
    for source in ctx.chaindata.evm_networks:
        if source.is_linked:
            chain = await store.find_one(Chain, id=source.substrate_chain_id)
            if chain is None:
                continue
            previous = await store.find_one(EvmNetwork, substrate_chain_id=chain.id)
            candidates.append(EvmNetworkCandidate(source=source, chain=chain, previous=previous))
        elif source.is_standalone:
            previous = await store.find_one(EvmNetwork, name=source.name, substrate_chain_id=None)
            candidates.append(EvmNetworkCandidate(source=source, chain=None, previous=previous))
        else:
            logger.warning(f"Ignoring evm network with neither a name nor a substrate chain: {source!r}")
    return candidates


async def update_evm_networks_from_config(ctx: "PipelineContext"):
    """Probe config-feed evm networks and reconcile them by their reported chain id."""
    store = ctx.store
    candidates = await _evm_network_candidates(ctx)

    probes = await asyncio.gather(
        *[
            ctx.probe.probe_evm_network([EthereumRpc(url=url) for url in c.source.rpcs], c.label)
            for c in candidates
        ]
    )
    for candidate, probe in zip(candidates, probes):
        candidate.probe = probe
        if probe.evm_network_id is None:
            logger.warning(f"[EvmNetwork {candidate.label}] no healthy rpcs, keeping previous id")
            if candidate.previous is not None:
                # id and relations stay as persisted, health is always this run's
                candidate.previous.rpcs = probe.rpcs
                candidate.previous.is_healthy = False
                await store.save(candidate.previous)

    async def upsert(network: Optional[EvmNetwork], candidate: EvmNetworkCandidate) -> EvmNetwork:
        source, chain, probe = candidate.source, candidate.chain, candidate.probe
        network = network or EvmNetwork(id=probe.evm_network_id)
        network.explorer_url = source.explorer_url
        network.rpcs = probe.rpcs
        network.is_healthy = probe.is_healthy

        if chain is not None:
            # linked networks take their name, testnet flag and native token from the chain
            network.substrate_chain_id = chain.id
            network.is_testnet = chain.is_testnet
            network.name = chain.name
            network.native_token_id = chain.native_token_id
        else:
            network.substrate_chain_id = None
            network.is_testnet = source.is_testnet
            network.name = source.name
            native = await update_evm_native_token(ctx, network, source)
            network.native_token_id = native.id
        return network

    result = await reconcile(
        store,
        EvmNetwork,
        await store.find(EvmNetwork),
        candidates,
        lambda candidate: candidate.probe.evm_network_id,
        upsert,
        retain=lambda candidate: candidate.previous.id if candidate.previous is not None else None,
    )
    logger.info(
        f"Synced {len(result.kept)} evm networks, skipped {result.skipped}, deleted {len(result.deleted)}"
    )


async def update_evm_native_token(ctx: "PipelineContext", network: EvmNetwork, source: ConfigEvmNetwork) -> NativeToken:
    symbol = source.symbol or DEFAULT_EVM_SYMBOL
    decimals = source.decimals if source.decimals is not None else DEFAULT_EVM_DECIMALS

    def upsert(token: Optional[NativeToken], source: ConfigEvmNetwork) -> NativeToken:
        token = token or NativeToken(id=native_token_id(network.id, symbol))
        token.symbol = symbol
        token.decimals = decimals
        token.evm_network_id = network.id
        return token

    result = await reconcile(
        ctx.store,
        NativeToken,
        await ctx.store.find(NativeToken, evm_network_id=network.id),
        [source],
        lambda source: native_token_id(network.id, symbol),
        upsert,
    )
    return result.kept[0]


#
# tokens
#

async def update_tokens_from_config(ctx: "PipelineContext"):
    """Apply token overrides, reconcile erc20 tokens and prune orphaned tokens."""
    await apply_token_overrides(ctx)
    await update_erc20_tokens(ctx)
    await prune_orphaned_tokens(ctx)


async def apply_token_overrides(ctx: "PipelineContext"):
    """Rename / set the price-feed id of tokens which already exist."""
    for record in filter(lambda token: token.is_override, ctx.chaindata.tokens):
        token = await ctx.store.find_one(TokenBase, id=record.id)
        if token is None:
            continue
        if record.symbol:
            token.symbol = record.symbol
        if record.coingecko_id:
            token.coingecko_id = record.coingecko_id
        await ctx.store.save(token)


async def update_erc20_tokens(ctx: "PipelineContext"):
    """Reconcile erc20 tokens against the config feed's contract token records."""
    store = ctx.store

    async def upsert(token: Optional[Erc20Token], record: ConfigToken) -> Optional[Erc20Token]:
        if not Web3.is_address(record.contract_address.lower()):
            logger.warning(f"Dropping erc20 token with invalid contract address {record.contract_address}")
            return None
        evm_network = await store.find_one(EvmNetwork, id=record.evm_network_id)
        if evm_network is None:
            return None

        token = token or Erc20Token(id=erc20_token_id(evm_network.id, record.contract_address))
        token.symbol = record.symbol
        token.decimals = record.decimals
        token.coingecko_id = record.coingecko_id
        token.contract_address = record.contract_address
        token.evm_network_id = evm_network.id
        return token

    result = await reconcile(
        store,
        Erc20Token,
        await store.find(Erc20Token),
        [record for record in ctx.chaindata.tokens if record.is_erc20],
        lambda record: erc20_token_id(record.evm_network_id, record.contract_address),
        upsert,
    )
    logger.info(
        f"Synced {len(result.kept)} erc20 tokens, dropped {result.dropped}, deleted {len(result.deleted)}"
    )


async def prune_orphaned_tokens(ctx: "PipelineContext"):
    """Delete tokens whose anchor is gone, and native tokens their anchor no longer uses."""
    store = ctx.store
    anchors: Dict[str, Dict[str, object]] = {
        "chain": {chain.id: chain for chain in await store.find(Chain)},
        "evm_network": {network.id: network for network in await store.find(EvmNetwork)},
    }

    orphans = []
    for token in await store.find(TokenBase):
        chain_id, evm_network_id = token_anchor(token)
        if chain_id is not None:
            anchor = anchors["chain"].get(chain_id)
        elif evm_network_id is not None:
            anchor = anchors["evm_network"].get(evm_network_id)
        else:
            anchor = None

        if anchor is None:
            orphans.append(token.id)
        elif token.type == "native" and anchor.native_token_id != token.id:
            orphans.append(token.id)

    await store.delete(TokenBase, orphans)
    if orphans:
        logger.info(f"Deleted {len(orphans)} orphaned tokens: {', '.join(orphans)}")
