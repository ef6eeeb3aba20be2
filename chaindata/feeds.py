"""HTTP clients for the chaindata config feed and the price feed."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import requests
from pydantic import TypeAdapter, ValidationError

from chaindata.config import Settings
from chaindata.models import ConfigChain, ConfigEvmNetwork, ConfigToken

logger = logging.getLogger(__name__)

_chains_adapter = TypeAdapter(List[ConfigChain])
_evm_networks_adapter = TypeAdapter(List[ConfigEvmNetwork])
_tokens_adapter = TypeAdapter(List[ConfigToken])


class FeedError(Exception):
    """A config or price feed could not be fetched or parsed. Aborts the run."""


@dataclass
class Chaindata:
    """The config feed as fetched for one pipeline run."""
    chains: List[ConfigChain] = field(default_factory=list)
    evm_networks: List[ConfigEvmNetwork] = field(default_factory=list)
    tokens: List[ConfigToken] = field(default_factory=list)


def _get_json(url: str, timeout: float, params: Dict[str, str] = None) -> Any:
    try:
        response = requests.get(url, params=params, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except (requests.RequestException, ValueError) as e:
        raise FeedError(f"Failed to fetch {url}: {e}") from e


async def fetch_json(url: str, timeout: float, params: Dict[str, str] = None) -> Any:
    """GET a json document without blocking the event loop."""
    return await asyncio.to_thread(_get_json, url, timeout, params)


async def fetch_chaindata(settings: Settings) -> Chaindata:
    """
    Fetch chains, testnet chains, evm networks and tokens from the config feed.

    Raises:
        FeedError: if any document is unreachable or malformed
    """
    urls = [
        settings.feed_url(settings.chains_document),
        settings.feed_url(settings.testnet_chains_document),
        settings.feed_url(settings.evm_networks_document),
        settings.feed_url(settings.tokens_document),
    ]
    chains, testnet_chains, evm_networks, tokens = await asyncio.gather(
        *[fetch_json(url, settings.feed_timeout) for url in urls]
    )

    try:
        chaindata = Chaindata(
            chains=_chains_adapter.validate_python(chains)
            + [chain.model_copy(update={"is_testnet": True}) for chain in _chains_adapter.validate_python(testnet_chains)],
            evm_networks=_evm_networks_adapter.validate_python(evm_networks),
            tokens=_tokens_adapter.validate_python(tokens),
        )
    except ValidationError as e:
        raise FeedError(f"Malformed chaindata feed: {e}") from e

    logger.info(
        f"Fetched chaindata: {len(chaindata.chains)} chains, "
        f"{len(chaindata.evm_networks)} evm networks, {len(chaindata.tokens)} tokens"
    )
    return chaindata


async def fetch_token_prices(
    settings: Settings, coingecko_ids: Sequence[str], currencies: Sequence[str]
) -> Dict[str, Dict[str, float]]:
    """
    Fetch quotes for a batch of price-feed ids in one request.

    Returns:
        Mapping of price-feed id to {currency: price}

    Raises:
        FeedError: if the price feed is unreachable or malformed
    """
    url = f"{settings.coingecko_api_url.rstrip('/')}/simple/price"
    params = {"ids": ",".join(coingecko_ids), "vs_currencies": ",".join(currencies)}
    prices = await fetch_json(url, settings.feed_timeout, params)
    if not isinstance(prices, dict):
        raise FeedError(f"Malformed price feed response: {prices!r}")
    return prices
