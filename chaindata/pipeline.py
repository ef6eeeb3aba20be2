"""The reconciliation pipeline: ordered steps sharing one explicit context."""

import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from chaindata import feeds
from chaindata.config import Settings
from chaindata.database import EntityStore
from chaindata.derived import sort_chains_and_networks, update_sort_indexes, update_tokens_testnet_field
from chaindata.feeds import Chaindata
from chaindata.metadata import ChainMetadataExtractor
from chaindata.prices import update_token_rates
from chaindata.rpc import RpcProbe
from chaindata.sync import (
    update_chain_data,
    update_chains_from_config,
    update_evm_networks_from_config,
    update_tokens_from_config,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """
    Collaborators and shared state for one pipeline run.

    `chaindata` is filled in by the first step and only read afterwards.
    """
    settings: Settings
    store: EntityStore
    probe: RpcProbe
    extractor: ChainMetadataExtractor
    fetch_chaindata: Callable[[Settings], Awaitable[Chaindata]] = feeds.fetch_chaindata
    fetch_token_prices: Callable[..., Awaitable[dict]] = feeds.fetch_token_prices
    sort: Callable = sort_chains_and_networks
    chaindata: Chaindata = field(default_factory=Chaindata)


def create_context(settings: Settings, store: EntityStore) -> PipelineContext:
    """Build a context wired to the real rpc, feed and decoder implementations."""
    probe = RpcProbe(settings)
    extractor = ChainMetadataExtractor(
        client_factory=probe.client,
        timeout=settings.chain_rpc_timeout,
        overrides=settings.get_token_overrides(),
    )
    return PipelineContext(settings=settings, store=store, probe=probe, extractor=extractor)


async def fetch_data_from_config(ctx: PipelineContext):
    ctx.chaindata = await ctx.fetch_chaindata(ctx.settings)


PipelineStep = Callable[[PipelineContext], Awaitable[None]]

PIPELINE_STEPS: List[PipelineStep] = [
    fetch_data_from_config,
    update_chains_from_config,
    update_chain_data,
    update_evm_networks_from_config,
    update_sort_indexes,
    update_tokens_from_config,
    update_tokens_testnet_field,
    update_token_rates,
]


def should_execute(
    settings: Settings,
    block_height: int,
    block_timestamp: int,
    now_ms: Optional[int] = None,
    previous_height: Optional[int] = None,
) -> bool:
    """
    Decide whether a block triggers a pipeline run.

    A block triggers a run when its height is a multiple of
    num_blocks_per_execution (or, when the previous height seen is given,
    when a multiple was crossed since then) and it is not older than
    skip_blocks_older_than_ms.
    """
    every = settings.num_blocks_per_execution
    if previous_height is None:
        due = block_height % every == 0
    else:
        due = block_height // every > previous_height // every
    if not due:
        return False

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if now_ms - block_timestamp > settings.skip_blocks_older_than_ms:
        logger.debug(f"Skipping block {block_height}: older than {settings.skip_blocks_older_than_ms}ms")
        return False
    return True


async def run_pipeline(ctx: PipelineContext, steps: Optional[List[PipelineStep]] = None):
    """
    Run every step in order inside one store transaction.

    Any exception (e.g. an unreachable feed) rolls back the whole run.
    """
    steps = PIPELINE_STEPS if steps is None else steps
    async with ctx.store.transaction():
        for index, step in enumerate(steps):
            logger.info(f"Executing step {index + 1}: {step.__name__.replace('_', ' ').capitalize()}")
            await step(ctx)
