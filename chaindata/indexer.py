"""Block watcher: derives pipeline runs from the relay chain's block stream."""

import asyncio
import logging
import time
import traceback
from typing import Optional, Tuple

import xxhash
from prometheus_client import Counter, Histogram

from chaindata.config import Settings, get_settings
from chaindata.metadata import decode_le_int
from chaindata.models import PipelineStatus
from chaindata.pipeline import PipelineContext, run_pipeline, should_execute
from chaindata.rpc import ENDPOINT_ERRORS, SubstrateRpcClient, disconnect, send_with_timeout

logger = logging.getLogger(__name__)

PIPELINE_RUNS = Counter(
    'chaindata_pipeline_runs_total',
    'Pipeline runs',
    ['outcome']
)
PIPELINE_DURATION = Histogram(
    'chaindata_pipeline_duration_seconds',
    'Pipeline run duration'
)


def twox128(data: bytes) -> bytes:
    return b"".join(xxhash.xxh64(data, seed=seed).intdigest().to_bytes(8, "little") for seed in (0, 1))


# Storage key of Timestamp::Now (milliseconds since epoch, u64)
TIMESTAMP_NOW_KEY = "0x" + (twox128(b"Timestamp") + twox128(b"Now")).hex()


class BlockWatcher:
    """Polls the relay chain head and runs the pipeline every n blocks."""

    def __init__(self, context: PipelineContext, settings: Optional[Settings] = None):
        self.context = context
        self.settings = settings or get_settings()
        self.status = PipelineStatus()
        self._client: Optional[SubstrateRpcClient] = None
        self._last_height: Optional[int] = None
        self._stop_requested = False

    def stop(self):
        """Request the watcher to stop."""
        self._stop_requested = True

    async def _fetch_head(self) -> Tuple[int, int]:
        if self._client is None:
            self._client = SubstrateRpcClient(self.settings.relay_rpc_url, origin=self.settings.rpc_origin)
        timeout = self.settings.chain_rpc_timeout
        header, = await send_with_timeout(self._client, [("chain_getHeader", [])], timeout)
        block_hash, = await send_with_timeout(self._client, [("chain_getBlockHash", [header["number"]])], timeout)
        timestamp, = await send_with_timeout(
            self._client, [("state_getStorage", [TIMESTAMP_NOW_KEY, block_hash])], timeout
        )
        return int(header["number"], 16), decode_le_int(timestamp)

    async def get_current_block(self) -> Tuple[int, int]:
        """Get the relay chain head (height, timestamp in ms) with retry."""
        for attempt in range(5):
            try:
                return await self._fetch_head()
            except ENDPOINT_ERRORS + (KeyError, TypeError) as e:
                if self._client is not None:
                    await disconnect(self._client)
                    self._client = None
                if attempt < 4:
                    wait_time = min(30, 2 ** attempt)
                    logger.warning(f"Retrying get_current_block after error, attempt {attempt + 1}: {e!r}")
                    await asyncio.sleep(wait_time)
                else:
                    raise

    async def on_block(self, block_height: int, block_timestamp: int) -> bool:
        """Run the pipeline if this block is due. Returns whether it ran."""
        previous, self._last_height = self._last_height, block_height
        if not should_execute(self.settings, block_height, block_timestamp, previous_height=previous):
            return False

        logger.debug(
            f"Executing on block {block_height}: block is recent and a multiple of "
            f"{self.settings.num_blocks_per_execution}"
        )
        await self.run_once(block_height, block_timestamp)
        return True

    async def run_once(self, block_height: int, block_timestamp: int):
        """Run the pipeline once, recording its outcome. Failures are logged, not raised."""
        self.status.last_block_height = block_height
        self.status.last_block_timestamp = block_timestamp
        self.status.last_run_started_at = time.time()
        try:
            with PIPELINE_DURATION.time():
                await run_pipeline(self.context)
        except Exception as e:
            self.status.last_run_succeeded = False
            self.status.last_error = repr(e)
            self.status.runs_failed += 1
            PIPELINE_RUNS.labels(outcome="failed").inc()
            logger.error(f"Pipeline run on block {block_height} failed: {e!r}")
            logger.error(f"Full traceback:\n{traceback.format_exc()}")
        else:
            self.status.last_run_succeeded = True
            self.status.last_error = None
            self.status.runs_completed += 1
            PIPELINE_RUNS.labels(outcome="succeeded").inc()
            logger.info(f"Pipeline run on block {block_height} complete")
        finally:
            self.status.last_run_duration = time.time() - self.status.last_run_started_at

    async def watch(self):
        """
        Main loop - polls for new blocks until stopped.
        """
        self._stop_requested = False
        try:
            while not self._stop_requested:
                try:
                    height, timestamp = await self.get_current_block()
                except ENDPOINT_ERRORS + (KeyError, TypeError) as e:
                    logger.error(f"Relay chain unreachable: {e!r}")
                else:
                    if height != self._last_height:
                        await self.on_block(height, timestamp)

                await asyncio.sleep(self.settings.poll_interval)
        finally:
            if self._client is not None:
                await disconnect(self._client)
                self._client = None
