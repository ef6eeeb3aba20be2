"""Liveness probes for chain-native (websocket) and ethereum (https) rpc endpoints."""

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import requests
from web3 import Web3
from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from chaindata.config import Settings
from chaindata.models import EthereumRpc, SubstrateRpc

logger = logging.getLogger(__name__)

RpcCall = Tuple[str, Sequence[Any]]


class RpcError(Exception):
    """An rpc endpoint returned an error or closed the connection mid-request."""


# Failures that make a single endpoint unhealthy for this run
ENDPOINT_ERRORS = (RpcError, WebSocketException, OSError, asyncio.TimeoutError, ValueError)


class SubstrateRpcClient:
    """
    Minimal json-rpc client over a single websocket connection.

    All calls of one batch are issued on the same connection and matched
    back to their responses by request id.
    """

    _ids = itertools.count(1)

    def __init__(self, url: str, origin: Optional[str] = None):
        self.url = url
        self.origin = origin
        self._ws = None

    async def connect(self):
        # runtime metadata responses are several megabytes
        self._ws = await connect(self.url, origin=self.origin, max_size=None, open_timeout=None)

    async def close(self):
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

    async def send_batch(self, calls: Sequence[RpcCall]) -> List[Any]:
        """Send every call, then wait for all of their results (in call order)."""
        if self._ws is None:
            await self.connect()

        pending = {}
        for method, params in calls:
            request_id = next(self._ids)
            pending[request_id] = len(pending)
            await self._ws.send(
                json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": list(params)})
            )

        results: List[Any] = [None] * len(pending)
        while pending:
            message = json.loads(await self._ws.recv())
            index = pending.pop(message.get("id"), None)
            if index is None:
                # subscription notifications and stray responses
                continue
            if "error" in message:
                raise RpcError(f"{self.url} rejected request: {message['error']}")
            results[index] = message.get("result")
        return results


async def send_with_timeout(client: SubstrateRpcClient, calls: Sequence[RpcCall], timeout: float) -> List[Any]:
    """Send a batch, treating anything slower than `timeout` seconds as a failure."""
    return await asyncio.wait_for(client.send_batch(calls), timeout)


async def disconnect(client: SubstrateRpcClient):
    """Tear down a client; teardown errors are logged and never propagated."""
    try:
        await client.close()
    except Exception as e:
        logger.error(f"Disconnect error {client.url}: {e!r}")


@dataclass
class EvmProbeResult:
    """Endpoint health for one evm network plus its canonical chain id."""
    rpcs: List[EthereumRpc]
    evm_network_id: Optional[str]

    @property
    def is_healthy(self) -> bool:
        return any(rpc.is_healthy for rpc in self.rpcs)


class RpcProbe:
    """Determines per-endpoint liveness of chain and evm network rpcs."""

    client_class = SubstrateRpcClient

    def __init__(self, settings: Settings):
        self.settings = settings

    def client(self, url: str) -> SubstrateRpcClient:
        return self.client_class(url, origin=self.settings.rpc_origin)

    async def probe_substrate_rpc(self, url: str, label: str = "") -> bool:
        """Healthy iff the endpoint returns the genesis hash before the timeout."""
        client = self.client(url)
        try:
            await send_with_timeout(client, [("chain_getBlockHash", [0])], self.settings.chain_rpc_timeout)
            return True
        except ENDPOINT_ERRORS as e:
            # rpcs which reject our Origin header end up here too
            logger.warning(f"[Chain {label}] rpc {url} is down: {e!r}")
            return False
        finally:
            await disconnect(client)

    async def probe_chain(self, rpcs: Sequence[SubstrateRpc], label: str = "") -> List[SubstrateRpc]:
        """Probe every chain rpc in parallel."""
        health = await asyncio.gather(*[self.probe_substrate_rpc(rpc.url, label) for rpc in rpcs])
        return [SubstrateRpc(url=rpc.url, is_healthy=healthy) for rpc, healthy in zip(rpcs, health)]

    def _post_chain_id(self, url: str) -> requests.Response:
        return requests.post(
            url,
            json={"method": "eth_chainId", "params": [], "id": 1, "jsonrpc": "2.0"},
            headers={"Content-Type": "application/json", "Origin": self.settings.rpc_origin},
            timeout=self.settings.evm_rpc_timeout,
        )

    async def probe_ethereum_rpc(self, url: str, label: str = "") -> Optional[str]:
        """
        Query an ethereum rpc for its chain id.

        Returns:
            The chain id as a decimal string, or None if the endpoint is unhealthy
        """
        try:
            response = await asyncio.to_thread(self._post_chain_id, url)
            if response.status_code != 200:
                raise RpcError(f"Non-200 response status ({response.status_code}) from ethereum rpc")
            result = response.json()["result"]
            return str(Web3.to_int(hexstr=result))
        except (requests.RequestException, RpcError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"[EvmNetwork {label}] rpc {url} is down: {e!r}")
            return None

    async def probe_evm_network(self, rpcs: Sequence[EthereumRpc], label: str = "") -> EvmProbeResult:
        """
        Probe every rpc of an evm network in parallel.

        The network's id is the one reported by the first responsive rpc in
        list order. Rpcs reporting any other id are marked unhealthy.
        """
        ids = await asyncio.gather(*[self.probe_ethereum_rpc(rpc.url, label) for rpc in rpcs])
        canonical_id = next((i for i in ids if i is not None), None)
        for rpc, reported in zip(rpcs, ids):
            if reported is not None and reported != canonical_id:
                logger.warning(
                    f"[EvmNetwork {label}] rpc {rpc.url} reports id {reported}, expected {canonical_id}"
                )
        return EvmProbeResult(
            rpcs=[
                EthereumRpc(url=rpc.url, is_healthy=reported is not None and reported == canonical_id)
                for rpc, reported in zip(rpcs, ids)
            ],
            evm_network_id=canonical_id,
        )
