import asyncio
import unittest
from unittest.mock import MagicMock, patch

import requests

from chaindata.models import EthereumRpc, SubstrateRpc
from chaindata.rpc import RpcError, RpcProbe

from fakes import make_settings

CHAIN_IDS = {
    "https://eth-a.example": "0x1",
    "https://eth-b.example": "0x1",
    "https://bsc.example": "0x38",
}


def fake_post(url, json=None, headers=None, timeout=None):
    if url == "https://down.example":
        raise requests.ConnectionError("connection refused")
    response = MagicMock(status_code=200)
    if url == "https://forbidden.example":
        response.status_code = 403
    response.json.return_value = {"jsonrpc": "2.0", "id": 1, "result": CHAIN_IDS.get(url)}
    return response


class StubClient:
    """Websocket client stand-in; url decides how it behaves."""

    closed = []

    def __init__(self, url, origin=None):
        self.url = url
        self.origin = origin

    async def send_batch(self, calls):
        if "down" in self.url:
            raise RpcError("connection closed")
        if "slow" in self.url:
            await asyncio.sleep(10)
        return ["0x91b171bb158e2d3848fa23a9f1c25182fb8e20313b2c1eb49219da7a70ce90c3"]

    async def close(self):
        if "closefail" in self.url:
            raise OSError("socket already closed")
        StubClient.closed.append(self.url)


class StubProbe(RpcProbe):
    client_class = StubClient


@patch("chaindata.rpc.requests.post", side_effect=fake_post)
class EvmProbeTests(unittest.IsolatedAsyncioTestCase):
    async def test_chain_id_is_reported_as_decimal(self, post) -> None:
        probe = RpcProbe(make_settings())
        self.assertEqual(await probe.probe_ethereum_rpc("https://bsc.example"), "56")

        _, kwargs = post.call_args
        self.assertEqual(kwargs["json"]["method"], "eth_chainId")
        self.assertEqual(kwargs["headers"]["Origin"], probe.settings.rpc_origin)

    async def test_unhealthy_endpoints_report_no_id(self, post) -> None:
        probe = RpcProbe(make_settings())
        self.assertIsNone(await probe.probe_ethereum_rpc("https://down.example"))
        self.assertIsNone(await probe.probe_ethereum_rpc("https://forbidden.example"))

    async def test_first_responsive_rpc_decides_the_network_id(self, post) -> None:
        probe = RpcProbe(make_settings())
        rpcs = [EthereumRpc(url=url) for url in (
            "https://down.example", "https://eth-a.example", "https://bsc.example", "https://eth-b.example",
        )]

        result = await probe.probe_evm_network(rpcs, "Ethereum")

        self.assertEqual(result.evm_network_id, "1")
        self.assertEqual([rpc.is_healthy for rpc in result.rpcs], [False, True, False, True])
        self.assertTrue(result.is_healthy)

    async def test_no_responsive_rpc_means_no_id(self, post) -> None:
        probe = RpcProbe(make_settings())
        result = await probe.probe_evm_network([EthereumRpc(url="https://down.example")], "Ethereum")
        self.assertIsNone(result.evm_network_id)
        self.assertFalse(result.is_healthy)


class SubstrateProbeTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        StubClient.closed = []

    async def test_probe_chain_marks_each_rpc(self) -> None:
        probe = StubProbe(make_settings(chain_rpc_timeout=0.05))
        rpcs = [SubstrateRpc(url=url, is_healthy=True) for url in (
            "wss://up.example", "wss://down.example", "wss://slow.example",
        )]

        probed = await probe.probe_chain(rpcs, "polkadot")

        self.assertEqual([(rpc.url, rpc.is_healthy) for rpc in probed], [
            ("wss://up.example", True),
            ("wss://down.example", False),
            ("wss://slow.example", False),
        ])
        self.assertEqual(sorted(StubClient.closed), ["wss://down.example", "wss://slow.example", "wss://up.example"])

    async def test_teardown_errors_do_not_change_health(self) -> None:
        probe = StubProbe(make_settings())
        self.assertTrue(await probe.probe_substrate_rpc("wss://closefail.example", "polkadot"))
