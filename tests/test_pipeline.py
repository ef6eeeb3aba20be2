import unittest

from chaindata.feeds import Chaindata, FeedError
from chaindata.indexer import TIMESTAMP_NOW_KEY, BlockWatcher
from chaindata.models import (
    Chain,
    ConfigChain,
    ConfigEvmNetwork,
    ConfigToken,
    EvmNetwork,
    RelayRef,
    TokenBase,
)
from chaindata.pipeline import PIPELINE_STEPS, run_pipeline, should_execute

from fakes import FakeExtractor, FakeFeeds, FakeProbe, TempStore, chain_metadata, make_context, make_settings

NOW_MS = 1_700_000_000_000
DAY_MS = 86_400_000
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


def sample_feeds() -> FakeFeeds:
    return FakeFeeds(
        Chaindata(
            chains=[
                ConfigChain(id="polkadot", name="Polkadot", rpcs=["wss://polkadot.example"]),
                ConfigChain(id="acala", name="Acala", para_id=2000, relay=RelayRef(id="polkadot"),
                            rpcs=["wss://acala.example"]),
                ConfigChain(id="westend", name="Westend", is_testnet=True, rpcs=["wss://westend.example"]),
            ],
            evm_networks=[ConfigEvmNetwork(name="Ethereum", rpcs=["https://eth.example"])],
            tokens=[
                ConfigToken(id="polkadot-native-dot", coingecko_id="polkadot"),
                ConfigToken(symbol="USDC", decimals=6, coingecko_id="usd-coin", contract_address=USDC,
                            evm_network_id="1"),
            ],
        ),
        prices={"polkadot": {"usd": 5.0, "eur": 4.5}, "usd-coin": {"usd": 1.0, "eur": 0.9}},
    )


def sample_collaborators(settings):
    probe = FakeProbe(
        settings,
        chain_health={"wss://polkadot.example": True, "wss://acala.example": True, "wss://westend.example": True},
        evm_ids={"https://eth.example": "1"},
    )
    extractor = FakeExtractor({
        "polkadot": chain_metadata(symbols=("DOT",), decimals=(10,)),
        "acala": chain_metadata(symbols=("ACA",), decimals=(12,), derived=(("ACA", 12), ("AUSD", 12))),
        "westend": chain_metadata(symbols=("WND",), decimals=(12,)),
    })
    return probe, extractor


async def snapshot(store):
    return (
        [chain.model_dump() for chain in await store.find(Chain)],
        [network.model_dump() for network in await store.find(EvmNetwork)],
        [token.model_dump() for token in await store.find(TokenBase)],
    )


class RunPipelineTests(unittest.IsolatedAsyncioTestCase):
    async def test_full_run(self) -> None:
        settings = make_settings()
        feeds = sample_feeds()
        probe, extractor = sample_collaborators(settings)
        async with TempStore() as store:
            await run_pipeline(make_context(store, feeds, probe, extractor, settings))

            chains = {chain.id: chain for chain in await store.find(Chain)}
            tokens = {token.id: token for token in await store.find(TokenBase)}
            network = await store.find_one(EvmNetwork, id="1")

        self.assertEqual(chains["acala"].relay_id, "polkadot")
        self.assertTrue(all(chain.is_healthy for chain in chains.values()))
        self.assertEqual([chains[i].sort_index for i in ("polkadot", "acala", "westend")], [1, 2, 3])
        self.assertEqual(network.sort_index, 4)
        self.assertEqual(
            set(tokens),
            {"polkadot-native-dot", "acala-native-aca", "acala-orml-aca", "acala-orml-ausd",
             "westend-native-wnd", "1-native-eth", f"1-erc20-{USDC}"},
        )
        self.assertTrue(tokens["westend-native-wnd"].is_testnet)
        self.assertEqual(tokens["polkadot-native-dot"].rates, {"usd": 5.0, "eur": 4.5})
        self.assertEqual(tokens[f"1-erc20-{USDC}"].rates, {"usd": 1.0, "eur": 0.9})
        self.assertEqual(feeds.price_requests, [["polkadot", "usd-coin"]])

    async def test_second_run_with_identical_inputs_changes_nothing(self) -> None:
        settings = make_settings()
        feeds = sample_feeds()
        probe, extractor = sample_collaborators(settings)
        async with TempStore() as store:
            context = make_context(store, feeds, probe, extractor, settings)
            await run_pipeline(context)
            first = await snapshot(store)
            await run_pipeline(context)
            second = await snapshot(store)

        self.assertEqual(first, second)

    async def test_feed_failure_rolls_back_the_whole_run(self) -> None:
        settings = make_settings()
        feeds = sample_feeds()
        probe, extractor = sample_collaborators(settings)
        async with TempStore() as store:
            context = make_context(store, feeds, probe, extractor, settings)
            await run_pipeline(context)
            before = await snapshot(store)

            feeds.fail = True
            with self.assertRaises(FeedError):
                await run_pipeline(context)

            self.assertEqual(await snapshot(store), before)

    async def test_failure_after_writes_rolls_back_earlier_steps(self) -> None:
        async def price_feed_down(ctx):
            raise FeedError("price feed unreachable")

        settings = make_settings()
        feeds = sample_feeds()
        probe, extractor = sample_collaborators(settings)
        async with TempStore() as store:
            context = make_context(store, feeds, probe, extractor, settings)
            with self.assertRaises(FeedError):
                await run_pipeline(context, steps=[*PIPELINE_STEPS[:-1], price_feed_down])

            self.assertEqual(await store.count(Chain), 0)
            self.assertEqual(await store.count(TokenBase), 0)


class ShouldExecuteTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = make_settings()

    def test_runs_on_multiples_of_the_interval(self) -> None:
        self.assertTrue(should_execute(self.settings, 1000, NOW_MS, now_ms=NOW_MS))
        self.assertFalse(should_execute(self.settings, 1001, NOW_MS, now_ms=NOW_MS))

    def test_skips_stale_blocks(self) -> None:
        self.assertFalse(should_execute(self.settings, 1000, NOW_MS - DAY_MS - 1, now_ms=NOW_MS))
        self.assertTrue(should_execute(self.settings, 1000, NOW_MS - DAY_MS, now_ms=NOW_MS))

    def test_runs_when_a_multiple_was_skipped_over(self) -> None:
        self.assertTrue(should_execute(self.settings, 1002, NOW_MS, now_ms=NOW_MS, previous_height=998))
        self.assertFalse(should_execute(self.settings, 1002, NOW_MS, now_ms=NOW_MS, previous_height=1000))


class BlockWatcherTests(unittest.IsolatedAsyncioTestCase):
    def test_timestamp_storage_key(self) -> None:
        self.assertEqual(TIMESTAMP_NOW_KEY, "0xf0c365c3cf59d671eb72da0e7a4113c49f1f0515f462cdcf84e0f1d6045dfcbb")

    async def test_stale_block_triggers_nothing(self) -> None:
        settings = make_settings()
        feeds = sample_feeds()
        async with TempStore() as store:
            watcher = BlockWatcher(make_context(store, feeds, settings=settings), settings)
            ran = await watcher.on_block(1000, 0)

        self.assertFalse(ran)
        self.assertEqual(feeds.chaindata_requests, 0)
        self.assertIsNone(watcher.status.last_run_succeeded)

    async def test_failed_run_is_recorded(self) -> None:
        settings = make_settings()
        feeds = sample_feeds()
        feeds.fail = True
        async with TempStore() as store:
            watcher = BlockWatcher(make_context(store, feeds, settings=settings), settings)
            await watcher.run_once(1000, NOW_MS)

        self.assertEqual(feeds.chaindata_requests, 1)
        self.assertFalse(watcher.status.last_run_succeeded)
        self.assertEqual(watcher.status.runs_failed, 1)
        self.assertIn("FeedError", watcher.status.last_error)
