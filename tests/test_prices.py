import unittest

from chaindata.models import NativeToken, OrmlToken, TokenBase
from chaindata.prices import update_token_rates

from fakes import FakeFeeds, TempStore, make_context

STALE = {"usd": 1.0, "eur": 1.0}


class TokenRatesTests(unittest.IsolatedAsyncioTestCase):
    async def test_rates_are_refreshed_or_cleared(self) -> None:
        feeds = FakeFeeds(prices={"polkadot": {"usd": 5.21}, "westend": {"usd": 9.99}})
        async with TempStore() as store:
            await store.save([
                NativeToken(id="polkadot-native-dot", coingecko_id="polkadot", rates=STALE),
                NativeToken(id="westend-native-wnd", coingecko_id="westend", is_testnet=True, rates=STALE),
                OrmlToken(id="acala-orml-ausd", coingecko_id="ghost", rates=STALE),
                OrmlToken(id="acala-orml-lp", rates=STALE),
            ])

            await update_token_rates(make_context(store, feeds))
            rates = {token.id: token.rates for token in await store.find(TokenBase)}

        self.assertEqual(feeds.price_requests, [["ghost", "polkadot"]])
        self.assertEqual(rates, {
            "polkadot-native-dot": {"usd": 5.21, "eur": None},
            "westend-native-wnd": None,
            "acala-orml-ausd": None,
            "acala-orml-lp": None,
        })

    async def test_no_price_feed_ids_means_no_request(self) -> None:
        feeds = FakeFeeds()
        async with TempStore() as store:
            await store.save(NativeToken(id="westend-native-wnd", coingecko_id="westend", is_testnet=True))
            await update_token_rates(make_context(store, feeds))
        self.assertEqual(feeds.price_requests, [])
