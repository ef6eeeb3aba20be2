"""Price quote refresh for non-testnet tokens."""

import logging
from typing import TYPE_CHECKING, List

from chaindata.models import TokenBase

if TYPE_CHECKING:
    from chaindata.pipeline import PipelineContext

logger = logging.getLogger(__name__)


async def update_token_rates(ctx: "PipelineContext"):
    """
    Refresh every token's quote snapshot from one batched price request.

    Testnet tokens, tokens without a price-feed id and tokens missing from
    the response all end up with no rates, never a stale snapshot.
    """
    currencies = ctx.settings.get_currencies()
    tokens: List[TokenBase] = await ctx.store.find(TokenBase)

    coingecko_ids = sorted({token.coingecko_id for token in tokens if not token.is_testnet and token.coingecko_id})
    prices = await ctx.fetch_token_prices(ctx.settings, coingecko_ids, currencies) if coingecko_ids else {}
    logger.info(f"Fetched prices for {len(prices)} of {len(coingecko_ids)} price-feed ids")

    for token in tokens:
        token.rates = None
        if token.is_testnet or not token.coingecko_id:
            continue

        quote = prices.get(token.coingecko_id)
        if not quote:
            continue
        token.rates = {currency: quote.get(currency) for currency in currencies}

    await ctx.store.save(tokens)
