"""
Valuation Stage - Price heterogeneous-token bids in the unit of account.

For every bid:

    value     = amount * price / 10^decimals
    unitPrice = value / requestedQuantity

Prices are fetched fresh on every call; nothing is cached across settlement
attempts. A bid whose token has no price is valued at 0 (ranked last by
allocation) and logged at WARNING. The unit of account itself is always
priced at exactly 1.

Returns annotated copies; the input bids and their statuses are untouched.
"""

from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional

from pta.core.models import PRICE_CONTEXT, ZERO, Bid
from pta.core.tokens import DEFAULT_DECIMALS
from pta.utils.logger import get_logger
from pta.venues.base import PriceOracle, PriceQuote

logger = get_logger("valuation")

ONE = Decimal(1)


def compute_value(amount: int, price: Decimal, decimals: int) -> Decimal:
    """Unit-of-account value of a raw token amount."""
    scaled = PRICE_CONTEXT.multiply(Decimal(amount), price)
    return PRICE_CONTEXT.divide(scaled, Decimal(10) ** decimals)


def compute_unit_price(value: Decimal, quantity: int) -> Decimal:
    """Value per requested auction-token unit."""
    if quantity <= 0:
        raise ValueError(f"requested quantity must be positive, got {quantity}")
    return PRICE_CONTEXT.divide(value, Decimal(quantity))


def value_bid(bid: Bid, quote: Optional[PriceQuote]) -> Bid:
    """Annotate one bid with price, value and effective unit price."""
    if quote is None:
        logger.warning(f"No price for token {bid.token} (bid {bid.bid_id[:10]}); valuing at 0")
        price, decimals = ZERO, DEFAULT_DECIMALS
    elif quote.price < 0:
        logger.warning(f"Negative price {quote.price} for token {bid.token}; valuing at 0")
        price, decimals = ZERO, quote.decimals
    else:
        price, decimals = quote.price, quote.decimals

    value = compute_value(bid.amount, price, decimals)
    unit_price = compute_unit_price(value, bid.quantity)

    logger.debug(
        f"Bid {bid.bid_id[:10]}: {bid.amount} x {price} / 10^{decimals} = {value} "
        f"-> {unit_price}/unit"
    )
    return replace(
        bid,
        token_price=price,
        token_decimals=decimals,
        value=value,
        effective_unit_price=unit_price,
    )


async def value_bids(
    bids: List[Bid],
    oracle: PriceOracle,
    unit_of_account: Optional[str] = None,
    unit_decimals: int = 6,
) -> List[Bid]:
    """
    Value a batch of bids with one oracle query.

    Args:
        bids: Pending bids of one auction
        oracle: Price source; unknown tokens must simply be absent
        unit_of_account: Token priced at exactly 1 without asking the oracle
        unit_decimals: Decimals of the unit of account

    Returns:
        Annotated copies of `bids`, same order
    """
    if not bids:
        return []

    unit = unit_of_account.lower() if unit_of_account else None
    tokens = sorted({b.token.lower() for b in bids} - {unit})

    quotes: Dict[str, PriceQuote] = {}
    if tokens:
        fetched = await oracle.get_prices(tokens)
        quotes = {token.lower(): quote for token, quote in fetched.items()}
    if unit:
        quotes[unit] = PriceQuote(price=ONE, decimals=unit_decimals)

    valued = [value_bid(bid, quotes.get(bid.token.lower())) for bid in bids]

    unpriced = sum(1 for bid in bids if bid.token.lower() not in quotes)
    logger.info(f"Valued {len(valued)} bids across {len(tokens) + (1 if unit else 0)} tokens ({unpriced} unpriced)")
    return valued
