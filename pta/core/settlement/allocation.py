"""
Allocation Stage - Pay-as-bid winner selection over a fixed supply.

Algorithm:
1. Rank bids by effective unit price descending. Ties go to the earlier bid
   (created_at ascending), then to the smaller bid id so the order is total.
2. Walk the ranking with remaining = target_allocation. While supply remains
   each bid is filled with min(requested, remaining) and the clearing price
   becomes that bid's unit price; once it is exhausted every later bid loses.
3. Only the bid that exhausts the supply can be partially filled.

Each winner converts only the share of its bid amount that pays for its fill:
conversion_amount = amount * fill // quantity.

The stage is pure: it returns new Bid objects and never touches storage.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import List, Tuple

from pta.core.models import ZERO, Auction, Bid, BidStatus
from pta.utils.logger import get_logger
from pta.utils.validation import validate_allocation_target, validate_bid_values

logger = get_logger("allocation")

LOSING_REASON = "Bid was not high enough to win allocation"
BELOW_RESERVE_REASON = "Bid below reserve price"


class SettlementInputError(ValueError):
    """Malformed settlement input; settlement aborts before any side effect."""


# =============================================================================
# Result
# =============================================================================


@dataclass
class AllocationResult:
    """Partition of valued bids into winners and losers."""
    winners: List[Bid] = field(default_factory=list)
    losers: List[Bid] = field(default_factory=list)
    clearing_price: Decimal = ZERO
    filled_quantity: int = 0
    unsold_supply: int = 0

    @property
    def partial_fills(self) -> List[Bid]:
        return [b for b in self.winners if b.is_partial]


# =============================================================================
# Input Validation
# =============================================================================


def validate_allocation_input(auction: Auction, bids: List[Bid]):
    """
    Reject malformed settlement input.

    Raises:
        SettlementInputError: on a bad target allocation or a bid with a
            negative amount or non-positive requested quantity
    """
    valid, err = validate_allocation_target(auction.target_allocation, auction.total_supply)
    if not valid:
        raise SettlementInputError(f"auction {auction.auction_id}: {err}")
    if auction.reserve_price < 0:
        raise SettlementInputError(f"auction {auction.auction_id}: negative reserve price")

    for bid in bids:
        valid, err = validate_bid_values(bid.amount, bid.quantity)
        if not valid:
            raise SettlementInputError(f"bid {bid.bid_id}: {err}")


# =============================================================================
# Ranking
# =============================================================================


def ranking_key(bid: Bid) -> Tuple[Decimal, int, str]:
    """Sort key: highest unit price first, then earliest, then bid id."""
    price = bid.effective_unit_price if bid.effective_unit_price is not None else ZERO
    return (-price, bid.created_at, bid.bid_id)


def rank_bids(bids: List[Bid]) -> List[Bid]:
    return sorted(bids, key=ranking_key)


def conversion_amount_for(bid: Bid, fill_quantity: int) -> int:
    """Raw bid-token amount that pays for `fill_quantity` at the bid's own price."""
    if fill_quantity >= bid.quantity:
        return bid.amount
    return bid.amount * fill_quantity // bid.quantity


# =============================================================================
# Allocation
# =============================================================================


def allocate(bids: List[Bid], target_allocation: int, reserve_price: Decimal = ZERO) -> AllocationResult:
    """
    Select winners and fill quantities.

    Args:
        bids: Valued bids (effective_unit_price set)
        target_allocation: Auction-token quantity for sale
        reserve_price: Bids priced below this lose outright

    Returns:
        AllocationResult with winners in ranking order
    """
    if isinstance(target_allocation, bool) or not isinstance(target_allocation, int) or target_allocation <= 0:
        raise SettlementInputError(f"target allocation must be a positive integer, got {target_allocation}")

    result = AllocationResult()
    remaining = target_allocation

    for bid in rank_bids(bids):
        price = bid.effective_unit_price if bid.effective_unit_price is not None else ZERO

        if price < reserve_price:
            result.losers.append(replace(
                bid, status=BidStatus.LOSING, fill_quantity=0, conversion_amount=0, error=BELOW_RESERVE_REASON
            ))
            continue

        if remaining <= 0:
            result.losers.append(replace(
                bid, status=BidStatus.LOSING, fill_quantity=0, conversion_amount=0, error=LOSING_REASON
            ))
            continue

        fill = min(bid.quantity, remaining)
        remaining -= fill
        result.clearing_price = price
        result.winners.append(replace(
            bid,
            status=BidStatus.WINNING,
            fill_quantity=fill,
            conversion_amount=conversion_amount_for(bid, fill),
            error=None,
        ))
        logger.debug(f"Winner {bid.bid_id[:10]}: fill {fill}/{bid.quantity} at {price}, remaining {remaining}")

    result.filled_quantity = target_allocation - remaining
    result.unsold_supply = remaining

    logger.info(
        f"Allocation: {len(result.winners)} winners, {len(result.losers)} losers, "
        f"filled {result.filled_quantity}/{target_allocation}, clearing price {result.clearing_price}"
    )
    return result
