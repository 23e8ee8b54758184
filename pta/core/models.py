"""
Auction data model for PTA.

Auctions, bids and settlement results as persisted by the storage layer and
passed between the settlement stages.

Numeric conventions:
- Raw token amounts and auction-token quantities are ints in native precision.
- Prices, values and effective unit prices are Decimals in whole units of the
  unit of account, computed under PRICE_CONTEXT so the same inputs always give
  the same digits.
"""

import time
from dataclasses import asdict, dataclass, field
from decimal import Context, Decimal, ROUND_FLOOR
from enum import Enum
from typing import Optional

from pta.core.permit import Permit

# 60 significant digits covers uint256 amounts scaled by 10^18
PRICE_CONTEXT = Context(prec=60, rounding=ROUND_FLOOR)

ZERO = Decimal(0)


def now_ms() -> int:
    """Current unix time in milliseconds (bid creation timestamps)."""
    return int(time.time() * 1000)


def to_decimal(value) -> Optional[Decimal]:
    """Parse a persisted decimal string; None passes through."""
    if value is None:
        return None
    return Decimal(str(value))


def decimal_str(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(value)


# =============================================================================
# Enums
# =============================================================================


class AuctionStatus(str, Enum):
    """Settlement status of an auction."""
    OPEN = "open"           # Accepting bids / not yet settled
    SETTLING = "settling"   # Settlement lock held
    SETTLED = "settled"     # Result persisted


class SettlementStage(str, Enum):
    """Last settlement checkpoint completed for an auction."""
    NONE = "none"
    ALLOCATED = "allocated"
    CONVERTED = "converted"
    DISTRIBUTED = "distributed"


class BidStatus(str, Enum):
    """Lifecycle of a bid through settlement."""
    PENDING = "pending"
    WINNING = "winning"
    LOSING = "losing"                        # Terminal, no on-chain action
    CONVERTING = "converting"                # Conversion in flight
    EXECUTED = "executed"                    # Funds realized, awaiting distribution
    FAILED = "failed"                        # Conversion failed, terminal
    DISTRIBUTING = "distributing"            # Distribution in flight
    DISTRIBUTED = "distributed"              # Auction tokens sent
    DISTRIBUTION_FAILED = "distribution_failed"  # Funds realized, tokens not sent


# Statuses of bids whose funds were realized by conversion
CONVERTED_STATUSES = (
    BidStatus.EXECUTED,
    BidStatus.DISTRIBUTING,
    BidStatus.DISTRIBUTED,
    BidStatus.DISTRIBUTION_FAILED,
)

# Statuses of bids that were allocated supply
WINNER_STATUSES = (
    BidStatus.WINNING,
    BidStatus.CONVERTING,
    BidStatus.FAILED,
) + CONVERTED_STATUSES


# =============================================================================
# Auction
# =============================================================================


@dataclass
class Auction:
    """
    One token sale.

    Attributes:
        auction_id: Unique identifier
        auction_token: Address of the token being sold
        total_supply: Total auction-token supply (native units)
        target_allocation: Quantity being sold (<= total_supply)
        end_time: Unix timestamp (seconds) after which settlement may run
        status: open | settling | settled
        settlement_stage: Last completed settlement checkpoint
        clearing_price: Lowest winning effective unit price (set once allocated)
        conversion_strategy: Name of the conversion strategy for non-unit bids
        reserve_price: Minimum effective unit price that can win (0 admits every bid)
    """
    auction_id: str
    auction_token: str
    total_supply: int
    target_allocation: int
    end_time: int
    status: AuctionStatus = AuctionStatus.OPEN
    settlement_stage: SettlementStage = SettlementStage.NONE
    clearing_price: Optional[Decimal] = None
    conversion_strategy: str = "swap"
    reserve_price: Decimal = ZERO
    created_at: int = field(default_factory=lambda: int(time.time()))

    def has_ended(self, now: Optional[int] = None) -> bool:
        current = int(time.time()) if now is None else now
        return current >= self.end_time


# =============================================================================
# Bid
# =============================================================================


@dataclass
class Bid:
    """
    One bidder's offer, plus everything settlement records on it.

    Valuation fields (token_price, value, effective_unit_price) are recomputed
    on every settlement attempt and only persisted alongside the allocation.
    """
    bid_id: str
    auction_id: str
    bidder: str
    token: str
    amount: int                 # Raw bid-token amount
    quantity: int               # Requested auction-token quantity
    created_at: int = field(default_factory=now_ms)
    permit: Optional[Permit] = None
    status: BidStatus = BidStatus.PENDING

    # Valuation
    token_price: Optional[Decimal] = None
    token_decimals: Optional[int] = None
    value: Optional[Decimal] = None
    effective_unit_price: Optional[Decimal] = None

    # Allocation
    fill_quantity: int = 0
    conversion_amount: int = 0  # Raw bid-token amount converted for the fill

    # Conversion
    conversion_method: Optional[str] = None
    realized_amount: int = 0    # Raw unit-of-account amount received
    realized_value: Optional[Decimal] = None
    order_ref: Optional[str] = None
    tx_ref: Optional[str] = None

    # Distribution
    tokens_distributed: int = 0
    distribution_tx_ref: Optional[str] = None

    error: Optional[str] = None
    needs_reconciliation: bool = False

    @property
    def is_partial(self) -> bool:
        return 0 < self.fill_quantity < self.quantity

    def __repr__(self) -> str:
        return (
            f"Bid(id={self.bid_id[:10]}, bidder={self.bidder[:10]}, "
            f"qty={self.quantity}, status={self.status.value})"
        )


# =============================================================================
# Settlement Result
# =============================================================================


@dataclass(frozen=True)
class SettlementResult:
    """
    Per-auction aggregate of one settlement run. Immutable once created.

    clearing_price is the effective unit price of the last bid that received
    any fill. total_raised sums realized value across converted winners.
    """
    auction_id: str
    clearing_price: Decimal
    total_raised: Decimal
    total_bids: int
    winning_bids: int
    losing_bids: int
    executed_bids: int
    failed_bids: int
    distributed_bids: int = 0
    distribution_failed_bids: int = 0
    filled_quantity: int = 0
    unsold_supply: int = 0
    forfeited_quantity: int = 0
    tokens_distributed: int = 0
    settled_at: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["clearing_price"] = str(self.clearing_price)
        data["total_raised"] = str(self.total_raised)
        return data
