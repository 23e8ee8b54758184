"""
Conversion Stage - Realize winning bids into the unit of account.

Only bids in status `winning` are ever handed to a strategy. Each bid moves
winning -> converting -> executed | failed, one atomic store write per step,
so a crash leaves an in-flight bid visibly `converting` instead of silently
eligible for a second conversion.

Strategies:
- DirectTransferStrategy: the bid token already is the unit of account; pull
  the amount through the executor with the bidder's permit.
- SwapVenueStrategy: convert through a swap venue's quote_and_execute.

Bids in the unit of account always use the direct strategy; every other bid
uses the strategy named by the auction. Failures are isolated per bid and
never retried within the run.

The venue order reference is written to the bid as soon as the venue accepts
the order. A failure whose outcome is unknown, such as a timeout, also sets
needs_reconciliation: the order may still fill.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from pta.core.config import SettlementConfig
from pta.core.models import PRICE_CONTEXT, Auction, Bid, BidStatus
from pta.core.storage import StorageManager
from pta.utils.logger import get_logger
from pta.venues.base import OnChainExecutor, OrderCallback, SwapVenue, describe_error, outcome_unknown

logger = get_logger("conversion")

DIRECT_STRATEGY = "direct"


@dataclass(frozen=True)
class ConversionOutcome:
    realized_amount: int    # Raw unit-of-account amount
    tx_ref: str
    order_ref: Optional[str] = None


class ConversionStrategy(Protocol):
    """Turns `amount` of a bid's token into the unit of account."""
    name: str

    async def convert(
        self,
        bid: Bid,
        amount: int,
        unit_of_account: str,
        on_submitted: Optional[OrderCallback] = None,
    ) -> ConversionOutcome:
        ...


class DirectTransferStrategy:
    """Unit-of-account bids: pull funds with the permit, no swap."""

    name = DIRECT_STRATEGY

    def __init__(self, executor: OnChainExecutor):
        self.executor = executor

    async def convert(
        self,
        bid: Bid,
        amount: int,
        unit_of_account: str,
        on_submitted: Optional[OrderCallback] = None,
    ) -> ConversionOutcome:
        receipt = await self.executor.collect(bid.permit, amount)
        return ConversionOutcome(realized_amount=receipt.amount, tx_ref=receipt.tx_ref)


class SwapVenueStrategy:
    """Any other token: authorize, swap, confirm the realized amount."""

    def __init__(self, venue: SwapVenue, name: str = "swap"):
        self.venue = venue
        self.name = name

    async def convert(
        self,
        bid: Bid,
        amount: int,
        unit_of_account: str,
        on_submitted: Optional[OrderCallback] = None,
    ) -> ConversionOutcome:
        receipt = await self.venue.quote_and_execute(
            bid.token, amount, unit_of_account, bid.permit, on_submitted=on_submitted
        )
        return ConversionOutcome(
            realized_amount=receipt.realized_amount,
            tx_ref=receipt.tx_ref,
            order_ref=receipt.order_ref,
        )


class ConversionStage:
    """
    Runs conversions for an auction's winning bids with bounded concurrency.

    Args:
        store: Bid Store
        strategies: name -> strategy; must include DIRECT_STRATEGY
        config: unit of account, executor address, concurrency and timeout
    """

    def __init__(
        self,
        store: StorageManager,
        strategies: Dict[str, ConversionStrategy],
        config: SettlementConfig,
    ):
        if DIRECT_STRATEGY not in strategies:
            raise ValueError(f"strategies must include '{DIRECT_STRATEGY}'")
        self.store = store
        self.strategies = strategies
        self.config = config

    def select_strategy(self, auction: Auction, bid: Bid) -> ConversionStrategy:
        if bid.token.lower() == self.config.unit_of_account:
            return self.strategies[DIRECT_STRATEGY]
        return self.strategies[auction.conversion_strategy]

    async def run(self, auction: Auction, winners: List[Bid], now: Optional[int] = None) -> Dict[str, int]:
        """
        Convert every winning bid.

        Returns:
            {"executed": n, "failed": m} for this run
        """
        to_convert = [b for b in winners if b.status == BidStatus.WINNING]
        if not to_convert:
            logger.info(f"No winning bids to convert for {auction.auction_id}")
            return {"executed": 0, "failed": 0}

        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def guarded(bid: Bid) -> bool:
            async with semaphore:
                return await self.convert_bid(auction, bid, now)

        outcomes = await asyncio.gather(*(guarded(bid) for bid in to_convert))
        executed = sum(1 for ok in outcomes if ok)
        summary = {"executed": executed, "failed": len(outcomes) - executed}
        logger.info(f"Conversion for {auction.auction_id}: {summary['executed']} executed, {summary['failed']} failed")
        return summary

    async def convert_bid(self, auction: Auction, bid: Bid, now: Optional[int] = None) -> bool:
        """Convert one bid. Returns True if it ended `executed`."""
        strategy = self.select_strategy(auction, bid)
        amount = bid.conversion_amount

        if bid.permit is None:
            return self._fail(bid, "authorization: bid has no permit", BidStatus.WINNING)
        valid, err = bid.permit.validate(self.config.executor_address, bid.token, amount, now)
        if not valid:
            return self._fail(bid, f"authorization: {err}", BidStatus.WINNING)
        if amount <= 0:
            return self._fail(bid, "conversion: nothing to convert for the allocated quantity", BidStatus.WINNING)

        if not self.store.transition_bid(
            bid.bid_id,
            BidStatus.CONVERTING,
            {"conversion_method": strategy.name},
            expected=BidStatus.WINNING,
        ):
            return False

        def record_order(order_ref: str):
            self.store.transition_bid(
                bid.bid_id, BidStatus.CONVERTING, {"order_ref": order_ref}, expected=BidStatus.CONVERTING
            )

        logger.info(f"Converting bid {bid.bid_id[:10]}: {amount} {bid.token[:10]} via {strategy.name}")
        try:
            outcome = await asyncio.wait_for(
                strategy.convert(bid, amount, self.config.unit_of_account, on_submitted=record_order),
                timeout=self.config.swap_timeout,
            )
        except Exception as e:
            return self._fail(bid, describe_error(e), BidStatus.CONVERTING, reconcile=outcome_unknown(e))

        realized_value = PRICE_CONTEXT.divide(
            Decimal(outcome.realized_amount), Decimal(10) ** self.config.unit_of_account_decimals
        )
        self.store.transition_bid(
            bid.bid_id,
            BidStatus.EXECUTED,
            {
                "realized_amount": outcome.realized_amount,
                "realized_value": realized_value,
                "tx_ref": outcome.tx_ref,
                "order_ref": outcome.order_ref,
            },
            expected=BidStatus.CONVERTING,
        )
        logger.info(f"Bid {bid.bid_id[:10]} executed: realized {realized_value} (tx {outcome.tx_ref[:14]})")
        return True

    def _fail(self, bid: Bid, reason: str, expected: BidStatus, reconcile: bool = False) -> bool:
        fields = {"error": reason}
        if reconcile:
            # The venue or chain was reached and the call may still complete
            fields["needs_reconciliation"] = True
            logger.error(f"Conversion outcome unknown for bid {bid.bid_id[:10]}: {reason}")
        else:
            logger.error(f"Conversion failed for bid {bid.bid_id[:10]}: {reason}")
        self.store.transition_bid(bid.bid_id, BidStatus.FAILED, fields, expected=expected)
        return False
