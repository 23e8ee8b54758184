"""
Distribution Stage - Deliver auction tokens to executed winners.

Tokens owed follow pay-as-bid: realized value divided by the bid's own unit
price, capped at the bid's fill. The unit price is taken over the converted
share of the bid (value * conversion_amount / amount) so integer rounding of
a partial fill's conversion amount is not mistaken for slippage.

Slippage guard: if owed < fill * (1 - tolerance) the bid is not paid out and
ends `distribution_failed` with needs_reconciliation set, since its funds were
already converted. Otherwise the owed quantity (possibly slightly below fill)
is distributed. Bids valued at 0 have no price reference and receive their
full fill.

Bids move executed -> distributing -> distributed | distribution_failed.
"""

import asyncio
from decimal import ROUND_FLOOR, Decimal
from typing import Dict, List, Optional, Tuple

from pta.core.config import SettlementConfig
from pta.core.models import PRICE_CONTEXT, ZERO, Auction, Bid, BidStatus
from pta.core.storage import StorageManager
from pta.utils.logger import get_logger
from pta.venues.base import OnChainExecutor, describe_error

logger = get_logger("distribution")

BPS = 10_000
MAX_BATCH_SIZE = 100


def tokens_owed(bid: Bid, tolerance_bps: int, unit_decimals: int = 6) -> Tuple[int, Optional[str]]:
    """
    Auction tokens owed to an executed bid.

    The realized amount is credited one raw unit of the unit of account,
    which absorbs the venue flooring its payout to whole raw units.

    Returns:
        (owed_quantity, rejection_reason); reason is None when the bid
        should be paid `owed_quantity`
    """
    fill = bid.fill_quantity
    if not bid.value or bid.value <= ZERO or bid.amount <= 0:
        return fill, None

    expected_value = PRICE_CONTEXT.divide(
        PRICE_CONTEXT.multiply(bid.value, Decimal(bid.conversion_amount)), Decimal(bid.amount)
    )
    if expected_value <= ZERO:
        return fill, None

    realized = bid.realized_value if bid.realized_value is not None else ZERO
    credited = realized + PRICE_CONTEXT.divide(Decimal(1), Decimal(10) ** unit_decimals)
    exact = PRICE_CONTEXT.divide(PRICE_CONTEXT.multiply(Decimal(fill), credited), expected_value)
    owed = min(fill, int(exact.to_integral_value(rounding=ROUND_FLOOR)))

    if owed * BPS < fill * (BPS - tolerance_bps):
        return owed, (
            f"slippage: realized {realized} buys {owed} of {fill} allocated "
            f"(tolerance {tolerance_bps} bps)"
        )
    return owed, None


class DistributionStage:
    """
    Sends owed auction tokens through the on-chain executor.

    With `batch_distribution` on, owed transfers go out as parallel-array
    batch calls of up to MAX_BATCH_SIZE entries; otherwise one call per bid
    with bounded concurrency. Both paths record the same per-bid outcome.
    """

    def __init__(self, store: StorageManager, executor: OnChainExecutor, config: SettlementConfig):
        self.store = store
        self.executor = executor
        self.config = config

    async def run(self, auction: Auction, executed: List[Bid]) -> Dict[str, int]:
        """
        Distribute to every executed bid.

        Returns:
            {"distributed": n, "failed": m} for this run
        """
        payable: List[Tuple[Bid, int]] = []
        failed = 0
        distributed = 0

        for bid in executed:
            if bid.status != BidStatus.EXECUTED:
                continue
            owed, reason = tokens_owed(
                bid, self.config.slippage_tolerance_bps, self.config.unit_of_account_decimals
            )
            if reason:
                logger.warning(f"Bid {bid.bid_id[:10]} rejected by slippage guard: {reason}")
                self._mark_failed([bid.bid_id], reason, BidStatus.EXECUTED)
                failed += 1
            elif owed == 0:
                self.store.transition_bid(
                    bid.bid_id, BidStatus.DISTRIBUTED, {"tokens_distributed": 0}, expected=BidStatus.EXECUTED
                )
                distributed += 1
            else:
                payable.append((bid, owed))

        if payable:
            if self.config.batch_distribution:
                ok, bad = await self._distribute_batched(auction, payable)
            else:
                ok, bad = await self._distribute_single(auction, payable)
            distributed += ok
            failed += bad

        logger.info(f"Distribution for {auction.auction_id}: {distributed} distributed, {failed} failed")
        return {"distributed": distributed, "failed": failed}

    # =========================================================================
    # Batch path
    # =========================================================================

    async def _distribute_batched(self, auction: Auction, payable: List[Tuple[Bid, int]]) -> Tuple[int, int]:
        ok = bad = 0
        for start in range(0, len(payable), MAX_BATCH_SIZE):
            chunk = payable[start:start + MAX_BATCH_SIZE]
            bid_ids = [bid.bid_id for bid, _ in chunk]
            self.store.transition_bids(bid_ids, BidStatus.DISTRIBUTING, expected=BidStatus.EXECUTED)

            try:
                tx_ref = await asyncio.wait_for(
                    self.executor.distribute_batch(
                        auction.auction_token,
                        [bid.bidder for bid, _ in chunk],
                        [owed for _, owed in chunk],
                    ),
                    timeout=self.config.distribution_timeout,
                )
            except Exception as e:
                reason = describe_error(e)
                logger.error(f"Batch distribution of {len(chunk)} bids failed: {reason}")
                self._mark_failed(bid_ids, reason, BidStatus.DISTRIBUTING)
                bad += len(chunk)
                continue

            for bid, owed in chunk:
                self._mark_distributed(bid, owed, tx_ref)
            ok += len(chunk)
        return ok, bad

    # =========================================================================
    # Single-call path
    # =========================================================================

    async def _distribute_single(self, auction: Auction, payable: List[Tuple[Bid, int]]) -> Tuple[int, int]:
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def send(bid: Bid, owed: int) -> bool:
            async with semaphore:
                if not self.store.transition_bid(
                    bid.bid_id, BidStatus.DISTRIBUTING, expected=BidStatus.EXECUTED
                ):
                    return False
                try:
                    tx_ref = await asyncio.wait_for(
                        self.executor.distribute(bid.bidder, auction.auction_token, owed),
                        timeout=self.config.distribution_timeout,
                    )
                except Exception as e:
                    reason = describe_error(e)
                    logger.error(f"Distribution failed for bid {bid.bid_id[:10]}: {reason}")
                    self._mark_failed([bid.bid_id], reason, BidStatus.DISTRIBUTING)
                    return False
                self._mark_distributed(bid, owed, tx_ref)
                return True

        outcomes = await asyncio.gather(*(send(bid, owed) for bid, owed in payable))
        ok = sum(1 for o in outcomes if o)
        return ok, len(outcomes) - ok

    # =========================================================================
    # Helpers
    # =========================================================================

    def _mark_distributed(self, bid: Bid, owed: int, tx_ref: str):
        self.store.transition_bid(
            bid.bid_id,
            BidStatus.DISTRIBUTED,
            {"tokens_distributed": owed, "distribution_tx_ref": tx_ref},
            expected=BidStatus.DISTRIBUTING,
        )
        logger.info(f"Distributed {owed} to {bid.bidder[:10]} for bid {bid.bid_id[:10]}")

    def _mark_failed(self, bid_ids: List[str], reason: str, expected: BidStatus):
        # Funds already left the bidder; these need manual reconciliation
        self.store.transition_bids(
            bid_ids,
            BidStatus.DISTRIBUTION_FAILED,
            {"error": reason, "needs_reconciliation": True},
            expected=expected,
        )
