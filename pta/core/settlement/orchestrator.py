"""
Settlement Orchestrator - Sequence the stages for one auction.

Auction state machine: open -> settling -> settled. The open -> settling
compare-and-set is the settlement lock. Progress is checkpointed on the
auction (settlement_stage) after each persisted stage:

    none -> [valuation + allocation] -> allocated -> [conversion] -> converted
         -> [distribution] -> result saved, auction settled

Re-entry:
- settled:  returns the stored result, makes no collaborator calls
- settling: no-op ("in_progress") unless resume=True, which continues from
            the last checkpoint
- open:     takes the lock and runs from the start

On resume, bids left `converting` or `distributing` by a crash are never
re-sent; they are closed as failed / distribution_failed and flagged for
reconciliation.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from pta.core.config import SettlementConfig
from pta.core.models import (
    CONVERTED_STATUSES,
    WINNER_STATUSES,
    ZERO,
    Auction,
    AuctionStatus,
    BidStatus,
    SettlementResult,
    SettlementStage,
)
from pta.core.settlement.allocation import SettlementInputError, allocate, validate_allocation_input
from pta.core.settlement.conversion import (
    DIRECT_STRATEGY,
    ConversionStage,
    ConversionStrategy,
    DirectTransferStrategy,
)
from pta.core.settlement.distribution import DistributionStage
from pta.core.settlement.valuation import value_bids
from pta.core.storage import StorageManager
from pta.utils.logger import get_logger
from pta.venues.base import OnChainExecutor, PriceOracle

logger = get_logger("orchestrator")

SETTLED = "settled"
ALREADY_SETTLED = "already_settled"
IN_PROGRESS = "in_progress"

INTERRUPTED_CONVERSION = "conversion interrupted; outcome unknown, reconcile manually"
INTERRUPTED_DISTRIBUTION = "distribution interrupted; outcome unknown, reconcile manually"


@dataclass(frozen=True)
class SettlementReport:
    """What a settlement trigger returns to its caller."""
    auction_id: str
    outcome: str                              # settled | already_settled | in_progress
    result: Optional[SettlementResult] = None

    def to_dict(self) -> dict:
        return {
            "auction_id": self.auction_id,
            "outcome": self.outcome,
            "result": self.result.to_dict() if self.result else None,
        }


class SettlementOrchestrator:
    """
    Runs Valuation -> Allocation -> Conversion -> Distribution for an auction.

    All collaborators are injected; the orchestrator owns none of their
    lifecycles.

    Args:
        store: Bid Store
        oracle: Pricing Oracle Adapter
        executor: On-chain executor (direct transfers and distribution)
        strategies: Conversion strategies by name (e.g. {"swap": SwapVenueStrategy(...)});
            a DirectTransferStrategy over `executor` is added when absent
        config: Settlement configuration
    """

    def __init__(
        self,
        store: StorageManager,
        oracle: PriceOracle,
        executor: OnChainExecutor,
        strategies: Optional[Dict[str, ConversionStrategy]] = None,
        config: Optional[SettlementConfig] = None,
    ):
        self.store = store
        self.oracle = oracle
        self.executor = executor
        self.config = config or SettlementConfig()

        self.strategies: Dict[str, ConversionStrategy] = dict(strategies or {})
        self.strategies.setdefault(DIRECT_STRATEGY, DirectTransferStrategy(executor))

        self.conversion = ConversionStage(store, self.strategies, self.config)
        self.distribution = DistributionStage(store, executor, self.config)

    # =========================================================================
    # Entry point
    # =========================================================================

    async def settle(self, auction_id: str, now: Optional[int] = None, resume: bool = False) -> SettlementReport:
        """
        Settle an auction.

        Args:
            auction_id: Auction to settle
            now: Current unix time in seconds (defaults to the clock)
            resume: Continue an auction left in `settling`

        Returns:
            SettlementReport

        Raises:
            SettlementInputError: unknown auction, auction not ended, or
                malformed allocation input
        """
        auction = self.store.get_auction(auction_id)
        if auction is None:
            raise SettlementInputError(f"unknown auction {auction_id}")

        if auction.status == AuctionStatus.SETTLED:
            logger.warning(f"Auction {auction_id} already settled; returning stored result")
            return SettlementReport(auction_id, ALREADY_SETTLED, self.store.get_result(auction_id))

        if auction.status == AuctionStatus.SETTLING and not resume:
            logger.warning(f"Auction {auction_id} is already settling (stage {auction.settlement_stage.value})")
            return SettlementReport(auction_id, IN_PROGRESS)

        if auction.status == AuctionStatus.OPEN:
            if not auction.has_ended(now):
                raise SettlementInputError(f"auction {auction_id} has not ended (ends at {auction.end_time})")
            if not self.store.try_begin_settlement(auction_id):
                logger.warning(f"Lost settlement lock race for {auction_id}")
                return SettlementReport(auction_id, IN_PROGRESS)
        else:
            logger.info(f"Resuming settlement of {auction_id} from stage {auction.settlement_stage.value}")

        auction = self.store.get_auction(auction_id)
        result = await self._run(auction, now)
        return SettlementReport(auction_id, SETTLED, result)

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _run(self, auction: Auction, now: Optional[int]) -> SettlementResult:
        auction_id = auction.auction_id
        stage = auction.settlement_stage

        if stage == SettlementStage.NONE:
            self._allocate_and_persist(auction, await self._value(auction))
            stage = SettlementStage.ALLOCATED

        if stage == SettlementStage.ALLOCATED:
            self._close_interrupted(auction_id, BidStatus.CONVERTING, BidStatus.FAILED, INTERRUPTED_CONVERSION)
            winners = self.store.list_bids(auction_id, BidStatus.WINNING)
            await self.conversion.run(auction, winners, now)
            self.store.set_stage(auction_id, SettlementStage.CONVERTED)
            stage = SettlementStage.CONVERTED

        if stage == SettlementStage.CONVERTED:
            self._close_interrupted(
                auction_id, BidStatus.DISTRIBUTING, BidStatus.DISTRIBUTION_FAILED, INTERRUPTED_DISTRIBUTION
            )
            executed = self.store.list_bids(auction_id, BidStatus.EXECUTED)
            await self.distribution.run(auction, executed)

        result = self.compute_result(auction_id)
        self.store.save_result(result)
        logger.info(
            f"Auction {auction_id} settled: clearing price {result.clearing_price}, "
            f"raised {result.total_raised}, {result.executed_bids}/{result.winning_bids} winners executed, "
            f"{result.distribution_failed_bids} distribution failures"
        )
        return result

    async def _value(self, auction: Auction):
        pending = self.store.list_bids(auction.auction_id, BidStatus.PENDING)
        validate_allocation_input(auction, pending)
        if auction.conversion_strategy not in self.strategies:
            raise SettlementInputError(f"unknown conversion strategy '{auction.conversion_strategy}'")
        return await value_bids(
            pending,
            self.oracle,
            unit_of_account=self.config.unit_of_account,
            unit_decimals=self.config.unit_of_account_decimals,
        )

    def _allocate_and_persist(self, auction: Auction, valued):
        allocation = allocate(valued, auction.target_allocation, auction.reserve_price)
        self.store.persist_allocation(
            auction.auction_id, allocation.winners, allocation.losers, allocation.clearing_price
        )

    def _close_interrupted(self, auction_id: str, in_flight: BidStatus, terminal: BidStatus, reason: str):
        stuck = self.store.list_bids(auction_id, in_flight)
        if not stuck:
            return
        logger.error(f"{len(stuck)} bids of {auction_id} found {in_flight.value}; closing as {terminal.value}")
        self.store.transition_bids(
            [b.bid_id for b in stuck],
            terminal,
            {"error": reason, "needs_reconciliation": True},
            expected=in_flight,
        )

    # =========================================================================
    # Result
    # =========================================================================

    def compute_result(self, auction_id: str) -> SettlementResult:
        """Aggregate the persisted bid outcomes into a SettlementResult."""
        auction = self.store.get_auction(auction_id)
        bids = self.store.list_bids(auction_id)

        winners = [b for b in bids if b.status in WINNER_STATUSES]
        converted = [b for b in bids if b.status in CONVERTED_STATUSES]
        failed = [b for b in bids if b.status == BidStatus.FAILED]
        distributed = [b for b in bids if b.status == BidStatus.DISTRIBUTED]
        filled = sum(b.fill_quantity for b in winners)

        return SettlementResult(
            auction_id=auction_id,
            clearing_price=auction.clearing_price if auction.clearing_price is not None else ZERO,
            total_raised=sum((b.realized_value or ZERO for b in converted), ZERO),
            total_bids=len(bids),
            winning_bids=len(winners),
            losing_bids=sum(1 for b in bids if b.status == BidStatus.LOSING),
            executed_bids=len(converted),
            failed_bids=len(failed),
            distributed_bids=len(distributed),
            distribution_failed_bids=sum(1 for b in bids if b.status == BidStatus.DISTRIBUTION_FAILED),
            filled_quantity=filled,
            unsold_supply=auction.target_allocation - filled,
            forfeited_quantity=sum(b.fill_quantity for b in failed),
            tokens_distributed=sum(b.tokens_distributed for b in distributed),
        )
