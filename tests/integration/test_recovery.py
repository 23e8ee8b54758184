"""
Crash recovery: resuming an auction left in `settling` never re-sends a
conversion or distribution whose outcome is unknown.
"""

import asyncio
from decimal import Decimal

from pta.core.models import AuctionStatus, BidStatus, SettlementStage
from pta.core.settlement import ConversionStage, DirectTransferStrategy, SettlementOrchestrator, SwapVenueStrategy
from pta.core.settlement.orchestrator import INTERRUPTED_CONVERSION, INTERRUPTED_DISTRIBUTION, SETTLED
from pta.core.storage import StorageManager
from pta.venues.mock import MockExecutor, MockSwapVenue
from pta.venues.oracle import StaticPriceOracle

WETH = "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"
END_TIME = 1_700_000_000


def orchestrator_for(store, config):
    oracle = StaticPriceOracle({WETH: (2000, 18)})
    venue = MockSwapVenue(oracle.quotes)
    executor = MockExecutor()
    orchestrator = SettlementOrchestrator(store, oracle, executor, {"swap": SwapVenueStrategy(venue)}, config)
    return orchestrator, oracle, venue, executor


class TestResume:
    """Tests for resuming from each checkpoint."""

    def test_crash_during_conversion(self, store, config, allocated):
        store.try_begin_settlement("sale")
        a = allocated["A"]
        store.transition_bid(a.bid_id, BidStatus.CONVERTING, {"conversion_method": "swap"})

        orchestrator, oracle, venue, executor = orchestrator_for(store, config)
        report = asyncio.run(orchestrator.settle("sale", now=END_TIME, resume=True))
        assert report.outcome == SETTLED

        stuck = store.get_bid(a.bid_id)
        assert stuck.status == BidStatus.FAILED
        assert stuck.needs_reconciliation
        assert stuck.error == INTERRUPTED_CONVERSION
        assert venue.calls_for(a.bidder) == 0
        assert oracle.calls == 0

        assert store.get_bid(allocated["B"].bid_id).status == BidStatus.DISTRIBUTED
        assert store.get_bid(allocated["C"].bid_id).status == BidStatus.DISTRIBUTED
        assert report.result.forfeited_quantity == 400

    def test_crash_during_distribution(self, store, config, allocated):
        store.try_begin_settlement("sale")
        auction = store.get_auction("sale")
        venue = MockSwapVenue(StaticPriceOracle({WETH: (2000, 18)}).quotes)
        conversion = ConversionStage(store, {
            "direct": DirectTransferStrategy(MockExecutor()),
            "swap": SwapVenueStrategy(venue),
        }, config)
        asyncio.run(conversion.run(auction, store.list_bids("sale", BidStatus.WINNING), now=END_TIME))
        store.set_stage("sale", SettlementStage.CONVERTED)
        b = allocated["B"]
        store.transition_bid(b.bid_id, BidStatus.DISTRIBUTING, expected=BidStatus.EXECUTED)

        orchestrator, _, resumed_venue, executor = orchestrator_for(store, config)
        result = asyncio.run(orchestrator.settle("sale", now=END_TIME, resume=True)).result

        stuck = store.get_bid(b.bid_id)
        assert stuck.status == BidStatus.DISTRIBUTION_FAILED
        assert stuck.needs_reconciliation
        assert stuck.error == INTERRUPTED_DISTRIBUTION
        assert executor.distributed_to(b.bidder) == 0
        assert executor.distributed_to(allocated["A"].bidder) == 400
        assert resumed_venue.calls == []
        assert executor.collect_calls == []
        assert result.distribution_failed_bids == 1
        assert result.executed_bids == 3
        assert result.total_raised == Decimal(8800)

    def test_crash_after_allocation(self, tmp_path, config, allocated):
        """A new process resumes from the allocation checkpoint without re-pricing."""
        first = StorageManager(tmp_path)
        first.try_begin_settlement("sale")
        first.close()

        reopened = StorageManager(tmp_path)
        orchestrator, oracle, venue, executor = orchestrator_for(reopened, config)
        report = asyncio.run(orchestrator.settle("sale", now=END_TIME, resume=True))

        assert report.outcome == SETTLED
        assert oracle.calls == 0
        assert len(venue.calls) == 2
        assert report.result.clearing_price == Decimal(8)
        assert reopened.get_auction("sale").status == AuctionStatus.SETTLED
        reopened.close()

    def test_resume_on_open_auction_settles_normally(self, store, config, reference_bids):
        orchestrator, oracle, _, _ = orchestrator_for(store, config)
        report = asyncio.run(orchestrator.settle("sale", now=END_TIME, resume=True))
        assert report.outcome == SETTLED
        assert oracle.calls == 1
