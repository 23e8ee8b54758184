"""
End-to-end settlement through the orchestrator with in-process collaborators.
"""

import asyncio
from decimal import Decimal

import pytest

from pta.core.models import AuctionStatus, BidStatus, SettlementStage
from pta.core.settlement import SettlementInputError, SettlementOrchestrator, SwapVenueStrategy
from pta.core.settlement.orchestrator import ALREADY_SETTLED, IN_PROGRESS, SETTLED
from pta.core.storage import StorageManager
from pta.venues.mock import MockExecutor, MockSwapVenue
from pta.venues.oracle import StaticPriceOracle

WETH = "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"
USDC = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"
JUNK = "0x" + "99" * 20
END_TIME = 1_700_000_000


class Harness:
    """Orchestrator wired to mocks that count every collaborator call."""

    def __init__(self, store, config, venue_failures=None, strategies=None):
        self.oracle = StaticPriceOracle({WETH: (2000, 18)})
        self.venue = MockSwapVenue(self.oracle.quotes, failures=venue_failures)
        self.executor = MockExecutor()
        self.orchestrator = SettlementOrchestrator(
            store, self.oracle, self.executor,
            strategies if strategies is not None else {"swap": SwapVenueStrategy(self.venue)},
            config,
        )

    def settle(self, auction_id="sale", now=END_TIME, resume=False):
        return asyncio.run(self.orchestrator.settle(auction_id, now=now, resume=resume))

    @property
    def collaborator_calls(self):
        return self.oracle.calls + len(self.venue.calls) + self.executor.total_calls


class TestSettlementFlow:
    """Tests for a full settlement run."""

    def test_reference_auction(self, store, config, reference_bids):
        harness = Harness(store, config)
        report = harness.settle()

        assert report.outcome == SETTLED
        result = report.result
        assert result.clearing_price == Decimal(8)
        assert result.total_raised == Decimal(8800)
        assert (result.winning_bids, result.losing_bids) == (3, 1)
        assert result.executed_bids == 3
        assert result.distributed_bids == 3
        assert result.filled_quantity == 1000
        assert result.unsold_supply == 0
        assert result.tokens_distributed == 1000

        auction = store.get_auction("sale")
        assert auction.status == AuctionStatus.SETTLED
        assert auction.settlement_stage == SettlementStage.DISTRIBUTED
        assert store.get_result("sale") == result

    def test_loser_never_touched(self, store, config, reference_bids):
        harness = Harness(store, config)
        harness.settle()

        d = store.get_bid(reference_bids["D"].bid_id)
        assert d.status == BidStatus.LOSING
        assert d.realized_amount == 0
        assert harness.venue.calls_for(d.bidder) == 0
        assert all(call[0] != d.bidder for call in harness.executor.collect_calls)
        assert harness.executor.distributed_to(d.bidder) == 0

    def test_every_winner_reaches_a_terminal_status(self, store, config, reference_bids):
        harness = Harness(store, config, venue_failures={reference_bids["A"].bidder: RuntimeError("venue down")})
        result = harness.settle().result

        statuses = {label: store.get_bid(bid.bid_id).status for label, bid in reference_bids.items()}
        assert statuses == {
            "A": BidStatus.FAILED,
            "B": BidStatus.DISTRIBUTED,
            "C": BidStatus.DISTRIBUTED,
            "D": BidStatus.LOSING,
        }
        assert result.failed_bids == 1
        assert result.forfeited_quantity == 400
        assert result.total_raised == Decimal(4800)
        assert result.tokens_distributed == 600
        assert harness.executor.distributed_to(reference_bids["A"].bidder) == 0

    def test_unpriced_token_ranks_last(self, store, config, make_auction, place_bid):
        make_auction(target=100)
        junk = place_bid("sale", JUNK, 10**18, 100, created_at=1)
        real = place_bid("sale", USDC, 100 * 10**6, 100, created_at=2)
        result = Harness(store, config).settle().result

        assert store.get_bid(junk.bid_id).status == BidStatus.LOSING
        assert store.get_bid(real.bid_id).status == BidStatus.DISTRIBUTED
        assert result.clearing_price == Decimal(1)

    def test_no_bids(self, store, config, make_auction):
        make_auction()
        harness = Harness(store, config)
        result = harness.settle().result
        assert result.total_bids == 0
        assert result.clearing_price == Decimal(0)
        assert result.unsold_supply == 1000
        assert harness.executor.total_calls == 0

    def test_everything_below_reserve(self, store, config, make_auction, place_bid):
        make_auction(target=100, reserve="50")
        place_bid("sale", USDC, 100 * 10**6, 100, created_at=1)
        harness = Harness(store, config)
        result = harness.settle().result
        assert result.winning_bids == 0
        assert result.losing_bids == 1
        assert len(harness.venue.calls) + harness.executor.total_calls == 0

    def test_not_ended(self, store, config, reference_bids):
        harness = Harness(store, config)
        with pytest.raises(SettlementInputError):
            harness.settle(now=END_TIME - 1)
        assert store.get_auction("sale").status == AuctionStatus.OPEN
        assert harness.collaborator_calls == 0

    def test_unknown_auction(self, store, config):
        with pytest.raises(SettlementInputError):
            Harness(store, config).settle("missing")

    def test_unknown_strategy_aborts_before_side_effects(self, store, config, make_auction, place_bid):
        make_auction(strategy="fusion")
        place_bid("sale", WETH, 10**18, 100, created_at=1)
        harness = Harness(store, config)
        with pytest.raises(SettlementInputError, match="fusion"):
            harness.settle()

        auction = store.get_auction("sale")
        assert auction.status == AuctionStatus.SETTLING
        assert auction.settlement_stage == SettlementStage.NONE
        assert harness.collaborator_calls == 0
        assert all(b.status == BidStatus.PENDING for b in store.list_bids("sale"))

        fixed = Harness(store, config, strategies={"fusion": SwapVenueStrategy(MockSwapVenue(
            StaticPriceOracle({WETH: (2000, 18)}).quotes), name="fusion")})
        report = fixed.settle(resume=True)
        assert report.outcome == SETTLED
        assert store.list_bids("sale")[0].conversion_method == "fusion"


class TestReentry:
    """Tests for the settlement lock and idempotent re-entry."""

    def test_second_trigger_returns_stored_result(self, store, config, reference_bids):
        harness = Harness(store, config)
        first = harness.settle()
        calls = harness.collaborator_calls

        second = harness.settle()
        assert second.outcome == ALREADY_SETTLED
        assert second.result == first.result
        assert harness.collaborator_calls == calls

    def test_fresh_process_sees_settled_auction(self, tmp_path, store, config, reference_bids):
        first = Harness(store, config).settle()

        reopened = StorageManager(tmp_path)
        harness = Harness(reopened, config)
        report = harness.settle()
        assert report.outcome == ALREADY_SETTLED
        assert report.result == first.result
        assert harness.collaborator_calls == 0
        reopened.close()

    def test_settling_without_resume_is_noop(self, store, config, reference_bids):
        store.try_begin_settlement("sale")
        harness = Harness(store, config)
        report = harness.settle()
        assert report.outcome == IN_PROGRESS
        assert report.result is None
        assert harness.collaborator_calls == 0

    def test_concurrent_triggers_settle_once(self, tmp_path, store, config, reference_bids):
        first = Harness(store, config)
        other_store = StorageManager(tmp_path)
        second = Harness(other_store, config)

        async def race():
            return await asyncio.gather(
                first.orchestrator.settle("sale", now=END_TIME),
                second.orchestrator.settle("sale", now=END_TIME),
            )

        reports = asyncio.run(race())
        assert sorted(r.outcome for r in reports) == [IN_PROGRESS, SETTLED]
        assert len(first.venue.calls) + len(second.venue.calls) == 2
        assert first.executor.total_calls + second.executor.total_calls == 2
        other_store.close()
