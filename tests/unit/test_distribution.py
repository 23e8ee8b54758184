"""
Unit tests for the distribution stage and the tokens-owed policy.
"""

import asyncio
import dataclasses
from decimal import Decimal

import pytest

from pta.core.models import Bid, BidStatus
from pta.core.settlement import distribution
from pta.core.settlement.conversion import ConversionStage, DirectTransferStrategy, SwapVenueStrategy
from pta.core.settlement.distribution import DistributionStage, tokens_owed
from pta.venues.base import PriceQuote
from pta.venues.mock import MockExecutor, MockSwapVenue

WETH = "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"
AUCTION_TOKEN = "0x" + "aa" * 20
END_TIME = 1_700_000_000


def executed_bid(fill, amount, conversion_amount, value, realized):
    return Bid(
        bid_id="bid",
        auction_id="sale",
        bidder="0x" + "01" * 20,
        token=WETH,
        amount=amount,
        quantity=fill if conversion_amount == amount else fill * amount // conversion_amount,
        status=BidStatus.EXECUTED,
        value=Decimal(value),
        fill_quantity=fill,
        conversion_amount=conversion_amount,
        realized_value=Decimal(realized),
    )


# =============================================================================
# Tokens owed
# =============================================================================


class TestTokensOwed:
    """Tests for the pay-as-bid tokens-owed policy."""

    def test_exact_realization_pays_full_fill(self):
        bid = executed_bid(400, 2 * 10**18, 2 * 10**18, "4000", "4000")
        assert tokens_owed(bid, 100) == (400, None)

    def test_partial_fill_pays_full_fill(self):
        bid = executed_bid(100, 12 * 10**17, 4 * 10**17, "2400", "800")
        assert tokens_owed(bid, 100) == (100, None)

    def test_venue_rounding_is_not_slippage(self):
        """A realized amount one raw unit short still pays the full fill."""
        bid = executed_bid(300, 10**18, 10**18, "1000", "999.999999")
        assert tokens_owed(bid, 0) == (300, None)

    def test_slippage_within_tolerance_pays_less(self):
        bid = executed_bid(400, 2 * 10**18, 2 * 10**18, "4000", "3980")
        assert tokens_owed(bid, 100) == (398, None)

    def test_slippage_beyond_tolerance_rejected(self):
        bid = executed_bid(400, 2 * 10**18, 2 * 10**18, "4000", "3900")
        owed, reason = tokens_owed(bid, 100)
        assert owed == 390
        assert reason.startswith("slippage:")

    def test_better_execution_capped_at_fill(self):
        bid = executed_bid(400, 2 * 10**18, 2 * 10**18, "4000", "4400")
        assert tokens_owed(bid, 100) == (400, None)

    def test_zero_valued_bid_gets_fill(self):
        bid = executed_bid(50, 10, 10, "0", "0")
        assert tokens_owed(bid, 100) == (50, None)

    def test_zero_tolerance_rejects_any_shortfall(self):
        bid = executed_bid(400, 2 * 10**18, 2 * 10**18, "4000", "3990")
        _, reason = tokens_owed(bid, 0)
        assert reason is not None


# =============================================================================
# Distribution stage
# =============================================================================


def convert(store, config, venue_slippage_bps=0):
    venue = MockSwapVenue({WETH: PriceQuote(Decimal(2000), 18)}, slippage_bps=venue_slippage_bps)
    stage = ConversionStage(store, {
        "direct": DirectTransferStrategy(MockExecutor()),
        "swap": SwapVenueStrategy(venue),
    }, config)
    asyncio.run(stage.run(store.get_auction("sale"), store.list_bids("sale", BidStatus.WINNING), now=END_TIME))


def distribute(store, config, executor):
    stage = DistributionStage(store, executor, config)
    return asyncio.run(stage.run(store.get_auction("sale"), store.list_bids("sale", BidStatus.EXECUTED)))


class TestDistributionStage:
    """Tests for delivering auction tokens."""

    def test_batch_distribution(self, store, config, allocated):
        convert(store, config)
        executor = MockExecutor()
        assert distribute(store, config, executor) == {"distributed": 3, "failed": 0}

        assert len(executor.batch_calls) == 1
        token, bidders, quantities = executor.batch_calls[0]
        assert token == AUCTION_TOKEN
        assert sorted(quantities) == [100, 400, 500]
        assert executor.distributed_to(allocated["C"].bidder) == 100
        assert executor.distributed_to(allocated["D"].bidder) == 0

        a = store.get_bid(allocated["A"].bid_id)
        assert a.status == BidStatus.DISTRIBUTED
        assert a.tokens_distributed == 400
        assert a.distribution_tx_ref

    def test_batch_failure_fails_whole_batch(self, store, config, allocated):
        convert(store, config)
        summary = distribute(store, config, MockExecutor(fail_batch=True))
        assert summary == {"distributed": 0, "failed": 3}

        for label in ("A", "B", "C"):
            bid = store.get_bid(allocated[label].bid_id)
            assert bid.status == BidStatus.DISTRIBUTION_FAILED
            assert bid.needs_reconciliation
            assert bid.error.startswith("reverted:")
            assert bid.realized_value is not None

    def test_batches_are_chunked(self, store, config, allocated, monkeypatch):
        monkeypatch.setattr(distribution, "MAX_BATCH_SIZE", 2)
        convert(store, config)
        executor = MockExecutor()
        distribute(store, config, executor)
        assert [len(call[1]) for call in executor.batch_calls] == [2, 1]

    def test_single_calls(self, store, config, allocated):
        convert(store, config)
        b = allocated["B"]
        executor = MockExecutor(fail_distribute={b.bidder})
        single = dataclasses.replace(config, batch_distribution=False)

        assert distribute(store, single, executor) == {"distributed": 2, "failed": 1}
        assert executor.batch_calls == []
        assert len(executor.distribute_calls) == 3
        failed = store.get_bid(b.bid_id)
        assert failed.status == BidStatus.DISTRIBUTION_FAILED
        assert failed.needs_reconciliation
        assert store.get_bid(allocated["A"].bid_id).status == BidStatus.DISTRIBUTED

    def test_slippage_guard(self, store, config, allocated):
        """Swapped bids realizing 5% short are held back; the direct bid is paid."""
        convert(store, config, venue_slippage_bps=500)
        executor = MockExecutor()
        assert distribute(store, config, executor) == {"distributed": 1, "failed": 2}

        a = store.get_bid(allocated["A"].bid_id)
        assert a.status == BidStatus.DISTRIBUTION_FAILED
        assert a.error.startswith("slippage:")
        assert a.needs_reconciliation
        assert executor.distributed_to(allocated["A"].bidder) == 0
        assert executor.distributed_to(allocated["B"].bidder) == 500

    def test_failed_conversions_get_nothing(self, store, config, allocated):
        convert(store, config)
        store.transition_bid(allocated["C"].bid_id, BidStatus.FAILED, {"error": "x"})
        executor = MockExecutor()
        distribute(store, config, executor)
        assert executor.distributed_to(allocated["C"].bidder) == 0

    @pytest.mark.parametrize("batch", [True, False])
    def test_nothing_executed(self, store, config, allocated, batch):
        executor = MockExecutor()
        stage = DistributionStage(store, executor, dataclasses.replace(config, batch_distribution=batch))
        assert asyncio.run(stage.run(store.get_auction("sale"), [])) == {"distributed": 0, "failed": 0}
        assert executor.total_calls == 0
