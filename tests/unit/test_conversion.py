"""
Unit tests for the conversion stage.

Tests cover:
1. Strategy selection (direct vs swap)
2. Only winning bids reach a collaborator
3. Per-bid failure isolation, timeouts and authorization checks
"""

import asyncio
import dataclasses
from decimal import Decimal

import httpx
import pytest

from pta.core.models import BidStatus
from pta.core.settlement.conversion import ConversionStage, DirectTransferStrategy, SwapVenueStrategy
from pta.venues.base import PriceQuote, SwapRejectedError
from pta.venues.mock import MockExecutor, MockSwapVenue
from pta.venues.swap import HttpSwapVenue

WETH = "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"
USDC = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"
END_TIME = 1_700_000_000


def make_stage(store, config, venue, executor):
    strategies = {
        "direct": DirectTransferStrategy(executor),
        "swap": SwapVenueStrategy(venue),
    }
    return ConversionStage(store, strategies, config)


def run_conversion(store, stage, bids=None):
    auction = store.get_auction("sale")
    winners = store.list_bids("sale", BidStatus.WINNING) if bids is None else bids
    return asyncio.run(stage.run(auction, winners, now=END_TIME))


@pytest.fixture
def venue():
    return MockSwapVenue({WETH: PriceQuote(Decimal(2000), 18)})


@pytest.fixture
def executor():
    return MockExecutor()


class TestConversionStage:
    """Tests for converting winning bids."""

    def test_requires_direct_strategy(self, store, config, venue):
        with pytest.raises(ValueError):
            ConversionStage(store, {"swap": SwapVenueStrategy(venue)}, config)

    def test_reference_conversion(self, store, config, allocated, venue, executor):
        summary = run_conversion(store, make_stage(store, config, venue, executor))
        assert summary == {"executed": 3, "failed": 0}

        a = store.get_bid(allocated["A"].bid_id)
        b = store.get_bid(allocated["B"].bid_id)
        c = store.get_bid(allocated["C"].bid_id)
        assert a.status == b.status == c.status == BidStatus.EXECUTED
        assert a.conversion_method == "swap"
        assert b.conversion_method == "direct"
        assert a.realized_amount == 4000 * 10**6
        assert a.realized_value == Decimal(4000)
        assert c.realized_value == Decimal(800)
        assert a.order_ref is not None
        assert b.tx_ref

    def test_partial_fill_converts_only_its_share(self, store, config, allocated, venue, executor):
        run_conversion(store, make_stage(store, config, venue, executor))
        c = allocated["C"]
        assert (WETH, 4 * 10**17, USDC, c.bidder) in venue.calls

    def test_losers_never_touched(self, store, config, allocated, venue, executor):
        stage = make_stage(store, config, venue, executor)
        run_conversion(store, stage, bids=store.list_bids("sale"))

        d = allocated["D"]
        assert store.get_bid(d.bid_id).status == BidStatus.LOSING
        assert venue.calls_for(d.bidder) == 0
        assert all(call[0] != d.bidder for call in executor.collect_calls)
        assert len(venue.calls) == 2
        assert len(executor.collect_calls) == 1

    def test_second_run_makes_no_calls(self, store, config, allocated, venue, executor):
        stage = make_stage(store, config, venue, executor)
        run_conversion(store, stage)
        calls = len(venue.calls) + executor.total_calls

        assert run_conversion(store, stage) == {"executed": 0, "failed": 0}
        assert len(venue.calls) + executor.total_calls == calls

    def test_failure_is_isolated(self, store, config, allocated, executor):
        a = allocated["A"]
        venue = MockSwapVenue(
            {WETH: PriceQuote(Decimal(2000), 18)},
            failures={a.bidder: SwapRejectedError("no route")},
        )
        summary = run_conversion(store, make_stage(store, config, venue, executor))
        assert summary == {"executed": 2, "failed": 1}

        failed = store.get_bid(a.bid_id)
        assert failed.status == BidStatus.FAILED
        assert failed.error == "swap_rejected: no route"
        assert not failed.needs_reconciliation
        assert store.get_bid(allocated["C"].bid_id).status == BidStatus.EXECUTED
        assert venue.calls_for(a.bidder) == 1

    def test_collect_revert_fails_direct_bid(self, store, config, allocated, venue):
        b = allocated["B"]
        executor = MockExecutor(fail_collect={b.bidder})
        run_conversion(store, make_stage(store, config, venue, executor))
        failed = store.get_bid(b.bid_id)
        assert failed.status == BidStatus.FAILED
        assert failed.error.startswith("reverted:")
        assert not failed.needs_reconciliation

    def test_timeout(self, store, config, allocated, executor):
        a = allocated["A"]
        venue = MockSwapVenue({WETH: PriceQuote(Decimal(2000), 18)}, delays={a.bidder: 1.0})
        fast = dataclasses.replace(config, swap_timeout=0.05)
        run_conversion(store, make_stage(store, fast, venue, executor))

        timed_out = store.get_bid(a.bid_id)
        assert timed_out.status == BidStatus.FAILED
        assert timed_out.error.startswith("timeout")
        assert timed_out.needs_reconciliation
        assert timed_out.order_ref is not None
        assert store.get_bid(allocated["C"].bid_id).status == BidStatus.EXECUTED

    def test_expired_permit_fails_without_calls(self, store, config, make_auction, place_bid, venue, executor):
        make_auction(target=100)
        bid = place_bid("sale", WETH, 10**18, 100, created_at=1, deadline=END_TIME - 1)
        store.persist_allocation("sale", [dataclasses.replace(
            bid, status=BidStatus.WINNING, fill_quantity=100, conversion_amount=10**18,
        )], [], Decimal(20))

        summary = run_conversion(store, make_stage(store, config, venue, executor))
        assert summary["failed"] == 1
        failed = store.get_bid(bid.bid_id)
        assert failed.status == BidStatus.FAILED
        assert failed.error.startswith("authorization: permit expired")
        assert venue.calls == []

    def test_wrong_spender_fails(self, store, config, make_auction, place_bid, venue, executor):
        make_auction(target=100)
        bid = place_bid("sale", USDC, 10**6, 100, created_at=1, spender="0x" + "12" * 20)
        store.persist_allocation("sale", [dataclasses.replace(
            bid, status=BidStatus.WINNING, fill_quantity=100, conversion_amount=10**6,
        )], [], Decimal("0.01"))

        run_conversion(store, make_stage(store, config, venue, executor))
        failed = store.get_bid(bid.bid_id)
        assert failed.status == BidStatus.FAILED
        assert "spender" in failed.error
        assert executor.collect_calls == []

    def test_nothing_to_convert(self, store, config, make_auction, place_bid, venue, executor):
        make_auction(target=10)
        bid = place_bid("sale", USDC, 100, 1000, created_at=1)
        store.persist_allocation("sale", [dataclasses.replace(
            bid, status=BidStatus.WINNING, fill_quantity=5, conversion_amount=0,
        )], [], Decimal("0.0000001"))

        run_conversion(store, make_stage(store, config, venue, executor))
        failed = store.get_bid(bid.bid_id)
        assert failed.status == BidStatus.FAILED
        assert failed.error.startswith("conversion: nothing to convert")
        assert executor.collect_calls == []

    def test_unit_of_account_always_direct(self, store, config, allocated, venue, executor):
        direct_auction = dataclasses.replace(store.get_auction("sale"), conversion_strategy="swap")
        stage = make_stage(store, config, venue, executor)
        b = store.get_bid(allocated["B"].bid_id)
        assert stage.select_strategy(direct_auction, b).name == "direct"
        a = store.get_bid(allocated["A"].bid_id)
        assert stage.select_strategy(direct_auction, a).name == "swap"

    def test_accepted_order_that_never_fills(self, store, config, allocated, executor):
        """An order still open at the stage timeout keeps its order ref and is flagged."""
        posts = []

        def handler(request):
            if request.method == "POST":
                posts.append(request.url.path)
                return httpx.Response(200, json={"orderHash": "0xorder"})
            return httpx.Response(200, json={"status": "pending"})

        venue = HttpSwapVenue(
            "https://api.test", 42161, poll_interval=0.01, max_polls=10_000,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.test"),
        )
        fast = dataclasses.replace(config, swap_timeout=0.2)
        run_conversion(store, make_stage(store, fast, venue, executor))

        a = store.get_bid(allocated["A"].bid_id)
        assert a.status == BidStatus.FAILED
        assert a.error.startswith("timeout")
        assert a.needs_reconciliation
        assert a.order_ref == "0xorder"
        assert len(posts) == 2
        assert store.get_bid(allocated["B"].bid_id).status == BidStatus.EXECUTED
