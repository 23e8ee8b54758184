"""
Shared fixtures: a fresh store per test, an auction factory and a factory for
bids carrying real signed permits.
"""

import asyncio
from decimal import Decimal

import pytest

from pta.core.bidding import compute_bid_id
from pta.core.config import DEFAULT_UNIT_OF_ACCOUNT, SettlementConfig
from pta.core.models import Auction, Bid, BidStatus
from pta.core.permit import sign_permit
from pta.core.settlement import allocate, value_bids
from pta.core.storage import StorageManager
from pta.crypto import generate_keypair
from pta.venues.oracle import StaticPriceOracle

EXECUTOR = "0x" + "ee" * 20
AUCTION_TOKEN = "0x" + "aa" * 20
WETH = "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"
USDC = DEFAULT_UNIT_OF_ACCOUNT
END_TIME = 1_700_000_000
REFERENCE_PRICES = {WETH: (2000, 18)}


@pytest.fixture
def config(tmp_path):
    return SettlementConfig(data_dir=tmp_path, log_dir=tmp_path / "logs", executor_address=EXECUTOR)


@pytest.fixture
def store(tmp_path):
    manager = StorageManager(tmp_path)
    yield manager
    manager.close()


@pytest.fixture
def make_auction(store):
    def _make(auction_id="sale", target=1000, supply=10_000, strategy="swap", reserve="0", end_time=END_TIME):
        auction = Auction(
            auction_id=auction_id,
            auction_token=AUCTION_TOKEN,
            total_supply=supply,
            target_allocation=target,
            end_time=end_time,
            conversion_strategy=strategy,
            reserve_price=Decimal(reserve),
        )
        assert store.create_auction(auction)
        return auction
    return _make


@pytest.fixture
def place_bid(store, config):
    """Store a pending bid with a valid permit; returns the Bid."""
    def _place(auction_id, token, amount, quantity, created_at, deadline=END_TIME + 3600, spender=EXECUTOR):
        kp = generate_keypair()
        permit = sign_permit(kp.private_key, spender, token, amount, deadline, config.chain_id)
        bid = Bid(
            bid_id=compute_bid_id(auction_id, kp.address, token, amount, quantity, 0),
            auction_id=auction_id,
            bidder=kp.address,
            token=token,
            amount=amount,
            quantity=quantity,
            created_at=created_at,
            permit=permit,
        )
        assert store.add_bid(bid)
        return bid
    return _place


@pytest.fixture
def reference_bids(make_auction, place_bid):
    """
    The four-bid reference auction (target 1000, WETH at $2000):
    A 400 @ $10 (WETH), B 500 @ $8 (USDC, earlier), C 300 @ $8 (WETH, later),
    D 1000 @ $5 (USDC).
    """
    make_auction()
    return {
        "A": place_bid("sale", WETH, 2 * 10**18, 400, created_at=1000),
        "B": place_bid("sale", USDC, 4000 * 10**6, 500, created_at=2000),
        "C": place_bid("sale", WETH, 12 * 10**17, 300, created_at=3000),
        "D": place_bid("sale", USDC, 5000 * 10**6, 1000, created_at=4000),
    }


@pytest.fixture
def allocated(store, config, reference_bids):
    """Reference auction valued and allocated: A, B, C winning and D losing."""
    auction = store.get_auction("sale")
    valued = asyncio.run(value_bids(
        store.list_bids("sale", BidStatus.PENDING),
        StaticPriceOracle(REFERENCE_PRICES),
        unit_of_account=config.unit_of_account,
    ))
    result = allocate(valued, auction.target_allocation)
    store.persist_allocation("sale", result.winners, result.losers, result.clearing_price)
    return reference_bids
