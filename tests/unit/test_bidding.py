"""
Unit tests for bid intake.
"""

import pytest

from pta.core.bidding import BidIntake, BidSubmission, compute_bid_id
from pta.core.models import BidStatus
from pta.core.permit import sign_permit
from pta.core.tokens import TokenRegistry
from pta.crypto import bytes_to_hex, generate_keypair

EXECUTOR = "0x" + "ee" * 20
WETH = "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"
END_TIME = 1_700_000_000
NOW = END_TIME - 600


def submission(kp=None, token=WETH, amount=10**18, quantity=100, deadline=END_TIME + 3600,
               spender=EXECUTOR, chain_id=42161, auction_id="sale", nonce=0):
    kp = kp or generate_keypair()
    permit = sign_permit(kp.private_key, spender, token, amount, deadline, chain_id, nonce=nonce)
    return {
        "auction_id": auction_id,
        "bidder": kp.address,
        "token": token,
        "amount": amount,
        "quantity": quantity,
        "permit": {**permit.to_dict(), "signature": bytes_to_hex(permit.signature)},
    }


@pytest.fixture
def intake(store, config, make_auction):
    make_auction()
    return BidIntake(store, TokenRegistry(), config)


class TestBidIntake:
    """Tests for accepting and rejecting bids."""

    def test_accepts_valid_bid(self, intake, store):
        payload = submission()
        ok, bid_id = intake.submit(payload, now=NOW, received_at=123)
        assert ok
        bid = store.get_bid(bid_id)
        assert bid.status == BidStatus.PENDING
        assert bid.created_at == 123
        assert bid.permit.owner == payload["bidder"]

    def test_bid_id_is_commitment(self, intake):
        payload = submission()
        ok, bid_id = intake.submit(payload, now=NOW)
        assert ok
        assert bid_id == compute_bid_id("sale", payload["bidder"], WETH, 10**18, 100, 0)

    def test_duplicate_rejected(self, intake):
        payload = submission()
        assert intake.submit(payload, now=NOW)[0]
        ok, err = intake.submit(payload, now=NOW)
        assert not ok
        assert err.startswith("Duplicate bid")

    def test_same_terms_new_nonce_accepted(self, intake):
        kp = generate_keypair()
        assert intake.submit(submission(kp), now=NOW)[0]
        assert intake.submit(submission(kp, nonce=1), now=NOW)[0]

    def test_malformed_payload(self, intake):
        payload = submission()
        payload["quantity"] = 0
        ok, err = intake.submit(payload, now=NOW)
        assert not ok
        assert err.startswith("invalid bid: quantity")

    def test_bad_address(self, intake):
        payload = submission()
        payload["token"] = "0x1234"
        ok, err = intake.submit(payload, now=NOW)
        assert not ok
        assert "token" in err

    def test_unknown_auction(self, intake):
        ok, err = intake.submit(submission(auction_id="other"), now=NOW)
        assert not ok
        assert err == "Unknown auction other"

    def test_ended_auction(self, intake):
        ok, err = intake.submit(submission(), now=END_TIME)
        assert not ok
        assert "not accepting bids" in err

    def test_settling_auction(self, intake, store):
        store.try_begin_settlement("sale")
        ok, err = intake.submit(submission(), now=NOW)
        assert not ok
        assert "not accepting bids" in err

    def test_unsupported_token(self, intake):
        ok, err = intake.submit(submission(token="0x" + "77" * 20), now=NOW)
        assert not ok
        assert "not supported" in err

    def test_owner_must_be_bidder(self, intake):
        payload = submission()
        payload["bidder"] = generate_keypair().address
        ok, err = intake.submit(payload, now=NOW)
        assert not ok
        assert err == "Permit owner does not match bidder"

    def test_wrong_chain(self, intake):
        ok, err = intake.submit(submission(chain_id=1), now=NOW)
        assert not ok
        assert "chain id" in err

    def test_permit_must_outlive_auction(self, intake):
        ok, err = intake.submit(submission(deadline=END_TIME - 1), now=NOW)
        assert not ok
        assert err == "Permit expires before the auction ends"

    def test_wrong_spender(self, intake):
        ok, err = intake.submit(submission(spender="0x" + "12" * 20), now=NOW)
        assert not ok
        assert err.startswith("Invalid permit: permit spender")

    def test_permit_value_below_amount(self, intake):
        payload = submission()
        payload["amount"] = 2 * 10**18
        ok, err = intake.submit(payload, now=NOW)
        assert not ok
        assert "below required amount" in err

    def test_forged_signature(self, intake):
        payload = submission()
        payload["permit"]["signature"] = submission()["permit"]["signature"]
        ok, err = intake.submit(payload, now=NOW)
        assert not ok
        assert "signature" in err

    def test_accepts_model_instance(self, intake):
        ok, _ = intake.submit(BidSubmission.model_validate(submission()), now=NOW)
        assert ok

    def test_permit_domain_must_match_token(self, intake):
        kp = generate_keypair()
        payload = submission(kp)
        forged = sign_permit(kp.private_key, EXECUTOR, WETH, 10**18, END_TIME + 3600, 42161,
                             domain=("Wrapped Ether", "2"))
        payload["permit"] = {**forged.to_dict(), "signature": bytes_to_hex(forged.signature)}
        ok, err = intake.submit(payload, now=NOW)
        assert not ok
        assert err == "Permit domain does not match token WETH"
