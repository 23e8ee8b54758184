"""
Bid Intake - Accept sealed bids for open auctions.

Validates a bid submission and its permit, derives the bid id as a
keccak-256 commitment over the bid terms, and appends the bid to the store as
`pending`. Nothing touches the chain here: the permit is only checked, and
used later by settlement if the bid wins.
"""

import time
from typing import Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from pta.core.config import SettlementConfig
from pta.core.models import AuctionStatus, Bid, now_ms
from pta.core.permit import Permit
from pta.core.storage import StorageManager
from pta.core.tokens import TokenRegistry
from pta.crypto import address_to_bytes, bytes_to_hex, hex_to_bytes, keccak256
from pta.utils.logger import get_logger

logger = get_logger("bidding")

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
SIGNATURE_PATTERN = r"^0x[0-9a-fA-F]{128}$"


# =============================================================================
# Schemas
# =============================================================================


class PermitPayload(BaseModel):
    """Signed spending grant as submitted with a bid."""

    owner: str = Field(..., pattern=ADDRESS_PATTERN)
    spender: str = Field(..., pattern=ADDRESS_PATTERN)
    token: str = Field(..., pattern=ADDRESS_PATTERN)
    value: int = Field(..., gt=0)
    nonce: int = Field(0, ge=0)
    deadline: int = Field(..., gt=0)
    chain_id: int = Field(..., gt=0)
    domain_name: str = Field("", max_length=64)
    domain_version: str = Field("1", min_length=1, max_length=16)
    signature: str = Field(..., pattern=SIGNATURE_PATTERN)

    @field_validator("owner", "spender", "token")
    @classmethod
    def lowercase_address(cls, v: str) -> str:
        return v.lower()

    def to_permit(self) -> Permit:
        return Permit(
            owner=self.owner,
            spender=self.spender,
            token=self.token,
            value=self.value,
            nonce=self.nonce,
            deadline=self.deadline,
            chain_id=self.chain_id,
            domain_name=self.domain_name,
            domain_version=self.domain_version,
            signature=hex_to_bytes(self.signature),
        )


class BidSubmission(BaseModel):
    """Bid creation request."""

    auction_id: str = Field(..., min_length=1)
    bidder: str = Field(..., pattern=ADDRESS_PATTERN)
    token: str = Field(..., pattern=ADDRESS_PATTERN)
    amount: int = Field(..., gt=0, lt=2**256)
    quantity: int = Field(..., gt=0, lt=2**256)
    permit: PermitPayload

    @field_validator("bidder", "token")
    @classmethod
    def lowercase_address(cls, v: str) -> str:
        return v.lower()


def compute_bid_id(auction_id: str, bidder: str, token: str, amount: int, quantity: int, nonce: int) -> str:
    """Commitment hash identifying a bid."""
    payload = (
        auction_id.encode()
        + address_to_bytes(bidder)
        + address_to_bytes(token)
        + amount.to_bytes(32, "big")
        + quantity.to_bytes(32, "big")
        + nonce.to_bytes(32, "big")
    )
    return bytes_to_hex(keccak256(payload))


# =============================================================================
# Intake
# =============================================================================


class BidIntake:
    """
    Validates and records bids.

    Args:
        store: Bid Store
        registry: Supported bid tokens
        config: Provides executor address (permit spender) and chain id
    """

    def __init__(self, store: StorageManager, registry: TokenRegistry, config: SettlementConfig):
        self.store = store
        self.registry = registry
        self.config = config

    def submit(
        self,
        submission: Union[BidSubmission, dict],
        now: Optional[int] = None,
        received_at: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Submit a bid.

        Args:
            submission: BidSubmission or its dict form
            now: Current unix time in seconds
            received_at: Arrival timestamp in ms (tie-break order); defaults to the clock

        Returns:
            (True, bid_id) on success, (False, error_message) otherwise
        """
        if not isinstance(submission, BidSubmission):
            try:
                submission = BidSubmission.model_validate(submission)
            except ValidationError as e:
                first = e.errors()[0]
                location = ".".join(str(part) for part in first["loc"])
                return False, f"invalid bid: {location}: {first['msg']}"

        current = int(time.time()) if now is None else now

        auction = self.store.get_auction(submission.auction_id)
        if auction is None:
            return False, f"Unknown auction {submission.auction_id}"
        if auction.status != AuctionStatus.OPEN or auction.has_ended(current):
            return False, f"Auction {auction.auction_id} is not accepting bids"

        if not self.registry.is_supported(submission.token):
            return False, f"Token {submission.token} is not supported for bidding"

        valid, err = self._check_permit(submission, auction.end_time, current)
        if not valid:
            return False, err

        permit = submission.permit.to_permit()
        bid_id = compute_bid_id(
            submission.auction_id,
            submission.bidder,
            submission.token,
            submission.amount,
            submission.quantity,
            permit.nonce,
        )
        bid = Bid(
            bid_id=bid_id,
            auction_id=submission.auction_id,
            bidder=submission.bidder,
            token=submission.token,
            amount=submission.amount,
            quantity=submission.quantity,
            created_at=received_at if received_at is not None else now_ms(),
            permit=permit,
        )
        if not self.store.add_bid(bid):
            return False, f"Duplicate bid {bid_id}"

        logger.info(
            f"Bid {bid_id[:10]} accepted: {submission.amount} {self.registry.symbol(submission.token)} "
            f"for {submission.quantity} units from {submission.bidder[:10]}"
        )
        return True, bid_id

    def _check_permit(self, submission: BidSubmission, auction_end: int, now: int) -> Tuple[bool, str]:
        payload = submission.permit
        if payload.owner != submission.bidder:
            return False, "Permit owner does not match bidder"
        if payload.chain_id != self.config.chain_id:
            return False, f"Permit chain id {payload.chain_id} does not match {self.config.chain_id}"
        if payload.deadline < auction_end:
            return False, "Permit expires before the auction ends"
        if (payload.domain_name, payload.domain_version) != self.registry.permit_domain(submission.token):
            return False, f"Permit domain does not match token {self.registry.symbol(submission.token)}"

        permit = payload.to_permit()
        valid, err = permit.validate(self.config.executor_address, submission.token, submission.amount, now)
        if not valid:
            return False, f"Invalid permit: {err}"
        return True, ""
