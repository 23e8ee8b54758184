"""
Permit - Off-chain spending authorizations for bid tokens.

A bidder signs a permit at bid time that lets the settlement executor pull a
bounded amount of the bid token from the bidder's wallet before a deadline.
Nothing moves on-chain until the bid wins; losing bidders' permits are simply
never used.

Permits are EIP-2612: the owner signs EIP-712 typed data

    Permit(address owner,address spender,uint256 value,uint256 nonce,uint256 deadline)

under the bid token's domain (name, version, chainId, verifyingContract), so
the token's own permit() accepts the signature on-chain.
"""

import time
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from eth_account.messages import SignableMessage, encode_typed_data
from web3 import Web3

from pta.core.tokens import TokenRegistry
from pta.crypto import (
    bytes_to_hex,
    hex_to_bytes,
    keccak256,
    keypair_from_private_key,
    sign,
    signed_by,
)
from pta.utils.logger import get_logger
from pta.utils.validation import validate_address, validate_amount, validate_signature, validate_timestamp

logger = get_logger("permit")

PERMIT_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class Permit:
    """
    A signed, time-bounded spending grant from `owner` to `spender`.

    Attributes:
        owner: Bidder address (0x, lowercase)
        spender: Settlement executor address allowed to pull funds
        token: Bid token address (the EIP-712 verifying contract)
        value: Maximum raw amount the spender may pull
        nonce: Per-owner replay counter
        deadline: Unix timestamp (seconds) after which the permit is void
        chain_id: Chain the permit is valid on
        domain_name: EIP-712 domain name of the token (its ERC-20 name)
        domain_version: EIP-712 domain version of the token
        signature: 64-byte (r || s) signature over `digest()`
    """
    owner: str
    spender: str
    token: str
    value: int
    nonce: int
    deadline: int
    chain_id: int
    domain_name: str = ""
    domain_version: str = "1"
    signature: bytes = b""

    def typed_data(self) -> dict:
        """EIP-712 structured data for this permit."""
        return {
            "types": PERMIT_TYPES,
            "primaryType": "Permit",
            "domain": {
                "name": self.domain_name,
                "version": self.domain_version,
                "chainId": self.chain_id,
                "verifyingContract": Web3.to_checksum_address(self.token),
            },
            "message": {
                "owner": Web3.to_checksum_address(self.owner),
                "spender": Web3.to_checksum_address(self.spender),
                "value": self.value,
                "nonce": self.nonce,
                "deadline": self.deadline,
            },
        }

    def signable_message(self) -> SignableMessage:
        return encode_typed_data(full_message=self.typed_data())

    def digest(self) -> bytes:
        """32-byte hash the owner signs: keccak256(0x19 0x01 || domainSeparator || structHash)."""
        message = self.signable_message()
        return keccak256(b"\x19" + bytes(message.version) + bytes(message.header) + bytes(message.body))

    def is_expired(self, now: Optional[int] = None) -> bool:
        """Check if the permit deadline has passed."""
        current = int(time.time()) if now is None else now
        return current > self.deadline

    def verify_signature(self) -> bool:
        """True if the signature recovers to `owner`."""
        return signed_by(self.digest(), self.signature, self.owner)

    def validate(
        self,
        spender: str,
        token: str,
        amount: int,
        now: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Check the permit can fund a pull of `amount` of `token` by `spender`.

        Returns:
            (is_valid, error_message)
        """
        if self.is_expired(now):
            return False, f"permit expired at {self.deadline}"
        if self.spender.lower() != spender.lower():
            return False, f"permit spender {self.spender} is not the executor {spender}"
        if self.token.lower() != token.lower():
            return False, f"permit token {self.token} does not match bid token {token}"
        if amount > self.value:
            return False, f"permit value {self.value} below required amount {amount}"
        if not self.verify_signature():
            return False, "permit signature does not recover to owner"
        return True, ""

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "spender": self.spender,
            "token": self.token,
            "value": str(self.value),
            "nonce": self.nonce,
            "deadline": self.deadline,
            "chain_id": self.chain_id,
            "domain_name": self.domain_name,
            "domain_version": self.domain_version,
            "signature": bytes_to_hex(self.signature),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Permit":
        valid, err = check_permit_fields(data)
        if not valid:
            raise ValueError(err)
        return cls(
            owner=data["owner"].lower(),
            spender=data["spender"].lower(),
            token=data["token"].lower(),
            value=int(data["value"]),
            nonce=int(data["nonce"]),
            deadline=int(data["deadline"]),
            chain_id=int(data["chain_id"]),
            domain_name=data.get("domain_name", ""),
            domain_version=data.get("domain_version", "1"),
            signature=hex_to_bytes(data["signature"]),
        )


def check_permit_fields(data: dict) -> Tuple[bool, str]:
    """Shape check for an untrusted permit payload before `Permit.from_dict`."""
    for key in ("owner", "spender", "token"):
        valid, err = validate_address(data.get(key), f"permit.{key}")
        if not valid:
            return False, err
    try:
        value = int(data.get("value"))
    except (TypeError, ValueError):
        return False, "permit.value must be an integer"
    valid, err = validate_amount(value, "permit.value")
    if not valid:
        return False, err
    valid, err = validate_timestamp(data.get("deadline"), "permit.deadline")
    if not valid:
        return False, err
    return validate_signature(data.get("signature"), "permit.signature")


def sign_permit(
    private_key: bytes,
    spender: str,
    token: str,
    value: int,
    deadline: int,
    chain_id: int,
    nonce: int = 0,
    domain: Optional[Tuple[str, str]] = None,
) -> Permit:
    """
    Create and sign a permit with the owner's private key.

    The owner address is derived from the key. `domain` is the token's
    (name, version) EIP-712 domain; it defaults to the built-in token list.
    """
    owner = keypair_from_private_key(private_key).address
    domain_name, domain_version = domain or TokenRegistry().permit_domain(token)
    unsigned = Permit(
        owner=owner,
        spender=spender.lower(),
        token=token.lower(),
        value=value,
        nonce=nonce,
        deadline=deadline,
        chain_id=chain_id,
        domain_name=domain_name,
        domain_version=domain_version,
    )
    signature = sign(unsigned.digest(), private_key)
    logger.debug(f"Permit signed: owner={owner[:10]}, token={token[:10]}, value={value}")
    return replace(unsigned, signature=signature)
