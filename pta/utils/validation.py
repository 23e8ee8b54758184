"""
Input Validation - Security-focused input sanitization.

Provides validation for all external inputs reaching the settlement engine:
- Malformed addresses and signatures
- Integer overflows (uint256 bounds)
- Zero or negative quantities
"""

from typing import Any, Optional, Tuple

# =============================================================================
# Constants
# =============================================================================

ADDRESS_SIZE = 20
SIGNATURE_SIZE = 64

# Field bounds (EVM uint256)
MIN_AMOUNT = 0
MAX_AMOUNT = 2**256 - 1
MAX_TIMESTAMP = 2**64 - 1


# =============================================================================
# Validation Functions
# =============================================================================


def validate_integer(
    value: Any,
    name: str,
    min_val: int = MIN_AMOUNT,
    max_val: int = MAX_AMOUNT,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Args:
        value: Value to validate
        name: Field name for errors
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        (is_valid, error_message)
    """
    # bool is an int subclass; never a valid amount
    if not isinstance(value, int) or isinstance(value, bool):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_amount(amount: Any, name: str = "amount") -> Tuple[bool, str]:
    """Validate a raw token amount (uint256)."""
    return validate_integer(amount, name, MIN_AMOUNT, MAX_AMOUNT)


def validate_quantity(quantity: Any, name: str = "quantity") -> Tuple[bool, str]:
    """Validate a requested quantity; zero is rejected."""
    return validate_integer(quantity, name, 1, MAX_AMOUNT)


def validate_timestamp(value: Any, name: str = "timestamp") -> Tuple[bool, str]:
    """Validate a unix timestamp in seconds."""
    return validate_integer(value, name, 0, MAX_TIMESTAMP)


def validate_hex_string(value: Any, name: str, expected_bytes: Optional[int] = None) -> Tuple[bool, str]:
    """
    Validate a hex string (with or without 0x prefix).

    Args:
        value: Value to validate
        name: Field name
        expected_bytes: Expected byte length when decoded

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    hex_str = value[2:] if value.startswith(("0x", "0X")) else value

    if len(hex_str) % 2 != 0:
        return False, f"{name} has odd length, invalid hex"

    try:
        bytes.fromhex(hex_str)
    except ValueError:
        return False, f"{name} contains invalid hex characters"

    if expected_bytes is not None:
        actual_bytes = len(hex_str) // 2
        if actual_bytes != expected_bytes:
            return False, f"{name} must be {expected_bytes} bytes, got {actual_bytes}"

    return True, ""


def validate_address(address: Any, name: str = "address") -> Tuple[bool, str]:
    """Validate a 0x-prefixed 20-byte address."""
    if not isinstance(address, str) or not address.startswith("0x"):
        return False, f"{name} must be a 0x-prefixed string"
    return validate_hex_string(address, name, ADDRESS_SIZE)


def validate_signature(signature: Any, name: str = "signature") -> Tuple[bool, str]:
    """Validate a 64-byte (r || s) signature given as hex."""
    return validate_hex_string(signature, name, SIGNATURE_SIZE)


# =============================================================================
# Composite Validators
# =============================================================================


def validate_bid_values(amount: Any, quantity: Any) -> Tuple[bool, str]:
    """Validate the numeric part of a bid (raw amount and requested quantity)."""
    valid, err = validate_amount(amount, "bid amount")
    if not valid:
        return False, err
    return validate_quantity(quantity, "requested quantity")


def validate_allocation_target(target_allocation: Any, total_supply: Any) -> Tuple[bool, str]:
    """Target allocation must be positive and never exceed total supply."""
    valid, err = validate_quantity(target_allocation, "target allocation")
    if not valid:
        return False, err
    valid, err = validate_quantity(total_supply, "total supply")
    if not valid:
        return False, err
    if target_allocation > total_supply:
        return False, f"target allocation {target_allocation} exceeds total supply {total_supply}"
    return True, ""


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "validate_integer",
    "validate_amount",
    "validate_quantity",
    "validate_timestamp",
    "validate_hex_string",
    "validate_address",
    "validate_signature",
    "validate_bid_values",
    "validate_allocation_target",
    "ADDRESS_SIZE",
    "SIGNATURE_SIZE",
]
