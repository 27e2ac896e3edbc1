"""
Input validation helpers.

Everything here runs before any network call; failures raise ValidationError.
"""

import re
from decimal import Decimal, InvalidOperation, Overflow
from typing import Union

from web3 import Web3

from .errors import ValidationError

TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
HEX_PAYLOAD_PATTERN = re.compile(r"^0x(?:[a-fA-F0-9]{2})+$")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def is_tx_hash(value: object) -> bool:
    """Check the bridging protocol's 32-byte transaction hash format."""
    return isinstance(value, str) and TX_HASH_PATTERN.match(value) is not None


def validate_tx_hash(value: object) -> str:
    """
    Validate and normalize a source transaction hash.

    Returns:
        Lower-cased ``0x``-prefixed hash
    """
    if not is_tx_hash(value):
        raise ValidationError(
            f"Invalid transaction hash format: {value!r}. "
            "It should be a 64-character hex string starting with 0x."
        )
    return value.lower()  # type: ignore[union-attr]


def is_hex_payload(value: object) -> bool:
    """Non-empty, even-length, ``0x``-prefixed hex string."""
    return isinstance(value, str) and HEX_PAYLOAD_PATTERN.match(value) is not None


def validate_hex_payload(value: object, field_name: str) -> str:
    """Validate an opaque byte payload (message or attestation)."""
    if not is_hex_payload(value):
        preview = value[:42] if isinstance(value, str) else value
        raise ValidationError(f"Invalid {field_name} format: {preview!r}")
    return value  # type: ignore[return-value]


def validate_address(value: object, field_name: str = "address") -> str:
    """Return the checksummed form of a 20-byte address."""
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValidationError(f"Invalid {field_name}: {value!r}")
    return Web3.to_checksum_address(value)


def validate_amount(amount: object) -> int:
    """Payment amounts are positive integers in the smallest token unit."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Amount must be an integer in base units, got {amount!r}")
    if amount <= 0:
        raise ValidationError(f"Amount must be greater than zero, got {amount}")
    return amount


def to_base_units(value: Union[int, float, str, Decimal], decimals: int) -> int:
    """
    Convert a human-readable token amount to base units with exact precision.

    Floats are routed through ``str`` first: ``0.1 * 10**6`` is not exact in
    binary floating point but ``Decimal("0.1") * 10**6`` is.

    Examples:
        >>> to_base_units("0.1", 6)
        100000
        >>> to_base_units(0.2, 6)
        200000
    """
    try:
        if isinstance(value, Decimal):
            dec_value = value
        else:
            dec_value = Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid token amount: {value!r}") from e

    if not dec_value.is_finite():
        raise ValidationError(f"Invalid token amount: {value!r}")

    try:
        units = dec_value * (Decimal(10) ** decimals)
    except (InvalidOperation, Overflow) as e:
        raise ValidationError(f"Token amount out of range: {value!r}") from e

    if units != units.to_integral_value():
        raise ValidationError(
            f"Amount {value} results in fractional base units at {decimals} decimals: {units}"
        )

    return int(units)


def format_units(amount: int, decimals: int) -> str:
    """Render base units as a decimal string (e.g. 100000 at 6 decimals -> "0.1")."""
    value = Decimal(amount) / (Decimal(10) ** decimals)
    text = format(value.normalize(), "f")
    return text
