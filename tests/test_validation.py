"""
Tests for validation helpers.

Covers hash and payload formats, address checksumming, and exact
human-amount to base-unit conversion.
"""

from decimal import Decimal

import pytest

from payroll_relayer.errors import ValidationError
from payroll_relayer.validation import (
    format_units,
    is_hex_payload,
    is_tx_hash,
    to_base_units,
    validate_address,
    validate_amount,
    validate_hex_payload,
    validate_tx_hash,
)


class TestTxHash:
    """Tests for source transaction hash validation."""

    def test_valid_hash(self):
        assert is_tx_hash("0x" + "ab" * 32)
        assert is_tx_hash("0x" + "AB" * 32)

    def test_normalizes_to_lowercase(self):
        assert validate_tx_hash("0x" + "AB" * 32) == "0x" + "ab" * 32

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "0x",
            "ab" * 32,  # no prefix
            "0x" + "ab" * 31,  # 62 chars
            "0x" + "ab" * 33,  # 66 chars
            "0x" + "zz" * 32,
            "0X" + "ab" * 32,
            None,
            123,
        ],
    )
    def test_rejects_malformed(self, value):
        assert not is_tx_hash(value)
        with pytest.raises(ValidationError, match="Invalid transaction hash format"):
            validate_tx_hash(value)


class TestHexPayload:
    """Tests for opaque message/attestation payloads."""

    def test_valid_payload(self):
        assert is_hex_payload("0x00")
        assert validate_hex_payload("0xdeadBEEF", "message") == "0xdeadBEEF"

    @pytest.mark.parametrize("value", ["0x", "0x0", "deadbeef", "0xgg", "PENDING", None, b"\x00"])
    def test_rejects_malformed(self, value):
        assert not is_hex_payload(value)
        with pytest.raises(ValidationError, match="Invalid attestation format"):
            validate_hex_payload(value, "attestation")


class TestAddress:
    def test_checksums_lowercase_input(self):
        address = validate_address("0x" + "aa" * 20)
        assert address.lower() == "0x" + "aa" * 20
        assert address != "0x" + "aa" * 20

    def test_rejects_short_address(self):
        with pytest.raises(ValidationError, match="Invalid recipient"):
            validate_address("0x1234", "recipient")

    def test_rejects_non_string(self):
        with pytest.raises(ValidationError):
            validate_address(None)


class TestAmount:
    def test_positive_integer(self):
        assert validate_amount(100_000) == 100_000

    @pytest.mark.parametrize("value", [0, -1, 1.5, "100", True])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValidationError):
            validate_amount(value)


class TestToBaseUnits:
    """Tests for human amount to base unit conversion."""

    def test_whole_token(self):
        assert to_base_units(1, 6) == 1_000_000
        assert to_base_units("1", 6) == 1_000_000
        assert to_base_units(Decimal("1"), 6) == 1_000_000

    def test_point_one_float_precision(self):
        """0.1 * 10**6 is not exact as a float; the conversion must be."""
        assert to_base_units(0.1, 6) == 100_000
        assert to_base_units("0.1", 6) == 100_000

    def test_common_amounts(self):
        test_cases = [
            (0.2, 200_000),
            (0.3, 300_000),
            ("0.000001", 1),
            (1234.56, 1_234_560_000),
            ("21", 21_000_000),
        ]
        for amount, expected in test_cases:
            assert to_base_units(amount, 6) == expected, f"Failed for {amount}"

    def test_eighteen_decimals(self):
        assert to_base_units("1.5", 18) == 1_500_000_000_000_000_000

    def test_fractional_base_units_rejected(self):
        """More precision than the token supports is an error, not a rounding."""
        with pytest.raises(ValidationError, match="fractional base units"):
            to_base_units("0.0000001", 6)

    @pytest.mark.parametrize("value", ["ten", "", "Infinity", "-inf", "NaN", float("inf"), float("nan"), Decimal("Infinity")])
    def test_garbage_rejected(self, value):
        with pytest.raises(ValidationError, match="Invalid token amount"):
            to_base_units(value, 6)

    def test_huge_exponent_rejected(self):
        with pytest.raises(ValidationError, match="out of range"):
            to_base_units("1e400000000", 6)


class TestFormatUnits:
    def test_format(self):
        assert format_units(100_000, 6) == "0.1"
        assert format_units(1_000_000, 6) == "1"
        assert format_units(10_000_000, 6) == "10"
        assert format_units(1, 6) == "0.000001"
        assert format_units(0, 6) == "0"
