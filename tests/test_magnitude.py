"""
Tests for abbreviated magnitude parsing ("680K" → 680000).
"""

from decimal import Decimal

import pytest

from harvester.errors import ParseError
from harvester.magnitude import parse_magnitude, parse_magnitude_range


@pytest.mark.parametrize(
    "text, expected",
    [
        ("680K", 680_000),
        ("1.2M", 1_200_000),
        ("42", 42),
        ("3B", 3_000_000_000),
        ("2.5k", 2_500),
        ("1,250", 1_250),
        ("  15M ", 15_000_000),
        ("+7K", 7_000),
        ("0", 0),
        ("42.0", 42),
    ],
)
def test_parses_known_magnitudes(text, expected):
    assert parse_magnitude(text) == expected


def test_fractional_values_truncate_toward_zero():
    assert parse_magnitude("1.005K") == 1005
    assert parse_magnitude("1.0054K") == 1005
    assert parse_magnitude("1.9999K") == 1999
    assert parse_magnitude("42.7") == 42


def test_matches_exact_decimal_product():
    for mantissa, suffix, factor in [("3.14159", "M", 10**6), ("0.001", "B", 10**9), ("12.34", "K", 10**3)]:
        assert parse_magnitude(f"{mantissa}{suffix}") == int(Decimal(mantissa) * factor)


@pytest.mark.parametrize("bad", ["1.2X", "12X", "", "   ", "1.2.3K", "K", "1.K", "-5K", "1KK", "abc", "1,25K"])
def test_rejects_malformed_input(bad):
    with pytest.raises(ParseError):
        parse_magnitude(bad)


def test_rejects_non_strings():
    with pytest.raises(ParseError):
        parse_magnitude(None)
    with pytest.raises(ParseError):
        parse_magnitude(1.5)
    with pytest.raises(ParseError):
        parse_magnitude(True)


def test_parse_error_is_a_value_error_and_keeps_input():
    with pytest.raises(ValueError) as exc_info:
        parse_magnitude("12X")
    assert exc_info.value.text == "12X"
    assert "suffix" in exc_info.value.reason


def test_plain_ints_pass_through():
    assert parse_magnitude(1234) == 1234


# ──────────────────────────────────────────────
# Ranges
# ──────────────────────────────────────────────

def test_range_parsing():
    assert parse_magnitude_range("10K-50K") == (10_000, 50_000)
    assert parse_magnitude_range("1K – 5K") == (1_000, 5_000)
    assert parse_magnitude_range("1M") == (1_000_000, None)
    assert parse_magnitude_range("<1000") == (0, 1_000)
    assert parse_magnitude_range(">1M") == (1_000_000, None)


def test_range_rejects_inverted_bounds():
    with pytest.raises(ParseError):
        parse_magnitude_range("50K-10K")
