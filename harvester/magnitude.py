"""
magnitude.py – exact integers from human-abbreviated counts.

``"680K"`` → ``680000``, ``"1.2M"`` → ``1200000``, ``"42"`` → ``42``.

Fractional values are multiplied with :class:`decimal.Decimal` and then
truncated toward zero, so ``"1.005K"`` and ``"1.0054K"`` both give ``1005``.
Binary floats would turn ``1.005 * 1000`` into ``1004.999…``.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from .errors import ParseError

__all__ = ["SUFFIXES", "parse_magnitude", "parse_magnitude_range"]


SUFFIXES = {
    "K": 1_000,
    "k": 1_000,
    "M": 1_000_000,
    "m": 1_000_000,
    "B": 1_000_000_000,
    "b": 1_000_000_000,
}

_MAGNITUDE_RE = re.compile(
    r"""
    ^(?P<sign>[+-])?
    (?P<body>\d{1,3}(?:,\d{3})+|\d+)
    (?:\.(?P<frac>\d+))?
    (?P<suffix>[A-Za-z])?$
    """,
    re.VERBOSE,
)

_RANGE_SPLIT = re.compile(r"\s*[-–]\s*")


def parse_magnitude(text: Any) -> int:
    """Parse an abbreviated non-negative magnitude into an exact integer.

    Raises :class:`ParseError` for empty input, negative values, malformed
    numeric bodies (``"1.2.3K"``) and unknown suffixes (``"12X"``).
    """
    if isinstance(text, bool) or not isinstance(text, (str, int)):
        raise ParseError(text, "not a string")
    if isinstance(text, int):
        if text < 0:
            raise ParseError(text, "negative magnitude")
        return text

    match = _MAGNITUDE_RE.match(text.strip())
    if match is None:
        raise ParseError(text)
    if match["sign"] == "-":
        raise ParseError(text, "negative magnitude")

    suffix = match["suffix"]
    factor = 1
    if suffix is not None:
        if suffix not in SUFFIXES:
            raise ParseError(text, "unrecognized suffix")
        factor = SUFFIXES[suffix]

    number = match["body"].replace(",", "")
    if match["frac"]:
        number = f"{number}.{match['frac']}"
    try:
        value = Decimal(number) * factor
    except InvalidOperation as exc:  # pragma: no cover - regex guards the body
        raise ParseError(text) from exc

    # int() on a Decimal truncates toward zero
    return int(value)


def parse_magnitude_range(text: str) -> Tuple[int, Optional[int]]:
    """Parse ``"10K-50K"`` → ``(10000, 50000)`` and ``"1M"`` → ``(1000000, None)``.

    ``"<1000"`` / ``">1M"`` style bounds give an open range.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError(text, "empty range")

    t = text.strip()
    if t.startswith("<"):
        return 0, parse_magnitude(t[1:])
    if t.startswith(">"):
        return parse_magnitude(t[1:]), None

    parts = _RANGE_SPLIT.split(t)
    if len(parts) == 1:
        return parse_magnitude(parts[0]), None
    if len(parts) != 2:
        raise ParseError(text, "malformed range")

    lower, upper = parse_magnitude(parts[0]), parse_magnitude(parts[1])
    if upper < lower:
        raise ParseError(text, "range upper bound below lower bound")
    return lower, upper
