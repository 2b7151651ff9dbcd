"""
Stake Scoring Engine - Fixed-Point Arithmetic.

All rounding in the engine goes through these helpers so that
identical inputs produce identical integer scores and pct
values on every platform. The convention is ROUND_FLOOR.
"""

import re
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Optional, Tuple


ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
LAMPORTS_PER_SOL = Decimal(1_000_000_000)

FRACTION_PLACES = 6

_VERSION_PATTERN = re.compile(r"^\s*v?(\d+)(?:\.(\d+))?(?:\.(\d+))?")


def to_decimal(value: Any) -> Decimal:
    """Convert ints, floats and strings to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return to_decimal(value)


def floor_int(value: Decimal) -> int:
    """Round down to an integer."""
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def floor_places(value: Decimal, places: int = FRACTION_PLACES) -> Decimal:
    """Round down to a fixed number of decimal places."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_FLOOR)


def clamp(value: Decimal, low: Decimal = ZERO, high: Decimal = ONE) -> Decimal:
    return max(low, min(high, value))


def parse_version(version: Optional[str]) -> Tuple[int, int, int]:
    """
    Parse a semantic version into a comparable tuple.

    Unparseable versions compare as 0.0.0, i.e. below any
    configured minimum release.
    """
    if not version:
        return (0, 0, 0)
    match = _VERSION_PATTERN.match(version)
    if not match:
        return (0, 0, 0)
    return tuple(int(part) if part else 0 for part in match.groups())


def version_below(version: Optional[str], minimum: Optional[str]) -> bool:
    """True when a minimum is configured and version is older."""
    if not minimum:
        return False
    return parse_version(version) < parse_version(minimum)
