"""
Fixed-point helpers.

Every price and percentage in the engine is an int scaled by PRECISION:
  1 % fee         -> 1 * PRECISION
  $1800.50 price  -> 18_005_000_000_000
Token amounts carry the collateral token's own decimals.

Floats never touch state.  Decimal is only used to render values in logs.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Union

PRECISION = 10 ** 10
FUNDING_PRECISION = 10 ** 18

Numeric = Union[int, str, Decimal]


def to_price(value: Numeric) -> int:
    """Human price ("1800.5") -> scaled int."""
    return int(Decimal(str(value)) * PRECISION)


def to_percent(value: Numeric) -> int:
    """Human percent ("0.08" meaning 0.08 %) -> scaled int."""
    return int(Decimal(str(value)) * PRECISION)


def to_amount(value: Numeric, decimals: int = 6) -> int:
    return int(Decimal(str(value)) * (10 ** decimals))


def fmt_price(value: int) -> Decimal:
    return Decimal(value) / PRECISION


def fmt_amount(value: int, decimals: int = 6) -> Decimal:
    return Decimal(value) / (10 ** decimals)


def percent_of(value: int, percent_p: int) -> int:
    """value * percent_p %, floored."""
    return value * percent_p // PRECISION // 100


def median(values: list[int]) -> int:
    """Median of integer answers; even counts floor-average the middle pair."""
    if not values:
        raise ValueError("median of empty list")
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) // 2


def sdiv(a: int, b: int) -> int:
    """Signed integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q
