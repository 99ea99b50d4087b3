"""Money / rounding helpers.

Amounts live in the database as integer cents so sums are exact; everything
above the DAL works with `Decimal` quantized to two places.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round2(value: Union[Decimal, float, int, str]) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Union[Decimal, float, int, str]) -> int:
    return int(round2(value) * 100)


def from_cents(cents: int | None) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(CENT)


def total(amounts: Iterable[Decimal]) -> Decimal:
    return round2(sum(amounts, ZERO))
