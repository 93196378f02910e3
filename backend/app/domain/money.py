"""Fixed-precision helpers applied whenever an amount is persisted."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_EVEN, Decimal

from .errors import InvariantViolation

MONEY_QUANTUM = Decimal("0.000001")


def to_money(value: float) -> Decimal:
    if not math.isfinite(value):
        raise InvariantViolation(f"Non-finite amount {value!r}")
    return Decimal(repr(float(value))).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN)


def quantize(value: float) -> float:
    return float(to_money(value))


def add_money(balance: float, delta: float) -> float:
    """Return ``balance + delta`` rounded to the persisted precision."""

    return float(to_money(balance) + to_money(delta))


__all__ = ["MONEY_QUANTUM", "add_money", "quantize", "to_money"]
