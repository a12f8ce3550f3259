"""Monetary arithmetic helpers.

Amounts are carried as floats in the canonical model. Rounding goes through
Decimal so that 2.675 rounds to 2.68 instead of 2.67.
"""

import math
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def round_money(value: float) -> float:
    """Round an amount half-up to cents.

    Args:
        value: Amount to round

    Returns:
        Amount rounded to 2 decimals (NaN passes through)
    """
    if math.isnan(value) or math.isinf(value):
        return value
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def to_cents(value: float) -> int:
    """Convert an amount to integer cents."""
    return int(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def compute_tax(basis: float, rate_percent: float) -> float:
    """Compute tax for a net basis at a percentage rate, rounded to cents."""
    return round_money(basis * rate_percent / 100)


def sum_money(amounts: Iterable[float]) -> float:
    """Sum amounts in integer cents to avoid float drift (NaN passes through)."""
    values = list(amounts)
    if not all(math.isfinite(a) for a in values):
        return math.fsum(values)
    return sum(to_cents(a) for a in values) / 100
