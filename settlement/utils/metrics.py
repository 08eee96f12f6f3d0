"""Pure metric and money math helpers used by fraud scoring & settlement."""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

CENT = Decimal("0.01")


def safe_div(numerator: float | int, denominator: float | int) -> float:
    if denominator in (0, 0.0):
        return 0.0
    return float(numerator) / float(denominator)


def engagement_ratio(views: int, interactions: int) -> float:
    """views / max(interactions, 1); zero views yield 0."""
    return safe_div(views, max(interactions, 1))


def growth_pct(baseline: int, latest: int) -> Optional[float]:
    """Percentage growth from baseline; None when baseline is zero."""
    if baseline <= 0:
        return None
    return (latest - baseline) / float(baseline) * 100.0


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 0.1 stays 0.1 rather than its binary expansion
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_rupiah(amount: Decimal | float | int) -> str:
    """Indonesian formatting: Rp1.234.567 or Rp1.234,50 when fractional."""
    value = round_money(to_decimal(amount))
    whole, _, frac = f"{abs(value):.2f}".partition(".")
    grouped = f"{int(whole):,}".replace(",", ".")
    sign = "-" if value < 0 else ""
    if frac == "00":
        return f"{sign}Rp{grouped}"
    return f"{sign}Rp{grouped},{frac}"


__all__ = [
    "CENT",
    "safe_div",
    "engagement_ratio",
    "growth_pct",
    "to_decimal",
    "round_money",
    "format_rupiah",
]
