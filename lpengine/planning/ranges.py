"""Range width policies and concentrated-liquidity composition math.

Prices are quote per base. For a position with liquidity L on [a, b] at
price P inside the range, the held amounts are

    amount0 (base)  = L * (1/sqrt(P) - 1/sqrt(b))
    amount1 (quote) = L * (sqrt(P) - sqrt(a))

Below the range everything is base, above it everything is quote.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from lpengine.errors import InvalidRange

ZERO = Decimal("0")
ONE = Decimal("1")


class RangeWidthPolicy(Protocol):
    def range_for(self, price: Decimal) -> tuple[Decimal, Decimal]:
        """Return (lower, upper) for a new range around ``price``."""


@dataclass(frozen=True)
class SymmetricPercentWidth:
    """Range of total width ``width_pct`` of the price, centered on it."""

    width_pct: Decimal

    def range_for(self, price: Decimal) -> tuple[Decimal, Decimal]:
        if price <= 0:
            raise ValueError("price must be positive")
        half = self.width_pct / 2
        if not ZERO < half < ONE:
            raise InvalidRange(f"width_pct {self.width_pct} does not give a valid range")
        return price * (ONE - half), price * (ONE + half)


@dataclass(frozen=True)
class VolatilityWidth:
    """Range sized to expected movement: price * (1 +/- volatility * sqrt(horizon_days))."""

    volatility: Decimal
    horizon_days: Decimal

    def range_for(self, price: Decimal) -> tuple[Decimal, Decimal]:
        if price <= 0:
            raise ValueError("price must be positive")
        spread = self.volatility * self.horizon_days.sqrt()
        if not ZERO < spread < ONE:
            raise InvalidRange(f"volatility {self.volatility} over {self.horizon_days}d gives no valid range")
        return price * (ONE - spread), price * (ONE + spread)


def base_value_fraction(price: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    """Share of a position's value held in the base asset at ``price``."""
    if lower >= upper:
        raise InvalidRange(f"range_lower ({lower}) must be below range_upper ({upper})")
    if price <= lower:
        return ONE
    if price >= upper:
        return ZERO

    sqrt_p = price.sqrt()
    base_value = sqrt_p - price / upper.sqrt()
    quote_value = sqrt_p - lower.sqrt()
    total = base_value + quote_value
    if total <= 0:
        return ZERO
    return base_value / total

