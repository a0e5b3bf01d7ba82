"""Rebalance and harvest planning."""

from .planner import RebalancePlanner
from .ranges import (
    RangeWidthPolicy,
    SymmetricPercentWidth,
    VolatilityWidth,
    base_value_fraction,
)

__all__ = [
    "RangeWidthPolicy",
    "RebalancePlanner",
    "SymmetricPercentWidth",
    "VolatilityWidth",
    "base_value_fraction",
]
