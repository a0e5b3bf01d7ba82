"""DEX/CEX arbitrage scanning."""

from .calculator import ArbitrageComputation, calculate_rotation_edge
from .scanner import ArbitrageScanner

__all__ = ["ArbitrageComputation", "ArbitrageScanner", "calculate_rotation_edge"]
