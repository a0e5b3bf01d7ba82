from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from lpengine.types import QUANT, CostEstimate, FeeBreakdown

BPS_IN_PERCENT = Decimal(10_000)


@dataclass(frozen=True)
class FeeModel:
    """Trading cost model for one venue: fee rate plus assumed spread and slippage."""

    breakdown: FeeBreakdown

    def estimate_cost(self, *, gross_notional: Decimal, taker: bool = True) -> CostEstimate:
        """Estimate trading costs for a positive gross notional amount."""
        if gross_notional <= 0:
            raise ValueError("gross_notional must be positive")

        fee_rate = self.breakdown.taker_fee_rate if taker else self.breakdown.maker_fee_rate
        estimated_fees = (gross_notional * fee_rate).quantize(QUANT)

        spread_cost = (gross_notional * Decimal(self.breakdown.assumed_spread_bps) / BPS_IN_PERCENT).quantize(QUANT)
        slippage_cost = (gross_notional * Decimal(self.breakdown.assumed_slippage_bps) / BPS_IN_PERCENT).quantize(
            QUANT
        )

        total = (estimated_fees + spread_cost + slippage_cost).quantize(QUANT)
        minimum_edge_rate = (total / gross_notional).quantize(QUANT)
        minimum_edge_bps = (minimum_edge_rate * BPS_IN_PERCENT).quantize(Decimal("0.01"))

        return CostEstimate(
            fee_currency=self.breakdown.currency,
            gross_notional=gross_notional,
            estimated_fees=estimated_fees,
            estimated_spread_cost=spread_cost,
            estimated_slippage_cost=slippage_cost,
            estimated_total_cost=total,
            minimum_edge_rate=minimum_edge_rate,
            minimum_edge_bps=minimum_edge_bps,
        )

    def swap_cost(self, notional: Decimal) -> Decimal:
        """Total cost of swapping ``notional``; zero when nothing needs swapping."""
        if notional <= 0:
            return Decimal("0")
        return self.estimate_cost(gross_notional=notional, taker=True).estimated_total_cost
