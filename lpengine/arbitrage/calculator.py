from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from lpengine.fees.model import FeeModel
from lpengine.types import FeeBreakdown

PERCENT = Decimal("100")


@dataclass(frozen=True)
class ArbitrageComputation:
    pair: str
    buy_venue: str
    sell_venue: str
    buy_price: Decimal
    sell_price: Decimal
    notional: Decimal
    spread_pct: Decimal
    gross_profit: Decimal
    total_fees: Decimal
    net_profit: Decimal
    net_edge_rate: Decimal


def calculate_rotation_edge(
    *,
    pair: str,
    buy_venue: str,
    sell_venue: str,
    buy_price: Decimal,
    sell_price: Decimal,
    notional: Decimal,
    buy_fees: FeeBreakdown,
    sell_fees: FeeBreakdown,
    transfer_cost: Decimal = Decimal("0"),
) -> ArbitrageComputation:
    """Edge of buying ``notional`` (quote asset) on the cheap venue and valuing it on the other.

    ``net_edge_rate`` is the net profit as a fraction of ``notional``.
    """
    if notional <= 0:
        raise ValueError("notional must be positive")
    if buy_price <= 0 or sell_price <= 0:
        raise ValueError("prices must be positive")

    amount = notional / buy_price
    sell_notional = sell_price * amount

    spread_pct = ((sell_price - buy_price) / buy_price) * PERCENT
    gross_profit = sell_notional - notional

    buy_cost = FeeModel(buy_fees).estimate_cost(gross_notional=notional, taker=True)
    sell_cost = FeeModel(sell_fees).estimate_cost(gross_notional=sell_notional, taker=True)
    total_fees = buy_cost.estimated_total_cost + sell_cost.estimated_total_cost + transfer_cost
    net_profit = gross_profit - total_fees

    return ArbitrageComputation(
        pair=pair,
        buy_venue=buy_venue,
        sell_venue=sell_venue,
        buy_price=buy_price,
        sell_price=sell_price,
        notional=notional,
        spread_pct=spread_pct,
        gross_profit=gross_profit,
        total_fees=total_fees,
        net_profit=net_profit,
        net_edge_rate=net_profit / notional,
    )
