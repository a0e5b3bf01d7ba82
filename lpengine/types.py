from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

PlanKind = Literal["open", "rebalance", "harvest", "rotate", "close"]
StepAction = Literal["withdraw", "swap", "deposit", "collect_fees", "transfer"]
StepState = Literal["settled", "failed", "unknown"]
SwapSide = Literal["buy", "sell"]

# (venue, asset)
AccountKey = tuple[str, str]

QUANT = Decimal("0.00000001")


def utc_now() -> datetime:
    """Return a timezone-aware timestamp in UTC."""
    return datetime.now(timezone.utc)


def split_pair(pair: str) -> tuple[str, str]:
    """Split a pair like ``ETH/USDC`` into ``("ETH", "USDC")``."""
    base, sep, quote = pair.partition("/")
    if not sep or not base or not quote:
        raise ValueError(f"pair must look like BASE/QUOTE, got {pair!r}")
    return base, quote


@dataclass(frozen=True)
class FeeBreakdown:
    currency: str
    maker_fee_rate: Decimal
    taker_fee_rate: Decimal
    assumed_spread_bps: int
    assumed_slippage_bps: int


@dataclass(frozen=True)
class CostEstimate:
    fee_currency: str
    gross_notional: Decimal
    estimated_fees: Decimal
    estimated_spread_cost: Decimal
    estimated_slippage_cost: Decimal
    estimated_total_cost: Decimal
    minimum_edge_rate: Decimal
    minimum_edge_bps: Decimal


@dataclass(frozen=True)
class PriceQuote:
    """A single price observation from one source.

    ``confidence`` is the source's self-reported reliability in (0, 1].
    Timestamps are expected to be timezone-aware (UTC).
    """

    source: str
    pair: str
    price: Decimal
    confidence: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class ConsensusPrice:
    pair: str
    value: Decimal
    confidence_interval: tuple[Decimal, Decimal]
    contributing_sources: tuple[str, ...]
    computed_at: datetime
    quote_version: int = 0


class PositionState(str, Enum):
    ACTIVE = "active"
    REBALANCING = "rebalancing"
    CLOSED = "closed"


@dataclass(frozen=True)
class Position:
    """Immutable view of a managed liquidity position.

    ``liquidity`` and ``in_transit`` are denominated in the pair's quote asset.
    ``in_transit`` is capital withdrawn from the range during a rebalance and
    not yet redeposited.
    """

    id: str
    pool: str
    pair: str
    venue: str
    range_lower: Decimal
    range_upper: Decimal
    liquidity: Decimal
    accrued_fees: Decimal = Decimal("0")
    in_transit: Decimal = Decimal("0")
    state: PositionState = PositionState.ACTIVE
    version: int = 0
    opened_at: Optional[datetime] = None
    last_harvested_at: Optional[datetime] = None

    @property
    def width(self) -> Decimal:
        return self.range_upper - self.range_lower

    @property
    def midpoint(self) -> Decimal:
        return (self.range_lower + self.range_upper) / 2

    def contains(self, price: Decimal) -> bool:
        return self.range_lower <= price <= self.range_upper


@dataclass(frozen=True)
class CapitalAccount:
    venue: str
    asset: str
    available: Decimal = Decimal("0")
    reserved: Decimal = Decimal("0")

    @property
    def key(self) -> AccountKey:
        return (self.venue, self.asset)

    @property
    def total(self) -> Decimal:
        """Total balance (available + reserved)."""
        return self.available + self.reserved


@dataclass(frozen=True)
class Commitment:
    """Capital a plan asks the allocator to reserve on one account."""

    venue: str
    asset: str
    amount: Decimal

    @property
    def key(self) -> AccountKey:
        return (self.venue, self.asset)


@dataclass(frozen=True)
class StepBounds:
    max_slippage_bps: Optional[Decimal] = None
    min_amount_out: Optional[Decimal] = None


@dataclass(frozen=True)
class ExecutionStep:
    """One externally visible action of a plan.

    ``amount`` is None when the amount is carried forward from the output of
    earlier steps (e.g. the deposit after a withdraw and swap).
    ``pool`` names the pool a deposit opens a new position in.
    Amounts are in units of ``asset``. Swap prices are quote per base; a
    "buy" spends quote for base, a "sell" spends base for quote.
    """

    idempotency_key: str
    index: int
    action: StepAction
    venue: str
    asset: str
    amount: Optional[Decimal] = None
    position_id: Optional[str] = None
    asset_out: Optional[str] = None
    side: Optional[SwapSide] = None
    destination: Optional[str] = None
    price: Optional[Decimal] = None
    range_lower: Optional[Decimal] = None
    range_upper: Optional[Decimal] = None
    pool: Optional[str] = None
    bounds: StepBounds = field(default_factory=StepBounds)


@dataclass(frozen=True)
class Plan:
    id: str
    kind: PlanKind
    position_id: str
    pair: str
    steps: tuple[ExecutionStep, ...]
    expected_cost: Decimal
    expected_benefit: Decimal
    based_on_ledger_version: int
    commitments: tuple[Commitment, ...] = ()
    target_range: Optional[tuple[Decimal, Decimal]] = None
    reason: str = ""
    created_at: datetime = field(default_factory=utc_now)

    @property
    def net_benefit(self) -> Decimal:
        return self.expected_benefit - self.expected_cost


@dataclass(frozen=True)
class Receipt:
    idempotency_key: str
    venue: str
    action: StepAction
    amount_in: Decimal
    amount_out: Decimal
    fee: Decimal
    tx_ref: str
    settled_at: datetime


@dataclass(frozen=True)
class StepStatus:
    state: StepState
    receipt: Optional[Receipt] = None
