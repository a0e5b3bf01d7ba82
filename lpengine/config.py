"""Engine configuration.

Each component gets its own dataclass; `EngineConfig` composes them.
`EnvConfigProvider` builds an `EngineConfig` from `.env` / environment
variables prefixed with ``LPENGINE_``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional, Protocol

from dotenv import load_dotenv

from lpengine.types import FeeBreakdown

logger = logging.getLogger(__name__)

ENV_PREFIX = "LPENGINE_"

DEFAULT_DEX_FEES = FeeBreakdown(
    currency="USDC",
    maker_fee_rate=Decimal("0.003"),
    taker_fee_rate=Decimal("0.003"),
    assumed_spread_bps=0,
    assumed_slippage_bps=10,
)

DEFAULT_CEX_FEES = FeeBreakdown(
    currency="USDC",
    maker_fee_rate=Decimal("0.001"),
    taker_fee_rate=Decimal("0.002"),
    assumed_spread_bps=5,
    assumed_slippage_bps=5,
)


@dataclass(frozen=True)
class AggregatorConfig:
    """Quote freshness, quorum and outlier settings."""

    # Quotes older than this are ignored
    max_quote_age: timedelta = timedelta(seconds=30)

    # Minimum number of sources contributing to a consensus
    quorum: int = 2

    # Quotes further than this many standard deviations from the median are dropped
    outlier_multiplier: Decimal = Decimal("2")

    # Per-source trust weight (missing sources weigh 1)
    source_weights: Mapping[str, Decimal] = field(default_factory=dict)

    # Sources that are centralized venues: tracked for arbitrage, excluded from consensus
    venue_sources: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.quorum < 1:
            raise ValueError("quorum must be at least 1")
        if self.outlier_multiplier <= 0:
            raise ValueError("outlier_multiplier must be positive")
        if self.max_quote_age <= timedelta(0):
            raise ValueError("max_quote_age must be positive")

    def weight_for(self, source: str) -> Decimal:
        return Decimal(self.source_weights.get(source, Decimal("1")))


@dataclass(frozen=True)
class PlannerConfig:
    """Rebalance and harvest decision settings."""

    # Dead band as a fraction of the range width (must be < 0.5)
    hysteresis: Decimal = Decimal("0.02")

    # Total width of a new range as a fraction of the consensus price
    range_width_pct: Decimal = Decimal("0.10")

    # Projected fee yield per day as a fraction of liquidity
    daily_fee_yield: Decimal = Decimal("0.001")

    # Benefit horizon in days
    horizon_days: Decimal = Decimal("7")

    # Required net benefit as a fraction of liquidity
    min_margin: Decimal = Decimal("0.001")

    # Flat cost of one on-chain step, in quote asset
    gas_cost_per_step: Decimal = Decimal("1")

    # Max slippage allowed on rebalance swaps
    max_slippage_bps: Decimal = Decimal("50")

    # Harvest when any of these is reached
    harvest_fee_threshold: Decimal = Decimal("50")
    harvest_fee_ratio: Decimal = Decimal("0.01")
    harvest_interval: timedelta = timedelta(days=1)

    # Swap costs on the DEX
    swap_fees: FeeBreakdown = DEFAULT_DEX_FEES

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.hysteresis < Decimal("0.5"):
            raise ValueError("hysteresis must be in [0, 0.5)")
        if self.range_width_pct <= 0:
            raise ValueError("range_width_pct must be positive")
        if self.horizon_days <= 0:
            raise ValueError("horizon_days must be positive")


@dataclass(frozen=True)
class ScannerConfig:
    """DEX/CEX arbitrage scanning settings."""

    # Minimum net edge (fraction of rotated notional) to emit a rotation
    min_edge: Decimal = Decimal("0.002")

    # One rotation per pair per window
    cooldown: timedelta = timedelta(minutes=5)

    # Quote-asset notional moved per rotation
    rotation_notional: Decimal = Decimal("1000")

    # Flat cost of moving capital between venues, in quote asset
    transfer_cost: Decimal = Decimal("1")

    # Max slippage allowed on the rotation buy
    max_slippage_bps: Decimal = Decimal("30")

    dex_fees: FeeBreakdown = DEFAULT_DEX_FEES
    cex_fees: FeeBreakdown = DEFAULT_CEX_FEES

    def __post_init__(self) -> None:
        if self.rotation_notional <= 0:
            raise ValueError("rotation_notional must be positive")
        if self.min_edge < 0:
            raise ValueError("min_edge must be non-negative")


@dataclass(frozen=True)
class RiskConfig:
    # Max share of an account's total that may be reserved at once
    max_risk_fraction: Decimal = Decimal("0.5")

    def __post_init__(self) -> None:
        if not Decimal("0") < self.max_risk_fraction <= Decimal("1"):
            raise ValueError("max_risk_fraction must be in (0, 1]")


@dataclass(frozen=True)
class ExecutionConfig:
    """Timeouts and retry policy for venue calls (seconds)."""

    step_timeout: float = 30.0
    status_timeout: float = 10.0
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.step_timeout <= 0 or self.status_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")


@dataclass(frozen=True)
class EngineConfig:
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    # Pairs polled from price sources
    pairs: tuple[str, ...] = ()

    # Venues served by the paper venue when no live clients are wired
    venues: tuple[str, ...] = ()

    # Schedules in seconds
    poll_interval: float = 5.0
    rebalance_interval: float = 30.0
    scan_interval: float = 15.0

    # Per-source quote fetch timeout in seconds
    poll_timeout: float = 5.0

    # SQL event store; in-memory when unset. Do not log it.
    database_url: Optional[str] = None


class ConfigProvider(Protocol):
    """Source of engine configuration."""

    def load(self) -> EngineConfig:
        """Return the current engine configuration."""


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a decimal, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    value = raw.lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def _env_list(name: str) -> tuple[str, ...]:
    raw = _env(name)
    if raw is None:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_weights(name: str) -> dict[str, Decimal]:
    """Parse ``source=weight,source=weight``."""
    weights: dict[str, Decimal] = {}
    for item in _env_list(name):
        source, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"{ENV_PREFIX}{name} entries must look like source=weight, got {item!r}")
        try:
            weights[source.strip()] = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"{ENV_PREFIX}{name}: bad weight for {source!r}") from exc
    return weights


class EnvConfigProvider:
    """Build `EngineConfig` from the environment, loading `.env` first if present."""

    def __init__(self, env_file: Optional[str | Path] = ".env") -> None:
        self._env_file = Path(env_file) if env_file else None

    def load(self) -> EngineConfig:
        if self._env_file is not None and self._env_file.exists():
            load_dotenv(self._env_file, override=False)
            logger.info("Loaded environment from %s", self._env_file)

        aggregator = AggregatorConfig(
            max_quote_age=timedelta(seconds=_env_float("MAX_QUOTE_AGE_SECONDS", 30.0)),
            quorum=_env_int("QUORUM", 2),
            outlier_multiplier=_env_decimal("OUTLIER_MULTIPLIER", Decimal("2")),
            source_weights=_env_weights("SOURCE_WEIGHTS"),
            venue_sources=frozenset(_env_list("VENUE_SOURCES")),
        )
        planner = PlannerConfig(
            hysteresis=_env_decimal("HYSTERESIS", Decimal("0.02")),
            range_width_pct=_env_decimal("RANGE_WIDTH_PCT", Decimal("0.10")),
            daily_fee_yield=_env_decimal("DAILY_FEE_YIELD", Decimal("0.001")),
            horizon_days=_env_decimal("HORIZON_DAYS", Decimal("7")),
            min_margin=_env_decimal("MIN_MARGIN", Decimal("0.001")),
            gas_cost_per_step=_env_decimal("GAS_COST_PER_STEP", Decimal("1")),
            max_slippage_bps=_env_decimal("MAX_SLIPPAGE_BPS", Decimal("50")),
            harvest_fee_threshold=_env_decimal("HARVEST_FEE_THRESHOLD", Decimal("50")),
            harvest_fee_ratio=_env_decimal("HARVEST_FEE_RATIO", Decimal("0.01")),
            harvest_interval=timedelta(seconds=_env_float("HARVEST_INTERVAL_SECONDS", 86400.0)),
        )
        scanner = ScannerConfig(
            min_edge=_env_decimal("MIN_EDGE", Decimal("0.002")),
            cooldown=timedelta(seconds=_env_float("ARB_COOLDOWN_SECONDS", 300.0)),
            rotation_notional=_env_decimal("ROTATION_NOTIONAL", Decimal("1000")),
            transfer_cost=_env_decimal("TRANSFER_COST", Decimal("1")),
            max_slippage_bps=_env_decimal("ARB_MAX_SLIPPAGE_BPS", Decimal("30")),
        )
        risk = RiskConfig(max_risk_fraction=_env_decimal("MAX_RISK_FRACTION", Decimal("0.5")))
        execution = ExecutionConfig(
            step_timeout=_env_float("STEP_TIMEOUT_SECONDS", 30.0),
            status_timeout=_env_float("STATUS_TIMEOUT_SECONDS", 10.0),
            max_attempts=_env_int("MAX_ATTEMPTS", 4),
            base_delay=_env_float("BASE_DELAY_SECONDS", 0.5),
            max_delay=_env_float("MAX_DELAY_SECONDS", 8.0),
            jitter=_env_bool("RETRY_JITTER", False),
        )

        return EngineConfig(
            aggregator=aggregator,
            planner=planner,
            scanner=scanner,
            risk=risk,
            execution=execution,
            pairs=_env_list("PAIRS"),
            venues=_env_list("VENUES"),
            poll_interval=_env_float("POLL_INTERVAL_SECONDS", 5.0),
            rebalance_interval=_env_float("REBALANCE_INTERVAL_SECONDS", 30.0),
            scan_interval=_env_float("SCAN_INTERVAL_SECONDS", 15.0),
            poll_timeout=_env_float("POLL_TIMEOUT_SECONDS", 5.0),
            database_url=os.getenv("DATABASE_URL") or None,
        )
