"""Shared test fixtures for pytest.

Provides a controllable clock, engine configuration tuned for fast tests,
and helpers for building positions and consensus prices.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterator
from unittest.mock import Mock

import pytest

from lpengine.capital.allocator import CapitalAllocator
from lpengine.config import EngineConfig, ExecutionConfig, RiskConfig
from lpengine.execution.paper import PaperVenue
from lpengine.ledger.events import Created
from lpengine.ledger.ledger import PositionLedger
from lpengine.storage.memory import InMemoryEventStore
from lpengine.types import ConsensusPrice, PriceQuote


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


async def no_sleep(_delay: float) -> None:
    return None


def make_quote(
    clock: FakeClock, source: str, price: str, *, pair: str = "ETH/USDC", confidence: str = "1"
) -> PriceQuote:
    return PriceQuote(
        source=source,
        pair=pair,
        price=Decimal(price),
        confidence=Decimal(confidence),
        timestamp=clock(),
    )


def make_consensus(
    clock: FakeClock, value: str, *, pair: str = "ETH/USDC", quote_version: int = 1
) -> ConsensusPrice:
    price = Decimal(value)
    return ConsensusPrice(
        pair=pair,
        value=price,
        confidence_interval=(price, price),
        contributing_sources=("a", "b"),
        computed_at=clock(),
        quote_version=quote_version,
    )


def create_position(
    ledger: PositionLedger,
    position_id: str = "pos-1",
    *,
    lower: str = "90",
    upper: str = "110",
    liquidity: str = "10000",
    venue: str = "uniswap",
    pair: str = "ETH/USDC",
):
    return ledger.append(
        position_id,
        Created(
            pool="ETH/USDC-0.3%",
            pair=pair,
            venue=venue,
            range_lower=Decimal(lower),
            range_upper=Decimal(upper),
            liquidity=Decimal(liquidity),
        ),
        expected_version=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def execution_config() -> ExecutionConfig:
    """No backoff, short timeouts."""
    return ExecutionConfig(step_timeout=0.2, status_timeout=0.2, max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def engine_config(execution_config: ExecutionConfig) -> EngineConfig:
    return EngineConfig(
        risk=RiskConfig(max_risk_fraction=Decimal("1")),
        execution=execution_config,
        pairs=("ETH/USDC",),
        venues=("uniswap", "binance"),
    )


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def ledger(store: InMemoryEventStore, clock: FakeClock) -> PositionLedger:
    return PositionLedger(store, clock=clock)


@pytest.fixture
def allocator() -> CapitalAllocator:
    return CapitalAllocator(
        RiskConfig(max_risk_fraction=Decimal("1")),
        initial_balances={
            ("uniswap", "USDC"): Decimal("5000"),
            ("binance", "USDC"): Decimal("5000"),
        },
    )


@pytest.fixture
def dex(clock: FakeClock) -> PaperVenue:
    return PaperVenue("uniswap", clock=clock)


@pytest.fixture
def cex(clock: FakeClock) -> PaperVenue:
    return PaperVenue("binance", clock=clock)


@pytest.fixture
def venues(dex: PaperVenue, cex: PaperVenue) -> Iterator[dict[str, PaperVenue]]:
    yield {"uniswap": dex, "binance": cex}


@pytest.fixture
def mock_db_engine() -> Mock:
    """Mock SQLAlchemy engine for testing database operations."""
    mock_engine = Mock()
    mock_conn = Mock()
    mock_result = Mock()
    mock_result.rowcount = 1
    mock_result.fetchone.return_value = None
    mock_result.fetchall.return_value = []
    mock_conn.execute.return_value = mock_result
    mock_engine.begin.return_value.__enter__ = Mock(return_value=mock_conn)
    mock_engine.begin.return_value.__exit__ = Mock(return_value=False)
    return mock_engine


@pytest.fixture
def api_engine(monkeypatch: pytest.MonkeyPatch):
    """Engine on the real clock, installed as the API's shared instance."""
    from api import state
    from lpengine.automation.engine import LiquidityEngine

    engine = LiquidityEngine(
        EngineConfig(risk=RiskConfig(max_risk_fraction=Decimal("1")), venues=("uniswap",)),
        venues={"uniswap": PaperVenue("uniswap")},
        allocator=CapitalAllocator(
            RiskConfig(max_risk_fraction=Decimal("1")),
            initial_balances={("uniswap", "USDC"): Decimal("1000")},
        ),
        sleep=no_sleep,
    )
    monkeypatch.setattr(state, "_engine", engine)
    return engine


@pytest.fixture
def client(api_engine):
    """Create a test client."""
    from fastapi.testclient import TestClient

    from api.main import app

    return TestClient(app)
