"""Tests for environment-based configuration."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from lpengine.automation.engine import LiquidityEngine
from lpengine.config import (
    AggregatorConfig,
    EngineConfig,
    EnvConfigProvider,
    ExecutionConfig,
    PlannerConfig,
    RiskConfig,
)


class TestEnvConfigProvider:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        config = EnvConfigProvider(env_file=None).load()

        assert config.aggregator.quorum == 2
        assert config.planner.hysteresis == Decimal("0.02")
        assert config.database_url is None
        assert config.pairs == ()

    def test_reads_prefixed_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LPENGINE_QUORUM", "3")
        monkeypatch.setenv("LPENGINE_MAX_QUOTE_AGE_SECONDS", "12")
        monkeypatch.setenv("LPENGINE_SOURCE_WEIGHTS", "chainlink=2, pyth=0.5")
        monkeypatch.setenv("LPENGINE_VENUE_SOURCES", "binance,kraken")
        monkeypatch.setenv("LPENGINE_PAIRS", "ETH/USDC, BTC/USDC")
        monkeypatch.setenv("LPENGINE_HYSTERESIS", "0.05")
        monkeypatch.setenv("LPENGINE_ARB_COOLDOWN_SECONDS", "60")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///ledger.db")

        config = EnvConfigProvider(env_file=None).load()

        assert config.aggregator.quorum == 3
        assert config.aggregator.max_quote_age == timedelta(seconds=12)
        assert config.aggregator.weight_for("chainlink") == Decimal("2")
        assert config.aggregator.weight_for("pyth") == Decimal("0.5")
        assert config.aggregator.weight_for("other") == Decimal("1")
        assert config.aggregator.venue_sources == frozenset({"binance", "kraken"})
        assert config.pairs == ("ETH/USDC", "BTC/USDC")
        assert config.planner.hysteresis == Decimal("0.05")
        assert config.scanner.cooldown == timedelta(seconds=60)
        assert config.database_url == "sqlite:///ledger.db"

    def test_reads_retry_and_timeout_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LPENGINE_BASE_DELAY_SECONDS", "0.25")
        monkeypatch.setenv("LPENGINE_MAX_DELAY_SECONDS", "4")
        monkeypatch.setenv("LPENGINE_RETRY_JITTER", "true")
        monkeypatch.setenv("LPENGINE_POLL_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("LPENGINE_MAX_SLIPPAGE_BPS", "40")
        monkeypatch.setenv("LPENGINE_ARB_MAX_SLIPPAGE_BPS", "15")

        config = EnvConfigProvider(env_file=None).load()

        assert config.execution.base_delay == 0.25
        assert config.execution.max_delay == 4.0
        assert config.execution.jitter is True
        assert config.poll_timeout == 2.5
        assert config.planner.max_slippage_bps == Decimal("40")
        assert config.scanner.max_slippage_bps == Decimal("15")

    def test_retry_and_timeout_defaults(self) -> None:
        config = EnvConfigProvider(env_file=None).load()

        assert config.execution.base_delay == 0.5
        assert config.execution.max_delay == 8.0
        assert config.execution.jitter is False
        assert config.poll_timeout == 5.0
        assert config.scanner.max_slippage_bps == Decimal("30")

    @pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("OFF", False), ("false", False)])
    def test_boolean_spellings(self, monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool) -> None:
        monkeypatch.setenv("LPENGINE_RETRY_JITTER", raw)

        assert EnvConfigProvider(env_file=None).load().execution.jitter is expected

    def test_bad_boolean_names_the_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LPENGINE_RETRY_JITTER", "sometimes")

        with pytest.raises(ValueError, match="LPENGINE_RETRY_JITTER"):
            EnvConfigProvider(env_file=None).load()

    def test_poll_timeout_reaches_the_poller(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LPENGINE_POLL_TIMEOUT_SECONDS", "1.5")
        config = EnvConfigProvider(env_file=None).load()

        engine = LiquidityEngine(config, venues={}, sources=[Mock(name="source")])

        assert engine.poller is not None
        assert engine.poller._timeout == 1.5

    def test_bad_value_names_the_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LPENGINE_QUORUM", "two")

        with pytest.raises(ValueError, match="LPENGINE_QUORUM"):
            EnvConfigProvider(env_file=None).load()

    def test_bad_weight_entry(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LPENGINE_SOURCE_WEIGHTS", "chainlink")

        with pytest.raises(ValueError, match="source=weight"):
            EnvConfigProvider(env_file=None).load()

    def test_loads_env_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        # Register the variable with monkeypatch so teardown removes what load_dotenv sets.
        monkeypatch.setenv("LPENGINE_MIN_EDGE", "unset")
        monkeypatch.delenv("LPENGINE_MIN_EDGE")
        env_file = tmp_path / ".env"
        env_file.write_text("LPENGINE_MIN_EDGE=0.01\n")

        config = EnvConfigProvider(env_file=env_file).load()

        assert config.scanner.min_edge == Decimal("0.01")


class TestValidation:
    def test_hysteresis_must_leave_a_band(self) -> None:
        with pytest.raises(ValueError):
            PlannerConfig(hysteresis=Decimal("0.5"))

    def test_quorum_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            AggregatorConfig(quorum=0)

    def test_risk_fraction_bounds(self) -> None:
        with pytest.raises(ValueError):
            RiskConfig(max_risk_fraction=Decimal("1.5"))

    def test_engine_config_composes_defaults(self) -> None:
        config = EngineConfig()
        assert config.execution.max_attempts == 4
        assert config.scanner.rotation_notional == Decimal("1000")

    def test_retry_delays_must_be_non_negative(self) -> None:
        with pytest.raises(ValueError):
            ExecutionConfig(base_delay=-1.0)
