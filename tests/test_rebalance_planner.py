"""Tests for rebalance, harvest and close planning."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import FakeClock, make_consensus
from lpengine.config import PlannerConfig
from lpengine.errors import InvalidRange
from lpengine.planning.planner import RebalancePlanner
from lpengine.planning.ranges import SymmetricPercentWidth, VolatilityWidth, base_value_fraction
from lpengine.types import Position, PositionState


def _position(**overrides) -> Position:
    base = Position(
        id="pos-1",
        pool="ETH/USDC-0.3%",
        pair="ETH/USDC",
        venue="uniswap",
        range_lower=Decimal("90"),
        range_upper=Decimal("110"),
        liquidity=Decimal("10000"),
        version=3,
    )
    return replace(base, **overrides)


@pytest.fixture
def planner(clock: FakeClock) -> RebalancePlanner:
    return RebalancePlanner(PlannerConfig(), clock=clock)


class TestHysteresis:
    """Prices inside the dead band never trigger a rebalance."""

    def test_band_is_inside_range(self, planner: RebalancePlanner) -> None:
        low, high = planner.rebalance_band(_position())
        assert low == Decimal("90.40")
        assert high == Decimal("109.60")

    @pytest.mark.parametrize("price", ["90.5", "100", "109.5"])
    def test_no_plan_inside_band(self, planner: RebalancePlanner, clock: FakeClock, price: str) -> None:
        assert planner.plan_rebalance(_position(), make_consensus(clock, price)) is None

    def test_oscillating_price_emits_nothing(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        position = _position()
        for price in ["109.5", "109.59", "109.4", "109.55"]:
            assert planner.evaluate(position, make_consensus(clock, price)) == []


class TestPlanRebalance:
    """Tests for rebalance plan construction."""

    def test_price_above_range_emits_plan(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        plan = planner.plan_rebalance(_position(), make_consensus(clock, "115"))

        assert plan is not None
        assert plan.kind == "rebalance"
        assert plan.based_on_ledger_version == 3
        assert [s.action for s in plan.steps] == ["withdraw", "swap", "deposit"]
        assert plan.target_range == (Decimal("109.25"), Decimal("120.75"))
        assert plan.expected_benefit == Decimal("70.00000000")
        assert Decimal("22") < plan.expected_cost < Decimal("23")
        assert plan.net_benefit > Decimal("10")

    def test_swap_buys_base_when_price_exits_above(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        plan = planner.plan_rebalance(_position(), make_consensus(clock, "115"))
        assert plan is not None

        swap = plan.steps[1]
        assert swap.side == "buy"
        assert swap.asset == "USDC"
        assert swap.asset_out == "ETH"
        assert Decimal("4800") < swap.amount < Decimal("4950")
        assert swap.bounds.max_slippage_bps == Decimal("50")

    def test_swap_sells_base_when_price_exits_below(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        plan = planner.plan_rebalance(_position(), make_consensus(clock, "85"))
        assert plan is not None

        swap = plan.steps[1]
        assert swap.side == "sell"
        assert swap.asset == "ETH"

    def test_deposit_carries_amount_forward(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        plan = planner.plan_rebalance(_position(), make_consensus(clock, "115"))
        assert plan is not None

        deposit = plan.steps[-1]
        assert deposit.amount is None
        assert (deposit.range_lower, deposit.range_upper) == plan.target_range

    def test_unprofitable_rebalance_is_discarded_and_logged(
        self, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        planner = RebalancePlanner(PlannerConfig(daily_fee_yield=Decimal("0.0001")), clock=clock)

        with caplog.at_level(logging.INFO, logger="lpengine.planning.planner"):
            plan = planner.plan_rebalance(_position(), make_consensus(clock, "115"))

        assert plan is None
        assert "Discarding rebalance of pos-1" in caplog.text

    def test_plan_ids_are_deterministic(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        first = planner.plan_rebalance(_position(), make_consensus(clock, "115"))
        second = planner.plan_rebalance(_position(), make_consensus(clock, "116"))
        moved = planner.plan_rebalance(_position(version=4), make_consensus(clock, "115"))

        assert first is not None and second is not None and moved is not None
        assert first.id == second.id
        assert [s.idempotency_key for s in first.steps] == [s.idempotency_key for s in second.steps]
        assert moved.id != first.id

    def test_commitment_covers_expected_cost(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        plan = planner.plan_rebalance(_position(), make_consensus(clock, "115"))
        assert plan is not None

        (commitment,) = plan.commitments
        assert commitment.key == ("uniswap", "USDC")
        assert commitment.amount == plan.expected_cost

    def test_rebalancing_position_is_not_planned(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        position = _position(state=PositionState.REBALANCING)
        assert planner.evaluate(position, make_consensus(clock, "115")) == []

    def test_volatility_width_policy(self, clock: FakeClock) -> None:
        planner = RebalancePlanner(
            PlannerConfig(), width_policy=VolatilityWidth(Decimal("0.02"), Decimal("4")), clock=clock
        )
        plan = planner.plan_rebalance(_position(), make_consensus(clock, "115"))

        assert plan is not None
        assert plan.target_range == (Decimal("110.40"), Decimal("119.60"))


class TestHarvest:
    """Tests for fee harvesting."""

    def test_threshold_triggers_harvest(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        position = _position(accrued_fees=Decimal("60"), opened_at=clock())
        plans = planner.evaluate(position, make_consensus(clock, "100"))

        assert [p.kind for p in plans] == ["harvest"]
        assert plans[0].expected_benefit == Decimal("60")
        assert plans[0].steps[0].action == "collect_fees"

    def test_small_fees_wait(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        position = _position(accrued_fees=Decimal("5"), opened_at=clock())
        assert not planner.needs_harvest(position, clock())

    def test_interval_triggers_harvest(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        position = _position(accrued_fees=Decimal("5"), opened_at=clock())
        assert planner.needs_harvest(position, clock() + timedelta(days=1))

    def test_fees_below_gas_are_not_harvested(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        position = _position(accrued_fees=Decimal("0.5"), opened_at=clock() - timedelta(days=2))
        assert planner.needs_harvest(position, clock())
        assert planner.plan_harvest(position) is None

    def test_harvest_precedes_rebalance(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        position = _position(accrued_fees=Decimal("60"), opened_at=clock())
        plans = planner.evaluate(position, make_consensus(clock, "115"))

        assert [p.kind for p in plans] == ["harvest", "rebalance"]


class TestClose:
    def test_close_withdraws_everything(self, planner: RebalancePlanner) -> None:
        plan = planner.plan_close(_position())

        assert plan.kind == "close"
        assert plan.steps[0].action == "withdraw"
        assert plan.steps[0].amount == Decimal("10000")

    def test_closed_position_cannot_close(self, planner: RebalancePlanner) -> None:
        with pytest.raises(ValueError):
            planner.plan_close(_position(state=PositionState.CLOSED))


class TestOpen:
    def _open(self, planner: RebalancePlanner, clock: FakeClock, liquidity: str = "2000", **overrides):
        args = dict(
            position_id="pos-9",
            pool="ETH/USDC-0.3%",
            pair="ETH/USDC",
            venue="uniswap",
            consensus=make_consensus(clock, "100"),
            liquidity=Decimal(liquidity),
        )
        args.update(overrides)
        return planner.plan_open(**args)

    def test_single_deposit_around_consensus(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        plan = self._open(planner, clock)

        (step,) = plan.steps
        assert plan.kind == "open"
        assert plan.based_on_ledger_version == 0
        assert step.action == "deposit"
        assert step.pool == "ETH/USDC-0.3%"
        assert step.amount == Decimal("2000")
        assert (step.range_lower, step.range_upper) == (Decimal("95.0"), Decimal("105.0"))
        assert plan.target_range == (step.range_lower, step.range_upper)

    def test_commits_deposit_and_gas(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        plan = self._open(planner, clock)

        (commitment,) = plan.commitments
        assert (commitment.venue, commitment.asset) == ("uniswap", "USDC")
        assert commitment.amount == Decimal("2001")
        assert plan.expected_cost == Decimal("1")

    def test_rejects_non_positive_liquidity(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        with pytest.raises(ValueError):
            self._open(planner, clock, liquidity="0")

    def test_rejects_consensus_for_other_pair(self, planner: RebalancePlanner, clock: FakeClock) -> None:
        with pytest.raises(ValueError):
            self._open(planner, clock, consensus=make_consensus(clock, "100", pair="BTC/USDC"))


class TestRangeMath:
    def test_symmetric_width(self) -> None:
        assert SymmetricPercentWidth(Decimal("0.10")).range_for(Decimal("100")) == (Decimal("95.0"), Decimal("105.0"))

    def test_too_wide_range_rejected(self) -> None:
        with pytest.raises(InvalidRange):
            SymmetricPercentWidth(Decimal("2")).range_for(Decimal("100"))

    def test_base_fraction_at_edges(self) -> None:
        assert base_value_fraction(Decimal("80"), Decimal("90"), Decimal("110")) == Decimal("1")
        assert base_value_fraction(Decimal("120"), Decimal("90"), Decimal("110")) == Decimal("0")

    def test_base_fraction_near_half_at_center(self) -> None:
        fraction = base_value_fraction(Decimal("100"), Decimal("90"), Decimal("110"))
        assert Decimal("0.45") < fraction < Decimal("0.55")
