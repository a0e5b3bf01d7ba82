"""Open, rebalance, harvest and close planning for liquidity positions.

A rebalance is proposed only when the consensus price leaves the hysteresis
band inside the current range and the projected fee yield of the new range
beats the cost of moving (gas plus swap costs) by the configured margin.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from lpengine.config import PlannerConfig
from lpengine.execution.keys import make_idempotency_key, make_plan_id
from lpengine.fees.model import FeeModel
from lpengine.planning.ranges import RangeWidthPolicy, SymmetricPercentWidth, base_value_fraction
from lpengine.types import (
    QUANT,
    Commitment,
    ConsensusPrice,
    ExecutionStep,
    Plan,
    PlanKind,
    Position,
    PositionState,
    StepBounds,
    split_pair,
    utc_now,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class RebalancePlanner:
    def __init__(
        self,
        config: Optional[PlannerConfig] = None,
        *,
        width_policy: Optional[RangeWidthPolicy] = None,
        fee_model: Optional[FeeModel] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config or PlannerConfig()
        self._width_policy = width_policy or SymmetricPercentWidth(self._config.range_width_pct)
        self._fee_model = fee_model or FeeModel(self._config.swap_fees)
        self._clock = clock or utc_now

    @property
    def config(self) -> PlannerConfig:
        return self._config

    def rebalance_band(self, position: Position) -> tuple[Decimal, Decimal]:
        """Prices inside this band never trigger a rebalance."""
        margin = self._config.hysteresis * position.width
        return position.range_lower + margin, position.range_upper - margin

    def needs_rebalance(self, position: Position, price: Decimal) -> bool:
        low, high = self.rebalance_band(position)
        return price < low or price > high

    def needs_harvest(self, position: Position, now: Optional[datetime] = None) -> bool:
        fees = position.accrued_fees
        if fees <= 0:
            return False
        if fees >= self._config.harvest_fee_threshold:
            return True
        if position.liquidity > 0 and fees / position.liquidity >= self._config.harvest_fee_ratio:
            return True
        since = position.last_harvested_at or position.opened_at
        if since is None:
            return False
        return (now or self._clock()) - since >= self._config.harvest_interval

    def evaluate(self, position: Position, consensus: ConsensusPrice) -> list[Plan]:
        """All plans warranted for ``position`` at ``consensus``; harvest first."""
        if position.state is not PositionState.ACTIVE:
            return []
        plans: list[Plan] = []
        if self.needs_harvest(position, consensus.computed_at):
            harvest = self.plan_harvest(position)
            if harvest is not None:
                plans.append(harvest)
        rebalance = self.plan_rebalance(position, consensus)
        if rebalance is not None:
            plans.append(rebalance)
        return plans

    def regenerate(self, kind: PlanKind, position: Position, consensus: ConsensusPrice) -> Optional[Plan]:
        """Rebuild a plan of ``kind`` against the current snapshot."""
        if position.state is not PositionState.ACTIVE:
            return None
        if kind == "rebalance":
            return self.plan_rebalance(position, consensus)
        if kind == "harvest":
            return self.plan_harvest(position) if self.needs_harvest(position, consensus.computed_at) else None
        if kind == "close":
            return self.plan_close(position)
        return None

    def expected_benefit(self, position: Position) -> Decimal:
        cfg = self._config
        return (position.liquidity * cfg.daily_fee_yield * cfg.horizon_days).quantize(QUANT)

    def plan_rebalance(self, position: Position, consensus: ConsensusPrice) -> Optional[Plan]:
        if position.state is not PositionState.ACTIVE:
            return None
        price = consensus.value
        if not self.needs_rebalance(position, price):
            return None
        if position.liquidity <= 0:
            logger.info("Skipping rebalance of %s: no liquidity deployed", position.id)
            return None

        cfg = self._config
        base, quote = split_pair(position.pair)
        lower, upper = self._width_policy.range_for(price)

        current_fraction = base_value_fraction(price, position.range_lower, position.range_upper)
        target_fraction = base_value_fraction(price, lower, upper)
        swap_notional = (abs(target_fraction - current_fraction) * position.liquidity).quantize(QUANT)

        step_count = 3 if swap_notional > 0 else 2
        gas = cfg.gas_cost_per_step * step_count
        expected_cost = (gas + self._fee_model.swap_cost(swap_notional)).quantize(QUANT)
        expected_benefit = self.expected_benefit(position)
        required = cfg.min_margin * position.liquidity

        if expected_benefit - expected_cost <= required:
            logger.info(
                "Discarding rebalance of %s at %s: benefit %s - cost %s does not clear margin %s",
                position.id,
                price,
                expected_benefit,
                expected_cost,
                required,
            )
            return None

        plan_id = make_plan_id(kind="rebalance", position_id=position.id, ledger_version=position.version)
        steps: list[ExecutionStep] = [
            ExecutionStep(
                idempotency_key=make_idempotency_key(plan_id, 0),
                index=0,
                action="withdraw",
                venue=position.venue,
                asset=quote,
                amount=position.liquidity,
                position_id=position.id,
            )
        ]
        if swap_notional > 0:
            buying_base = target_fraction > current_fraction
            steps.append(
                ExecutionStep(
                    idempotency_key=make_idempotency_key(plan_id, len(steps)),
                    index=len(steps),
                    action="swap",
                    venue=position.venue,
                    asset=quote if buying_base else base,
                    asset_out=base if buying_base else quote,
                    side="buy" if buying_base else "sell",
                    amount=swap_notional if buying_base else (swap_notional / price).quantize(QUANT),
                    position_id=position.id,
                    price=price,
                    bounds=StepBounds(max_slippage_bps=cfg.max_slippage_bps),
                )
            )
        steps.append(
            ExecutionStep(
                idempotency_key=make_idempotency_key(plan_id, len(steps)),
                index=len(steps),
                action="deposit",
                venue=position.venue,
                asset=quote,
                amount=None,
                position_id=position.id,
                range_lower=lower,
                range_upper=upper,
            )
        )

        return Plan(
            id=plan_id,
            kind="rebalance",
            position_id=position.id,
            pair=position.pair,
            steps=tuple(steps),
            expected_cost=expected_cost,
            expected_benefit=expected_benefit,
            based_on_ledger_version=position.version,
            commitments=(Commitment(venue=position.venue, asset=quote, amount=expected_cost),),
            target_range=(lower, upper),
            reason=f"price {price} outside band {self.rebalance_band(position)}",
            created_at=self._clock(),
        )

    def plan_harvest(self, position: Position) -> Optional[Plan]:
        if position.state is not PositionState.ACTIVE:
            return None
        gas = self._config.gas_cost_per_step
        if position.accrued_fees <= gas:
            logger.info("Discarding harvest of %s: fees %s do not cover gas %s", position.id, position.accrued_fees, gas)
            return None

        _, quote = split_pair(position.pair)
        plan_id = make_plan_id(kind="harvest", position_id=position.id, ledger_version=position.version)
        step = ExecutionStep(
            idempotency_key=make_idempotency_key(plan_id, 0),
            index=0,
            action="collect_fees",
            venue=position.venue,
            asset=quote,
            amount=position.accrued_fees,
            position_id=position.id,
        )
        return Plan(
            id=plan_id,
            kind="harvest",
            position_id=position.id,
            pair=position.pair,
            steps=(step,),
            expected_cost=gas,
            expected_benefit=position.accrued_fees,
            based_on_ledger_version=position.version,
            commitments=(Commitment(venue=position.venue, asset=quote, amount=gas),) if gas > 0 else (),
            reason=f"accrued fees {position.accrued_fees}",
            created_at=self._clock(),
        )

    def plan_close(self, position: Position) -> Plan:
        if position.state is not PositionState.ACTIVE:
            raise ValueError(f"position {position.id} is {position.state.value}; only active positions can close")
        gas = self._config.gas_cost_per_step
        _, quote = split_pair(position.pair)
        plan_id = make_plan_id(kind="close", position_id=position.id, ledger_version=position.version)
        step = ExecutionStep(
            idempotency_key=make_idempotency_key(plan_id, 0),
            index=0,
            action="withdraw",
            venue=position.venue,
            asset=quote,
            amount=position.liquidity,
            position_id=position.id,
        )
        return Plan(
            id=plan_id,
            kind="close",
            position_id=position.id,
            pair=position.pair,
            steps=(step,),
            expected_cost=gas,
            expected_benefit=ZERO,
            based_on_ledger_version=position.version,
            commitments=(Commitment(venue=position.venue, asset=quote, amount=gas),) if gas > 0 else (),
            reason="operator close",
            created_at=self._clock(),
        )

    def plan_open(
        self,
        *,
        position_id: str,
        pool: str,
        pair: str,
        venue: str,
        consensus: ConsensusPrice,
        liquidity: Decimal,
    ) -> Plan:
        """Deposit ``liquidity`` (quote asset) into a new range around ``consensus``.

        The plan commits the deposit plus gas on ``venue``; the position comes
        into existence only once the deposit settles.
        """
        if liquidity <= 0:
            raise ValueError("liquidity must be positive")
        if consensus.pair != pair:
            raise ValueError(f"consensus is for {consensus.pair}, not {pair}")

        cfg = self._config
        _, quote = split_pair(pair)
        lower, upper = self._width_policy.range_for(consensus.value)
        liquidity = liquidity.quantize(QUANT)
        gas = cfg.gas_cost_per_step
        plan_id = make_plan_id(kind="open", position_id=position_id, ledger_version=0, discriminator=f"{venue}|{pool}")
        step = ExecutionStep(
            idempotency_key=make_idempotency_key(plan_id, 0),
            index=0,
            action="deposit",
            venue=venue,
            asset=quote,
            amount=liquidity,
            position_id=position_id,
            range_lower=lower,
            range_upper=upper,
            pool=pool,
        )
        return Plan(
            id=plan_id,
            kind="open",
            position_id=position_id,
            pair=pair,
            steps=(step,),
            expected_cost=gas,
            expected_benefit=(liquidity * cfg.daily_fee_yield * cfg.horizon_days).quantize(QUANT),
            based_on_ledger_version=0,
            commitments=(Commitment(venue=venue, asset=quote, amount=liquidity + gas),),
            target_range=(lower, upper),
            reason=f"open {pool} at {consensus.value}",
            created_at=self._clock(),
        )
