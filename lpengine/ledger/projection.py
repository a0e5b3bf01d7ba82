from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Iterable, Optional

from lpengine.errors import InvalidRange, InvalidTransition
from lpengine.ledger.events import (
    CapitalRotated,
    Closed,
    Created,
    EventRecord,
    Failed,
    FeesAccrued,
    FeesHarvested,
    RangeAdjusted,
    RebalanceStarted,
)
from lpengine.types import Position, PositionState

ZERO = Decimal("0")


def _check_range(lower: Decimal, upper: Decimal) -> None:
    if lower >= upper:
        raise InvalidRange(f"range_lower ({lower}) must be below range_upper ({upper})")


def _require_state(position: Position, kind: str, *allowed: PositionState) -> None:
    if position.state not in allowed:
        raise InvalidTransition(f"{kind} not allowed for position {position.id} in state {position.state.value}")


def apply_event(position: Optional[Position], record: EventRecord) -> Position:
    """Return the position that results from applying ``record``.

    Pure function of its inputs; raises InvalidTransition / InvalidRange /
    ValueError without side effects when the event does not apply.
    """
    event = record.event

    if position is None:
        if not isinstance(event, Created):
            raise InvalidTransition(f"first event for {record.position_id} must be created, got {event.kind}")
        _check_range(event.range_lower, event.range_upper)
        if event.liquidity < 0:
            raise ValueError("liquidity must be non-negative")
        return Position(
            id=record.position_id,
            pool=event.pool,
            pair=event.pair,
            venue=event.venue,
            range_lower=event.range_lower,
            range_upper=event.range_upper,
            liquidity=event.liquidity,
            state=PositionState.ACTIVE,
            version=1,
            opened_at=record.recorded_at,
        )

    if isinstance(event, Created):
        raise InvalidTransition(f"position {position.id} already exists")
    if position.state is PositionState.CLOSED:
        raise InvalidTransition(f"position {position.id} is closed")

    version = position.version + 1

    if isinstance(event, RebalanceStarted):
        _require_state(position, event.kind, PositionState.ACTIVE)
        if event.withdrawn < 0:
            raise ValueError("withdrawn must be non-negative")
        return replace(
            position,
            state=PositionState.REBALANCING,
            liquidity=max(position.liquidity - event.withdrawn, ZERO),
            in_transit=event.withdrawn,
            version=version,
        )

    if isinstance(event, RangeAdjusted):
        _require_state(position, event.kind, PositionState.REBALANCING)
        _check_range(event.range_lower, event.range_upper)
        if event.deposited < 0:
            raise ValueError("deposited must be non-negative")
        return replace(
            position,
            state=PositionState.ACTIVE,
            range_lower=event.range_lower,
            range_upper=event.range_upper,
            liquidity=position.liquidity + event.deposited,
            in_transit=ZERO,
            version=version,
        )

    if isinstance(event, FeesAccrued):
        if event.amount < 0:
            raise ValueError("accrued amount must be non-negative")
        return replace(position, accrued_fees=position.accrued_fees + event.amount, version=version)

    if isinstance(event, FeesHarvested):
        _require_state(position, event.kind, PositionState.ACTIVE)
        return replace(
            position,
            accrued_fees=max(position.accrued_fees - event.amount, ZERO),
            last_harvested_at=record.recorded_at,
            version=version,
        )

    if isinstance(event, CapitalRotated):
        return replace(position, version=version)

    if isinstance(event, Closed):
        _require_state(position, event.kind, PositionState.ACTIVE)
        return replace(
            position,
            state=PositionState.CLOSED,
            liquidity=ZERO,
            accrued_fees=ZERO,
            in_transit=ZERO,
            version=version,
        )

    if isinstance(event, Failed):
        return replace(position, version=version)

    raise InvalidTransition(f"unsupported event {type(event).__name__}")


def replay(records: Iterable[EventRecord]) -> dict[str, Position]:
    """Rebuild positions from an event history, in sequence order."""
    positions: dict[str, Position] = {}
    for record in sorted(records, key=lambda r: r.sequence):
        current = positions.get(record.position_id)
        current_version = current.version if current else 0
        if record.base_version != current_version:
            raise InvalidTransition(
                f"record {record.sequence} for {record.position_id} expects version "
                f"{record.base_version}, history is at {current_version}"
            )
        positions[record.position_id] = apply_event(current, record)
    return positions
