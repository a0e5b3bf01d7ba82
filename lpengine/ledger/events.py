"""Ledger events and their serialized form.

Events are immutable facts about one position. An `EventRecord` wraps an
event with its global sequence number, the position version it was applied
against and the time it was recorded.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Optional, Union


@dataclass(frozen=True)
class Created:
    kind: ClassVar[str] = "created"

    pool: str
    pair: str
    venue: str
    range_lower: Decimal
    range_upper: Decimal
    liquidity: Decimal


@dataclass(frozen=True)
class RebalanceStarted:
    kind: ClassVar[str] = "rebalance_started"

    withdrawn: Decimal
    plan_id: str = ""


@dataclass(frozen=True)
class RangeAdjusted:
    kind: ClassVar[str] = "range_adjusted"

    range_lower: Decimal
    range_upper: Decimal
    deposited: Decimal
    plan_id: str = ""


@dataclass(frozen=True)
class FeesAccrued:
    kind: ClassVar[str] = "fees_accrued"

    amount: Decimal


@dataclass(frozen=True)
class FeesHarvested:
    kind: ClassVar[str] = "fees_harvested"

    amount: Decimal
    plan_id: str = ""


@dataclass(frozen=True)
class CapitalRotated:
    kind: ClassVar[str] = "capital_rotated"

    from_venue: str
    to_venue: str
    asset: str
    amount: Decimal
    plan_id: str = ""


@dataclass(frozen=True)
class Closed:
    kind: ClassVar[str] = "closed"

    withdrawn: Decimal
    plan_id: str = ""


@dataclass(frozen=True)
class Failed:
    kind: ClassVar[str] = "failed"

    reason: str
    plan_id: str = ""
    step: Optional[int] = None


LedgerEvent = Union[Created, RebalanceStarted, RangeAdjusted, FeesAccrued, FeesHarvested, CapitalRotated, Closed, Failed]

EVENT_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (Created, RebalanceStarted, RangeAdjusted, FeesAccrued, FeesHarvested, CapitalRotated, Closed, Failed)
}


def event_to_dict(event: LedgerEvent) -> dict[str, Any]:
    """JSON-serializable payload; Decimals become strings."""
    payload: dict[str, Any] = {}
    for key, value in asdict(event).items():
        payload[key] = str(value) if isinstance(value, Decimal) else value
    payload["kind"] = event.kind
    return payload


def event_from_dict(data: dict[str, Any]) -> LedgerEvent:
    kind = data.get("kind")
    cls = EVENT_TYPES.get(str(kind))
    if cls is None:
        raise ValueError(f"unknown event kind: {kind!r}")

    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.type in ("Decimal", Decimal) and value is not None:
            value = Decimal(str(value))
        kwargs[f.name] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class EventRecord:
    sequence: int
    position_id: str
    base_version: int
    event: LedgerEvent
    recorded_at: datetime

    @property
    def kind(self) -> str:
        return self.event.kind

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "sequence": self.sequence,
            "position_id": self.position_id,
            "base_version": self.base_version,
            "recorded_at": self.recorded_at.isoformat(),
            "event": event_to_dict(self.event),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        recorded_at = data["recorded_at"]
        if isinstance(recorded_at, str):
            # Normalize trailing 'Z' (UTC)
            if recorded_at.endswith("Z"):
                recorded_at = recorded_at[:-1] + "+00:00"
            recorded_at = datetime.fromisoformat(recorded_at)
        return cls(
            sequence=int(data["sequence"]),
            position_id=str(data["position_id"]),
            base_version=int(data["base_version"]),
            event=event_from_dict(dict(data["event"])),
            recorded_at=recorded_at,
        )
