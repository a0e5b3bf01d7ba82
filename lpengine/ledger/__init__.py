"""Event-sourced position ledger."""

from .events import (
    CapitalRotated,
    Closed,
    Created,
    EventRecord,
    Failed,
    FeesAccrued,
    FeesHarvested,
    LedgerEvent,
    RangeAdjusted,
    RebalanceStarted,
    event_from_dict,
    event_to_dict,
)
from .projection import apply_event, replay
from .ledger import PositionLedger

__all__ = [
    "CapitalRotated",
    "Closed",
    "Created",
    "EventRecord",
    "Failed",
    "FeesAccrued",
    "FeesHarvested",
    "LedgerEvent",
    "PositionLedger",
    "RangeAdjusted",
    "RebalanceStarted",
    "apply_event",
    "event_from_dict",
    "event_to_dict",
    "replay",
]
