from __future__ import annotations

import threading
from typing import Sequence

from lpengine.ledger.events import EventRecord


class InMemoryEventStore:
    """Process-local event store. Acknowledges immediately; lost on exit."""

    def __init__(self) -> None:
        self._records: list[EventRecord] = []
        self._lock = threading.Lock()

    def append_event(self, record: EventRecord) -> None:
        with self._lock:
            self._records.append(record)

    def load_events_since(self, sequence: int) -> Sequence[EventRecord]:
        with self._lock:
            records = [r for r in self._records if r.sequence > sequence]
        return sorted(records, key=lambda r: r.sequence)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
