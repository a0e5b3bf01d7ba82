from __future__ import annotations

from typing import Protocol, Sequence

from lpengine.ledger.events import EventRecord


class PersistenceStore(Protocol):
    def append_event(self, record: EventRecord) -> None:
        """Durably store ``record``. Returning means the write is acknowledged."""

    def load_events_since(self, sequence: int) -> Sequence[EventRecord]:
        """Return records with a sequence greater than ``sequence``, ordered by sequence."""
