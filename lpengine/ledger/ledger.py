"""Event-sourced position ledger.

The ledger is the only writer of position state. Every change is an event
appended with optimistic concurrency: the caller names the version it read,
and the append fails with ConcurrentModification if the position moved on.
Records are acknowledged by the store before the in-memory projection
changes, so a crash can always be recovered by replaying the store.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from lpengine.errors import ConcurrentModification, PositionNotFound
from lpengine.ledger.events import EventRecord, LedgerEvent
from lpengine.ledger.projection import apply_event, replay
from lpengine.types import Position, utc_now

if TYPE_CHECKING:
    from lpengine.persistence.interfaces import PersistenceStore

logger = logging.getLogger(__name__)


class PositionLedger:
    def __init__(
        self,
        store: Optional[PersistenceStore] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._clock = clock or utc_now
        self._positions: dict[str, Position] = {}
        self._records: dict[str, list[EventRecord]] = defaultdict(list)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._sequence_lock = threading.Lock()
        self._next_sequence = 1

    def _lock_for(self, position_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(position_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[position_id] = lock
            return lock

    def _allocate_sequence(self) -> int:
        with self._sequence_lock:
            sequence = self._next_sequence
            self._next_sequence += 1
            return sequence

    def append(self, position_id: str, event: LedgerEvent, expected_version: int) -> Position:
        """Apply ``event`` to the position at ``expected_version``.

        Use ``expected_version=0`` for the `Created` event of a new position.

        Returns:
            The new position snapshot

        Raises:
            ConcurrentModification: the position is not at ``expected_version``
            PositionNotFound: non-create event for an unknown position
            InvalidTransition / InvalidRange: the event does not apply
        """
        with self._lock_for(position_id):
            current = self._positions.get(position_id)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                raise ConcurrentModification(position_id, expected_version, current_version)
            if current is None and event.kind != "created":
                raise PositionNotFound(position_id)

            record = EventRecord(
                sequence=0,
                position_id=position_id,
                base_version=current_version,
                event=event,
                recorded_at=self._clock(),
            )
            # Validate before consuming a sequence number or touching the store.
            updated = apply_event(current, record)

            record = EventRecord(
                sequence=self._allocate_sequence(),
                position_id=record.position_id,
                base_version=record.base_version,
                event=record.event,
                recorded_at=record.recorded_at,
            )
            if self._store is not None:
                self._store.append_event(record)

            self._records[position_id].append(record)
            self._positions[position_id] = updated

        logger.debug("Position %s: %s -> version %d", position_id, event.kind, updated.version)
        return updated

    def append_latest(self, position_id: str, event: LedgerEvent, *, attempts: int = 3) -> Position:
        """Append against whatever version is current, retrying on concurrent writers."""
        for attempt in range(attempts):
            version = self.snapshot(position_id).version
            try:
                return self.append(position_id, event, version)
            except ConcurrentModification:
                if attempt == attempts - 1:
                    raise
        raise AssertionError("unreachable")

    def snapshot(self, position_id: str) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFound(position_id)
        return position

    def exists(self, position_id: str) -> bool:
        return position_id in self._positions

    def positions(self) -> list[Position]:
        return sorted(self._positions.values(), key=lambda p: p.id)

    def events(self, position_id: str) -> list[EventRecord]:
        """Ordered event history of one position."""
        if position_id not in self._positions:
            raise PositionNotFound(position_id)
        with self._lock_for(position_id):
            return list(self._records[position_id])

    @staticmethod
    def replay(records: Iterable[EventRecord]) -> dict[str, Position]:
        """Rebuild position state from an empty ledger."""
        return replay(records)

    def recover(self) -> int:
        """Rebuild in-memory state from the store. Returns the number of records applied."""
        if self._store is None:
            return 0
        records = sorted(self._store.load_events_since(0), key=lambda r: r.sequence)
        positions = replay(records)

        grouped: dict[str, list[EventRecord]] = defaultdict(list)
        for record in records:
            grouped[record.position_id].append(record)

        with self._locks_guard, self._sequence_lock:
            self._positions = positions
            self._records = grouped
            self._next_sequence = (records[-1].sequence + 1) if records else 1

        logger.info("Recovered %d position(s) from %d event(s)", len(positions), len(records))
        return len(records)
