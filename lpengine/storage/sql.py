"""SQL-backed event store (SQLAlchemy Core).

Works with any SQLAlchemy URL; PostgreSQL in deployment, SQLite for tests
and local runs. The table is created on first use.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from lpengine.ledger.events import EventRecord, event_from_dict, event_to_dict

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_events (
    sequence BIGINT PRIMARY KEY,
    position_id VARCHAR(128) NOT NULL,
    base_version INTEGER NOT NULL,
    kind VARCHAR(64) NOT NULL,
    payload TEXT NOT NULL,
    recorded_at VARCHAR(64) NOT NULL
)
"""

INDEX_SQL = "CREATE INDEX IF NOT EXISTS ix_ledger_events_position ON ledger_events (position_id, base_version)"


class SqlEventStore:
    def __init__(self, *, database_url: str, engine: Optional[Engine] = None) -> None:
        self._database_url = database_url
        self._engine: Engine | None = engine
        self._schema_ready = False

    def _get_engine(self) -> Engine:
        if self._engine is None:
            # Do not log the URL (it may contain secrets).
            self._engine = create_engine(self._database_url, echo=False, pool_pre_ping=True)
        return self._engine

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        engine = self._get_engine()
        with engine.begin() as conn:
            conn.execute(text(SCHEMA_SQL))
            conn.execute(text(INDEX_SQL))
        self._schema_ready = True
        logger.info("ledger_events table ready")

    def append_event(self, record: EventRecord) -> None:
        self.ensure_schema()
        engine = self._get_engine()

        stmt = text(
            """
            INSERT INTO ledger_events (sequence, position_id, base_version, kind, payload, recorded_at)
            VALUES (:sequence, :position_id, :base_version, :kind, :payload, :recorded_at)
            """
        )

        with engine.begin() as conn:
            conn.execute(
                stmt,
                {
                    "sequence": record.sequence,
                    "position_id": record.position_id,
                    "base_version": record.base_version,
                    "kind": record.kind,
                    "payload": json.dumps(event_to_dict(record.event), sort_keys=True),
                    "recorded_at": record.recorded_at.isoformat(),
                },
            )

    def load_events_since(self, sequence: int) -> Sequence[EventRecord]:
        self.ensure_schema()
        engine = self._get_engine()

        stmt = text(
            """
            SELECT sequence, position_id, base_version, payload, recorded_at
            FROM ledger_events
            WHERE sequence > :sequence
            ORDER BY sequence ASC
            """
        )

        with engine.begin() as conn:
            rows = conn.execute(stmt, {"sequence": sequence}).fetchall()

        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: Any) -> EventRecord:
        sequence, position_id, base_version, payload, recorded_at = row
        return EventRecord(
            sequence=int(sequence),
            position_id=str(position_id),
            base_version=int(base_version),
            event=event_from_dict(json.loads(payload)),
            recorded_at=datetime.fromisoformat(recorded_at),
        )
