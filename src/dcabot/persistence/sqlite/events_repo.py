from __future__ import annotations

import json
import logging
import sqlite3

from dcabot.domain.events import Event, EventDraft, EventType
from dcabot.persistence.sqlite.sqlite_connection import next_sequence, ts_from_db, ts_to_db

logger = logging.getLogger(__name__)

_EVENT_SEQUENCE = "event"


class SqliteEventsRepo:
    """Append-only event log keyed by ``(resource_id, sequence)``."""

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "events"}})
            raise PermissionError("UnitOfWork is read-only; event writes are blocked")

    def append(self, draft: EventDraft) -> Event:
        self._ensure_writable()
        sequence = next_sequence(self._conn, _EVENT_SEQUENCE, draft.resource_id)
        event = draft.build(sequence)
        self._conn.execute(
            """
            INSERT INTO events(resource_id, sequence, block_height, ts, event_type, data_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.resource_id,
                event.sequence,
                event.block_height,
                ts_to_db(event.timestamp),
                event.event_type.value,
                event.data_json(),
            ),
        )
        return event

    def list_events(
        self,
        resource_id: int,
        *,
        start_after: int | None = None,
        limit: int = 30,
    ) -> list[Event]:
        rows = self._conn.execute(
            """
            SELECT * FROM events
            WHERE resource_id = ? AND sequence > ?
            ORDER BY sequence
            LIMIT ?
            """,
            (resource_id, start_after or 0, limit),
        ).fetchall()
        return [
            Event(
                resource_id=int(row["resource_id"]),
                sequence=int(row["sequence"]),
                block_height=int(row["block_height"]),
                timestamp=ts_from_db(row["ts"]),
                event_type=EventType(str(row["event_type"])),
                data=json.loads(str(row["data_json"])),
            )
            for row in rows
        ]

    def count_events(self, resource_id: int, event_type: EventType | None = None) -> int:
        query = "SELECT COUNT(*) AS n FROM events WHERE resource_id = ?"
        params: list[object] = [resource_id]
        if event_type is not None:
            query += " AND event_type = ?"
            params.append(event_type.value)
        row = self._conn.execute(query, params).fetchone()
        return int(row["n"])
