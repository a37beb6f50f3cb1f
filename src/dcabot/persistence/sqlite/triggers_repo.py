from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

from dcabot.domain.models import SagaState, Trigger, TriggerKind
from dcabot.persistence.sqlite.sqlite_connection import next_sequence, ts_from_db, ts_to_db

logger = logging.getLogger(__name__)

_REQUEST_SEQUENCE = "request"


class SqliteTriggersRepo:
    """Triggers plus the order-index reverse map used to route venue callbacks."""

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "triggers"}})
            raise PermissionError("UnitOfWork is read-only; trigger writes are blocked")

    def _row_to_trigger(self, row: sqlite3.Row) -> Trigger:
        return Trigger(
            vault_id=int(row["vault_id"]),
            kind=TriggerKind(str(row["kind"])),
            target_time=ts_from_db(row["target_time"]) if row["target_time"] else None,
            target_price=(
                Decimal(str(row["target_price"])) if row["target_price"] is not None else None
            ),
            order_idx=str(row["order_idx"]) if row["order_idx"] is not None else None,
            saga_state=SagaState(str(row["saga_state"])),
            pending_request_id=(
                str(row["pending_request_id"]) if row["pending_request_id"] is not None else None
            ),
            pending_amount=int(row["pending_amount"]),
            pending_order_filled=bool(row["pending_order_filled"]),
        )

    def next_request_id(self, vault_id: int, stage: str) -> str:
        """Deterministic venue request id, unique per vault and never reused."""
        self._ensure_writable()
        sequence = next_sequence(self._conn, _REQUEST_SEQUENCE, vault_id)
        return f"{vault_id}-{stage}-{sequence}"

    def save_trigger(self, trigger: Trigger) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO triggers(
                vault_id, kind, target_time, target_price, order_idx, saga_state,
                pending_request_id, pending_amount, pending_order_filled, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(vault_id) DO UPDATE SET
                kind=excluded.kind,
                target_time=excluded.target_time,
                target_price=excluded.target_price,
                order_idx=excluded.order_idx,
                saga_state=excluded.saga_state,
                pending_request_id=excluded.pending_request_id,
                pending_amount=excluded.pending_amount,
                pending_order_filled=excluded.pending_order_filled,
                updated_at=excluded.updated_at
            """,
            (
                trigger.vault_id,
                trigger.kind.value,
                ts_to_db(trigger.target_time) if trigger.target_time else None,
                str(trigger.target_price) if trigger.target_price is not None else None,
                trigger.order_idx,
                trigger.saga_state.value,
                trigger.pending_request_id,
                str(trigger.pending_amount),
                int(trigger.pending_order_filled),
                ts_to_db(datetime.now(UTC)),
            ),
        )

    def get_trigger(self, vault_id: int) -> Trigger | None:
        row = self._conn.execute(
            "SELECT * FROM triggers WHERE vault_id = ?",
            (vault_id,),
        ).fetchone()
        return None if row is None else self._row_to_trigger(row)

    def get_trigger_by_request_id(self, request_id: str) -> Trigger | None:
        row = self._conn.execute(
            "SELECT * FROM triggers WHERE pending_request_id = ?",
            (request_id,),
        ).fetchone()
        return None if row is None else self._row_to_trigger(row)

    def delete_trigger(self, vault_id: int) -> bool:
        self._ensure_writable()
        self._conn.execute("DELETE FROM order_index WHERE vault_id = ?", (vault_id,))
        cursor = self._conn.execute("DELETE FROM triggers WHERE vault_id = ?", (vault_id,))
        return cursor.rowcount > 0

    def list_due_time_triggers(
        self,
        *,
        as_of: datetime,
        limit: int,
        after: tuple[datetime, int] | None = None,
    ) -> list[Trigger]:
        query = "SELECT * FROM triggers WHERE kind = ? AND target_time <= ?"
        params: list[object] = [TriggerKind.TIME.value, ts_to_db(as_of)]
        if after is not None:
            after_ts = ts_to_db(after[0])
            query += " AND (target_time > ? OR (target_time = ? AND vault_id > ?))"
            params.extend([after_ts, after_ts, after[1]])
        query += " ORDER BY target_time, vault_id LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_trigger(row) for row in rows]

    def list_price_triggers(
        self,
        *,
        saga_state: SagaState,
        limit: int,
        start_after: int | None = None,
    ) -> list[Trigger]:
        rows = self._conn.execute(
            """
            SELECT * FROM triggers
            WHERE kind = ? AND saga_state = ? AND vault_id > ?
            ORDER BY vault_id
            LIMIT ?
            """,
            (TriggerKind.PRICE.value, saga_state.value, start_after or 0, limit),
        ).fetchall()
        return [self._row_to_trigger(row) for row in rows]

    def list_in_flight_triggers(self) -> list[Trigger]:
        rows = self._conn.execute(
            "SELECT * FROM triggers WHERE pending_request_id IS NOT NULL ORDER BY vault_id"
        ).fetchall()
        return [self._row_to_trigger(row) for row in rows]

    def index_order(self, order_idx: str, vault_id: int) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO order_index(order_idx, vault_id) VALUES (?, ?)
            ON CONFLICT(order_idx) DO UPDATE SET vault_id=excluded.vault_id
            """,
            (order_idx, vault_id),
        )

    def unindex_order(self, order_idx: str) -> None:
        self._ensure_writable()
        self._conn.execute("DELETE FROM order_index WHERE order_idx = ?", (order_idx,))

    def vault_id_for_order(self, order_idx: str) -> int | None:
        row = self._conn.execute(
            "SELECT vault_id FROM order_index WHERE order_idx = ?",
            (order_idx,),
        ).fetchone()
        return None if row is None else int(row["vault_id"])
