from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from dcabot.domain.models import DisburseEscrowTask
from dcabot.persistence.sqlite.sqlite_connection import ts_from_db, ts_to_db

logger = logging.getLogger(__name__)


class SqliteEscrowRepo:
    """Pending escrow disbursement tasks, at most one per vault."""

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "escrow"}})
            raise PermissionError("UnitOfWork is read-only; escrow writes are blocked")

    def save_task(self, task: DisburseEscrowTask) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO disburse_escrow_tasks(vault_id, due_time) VALUES (?, ?)
            ON CONFLICT(vault_id) DO UPDATE SET due_time=excluded.due_time
            """,
            (task.vault_id, ts_to_db(task.due_time)),
        )

    def get_task(self, vault_id: int) -> DisburseEscrowTask | None:
        row = self._conn.execute(
            "SELECT vault_id, due_time FROM disburse_escrow_tasks WHERE vault_id = ?",
            (vault_id,),
        ).fetchone()
        if row is None:
            return None
        return DisburseEscrowTask(
            vault_id=int(row["vault_id"]), due_time=ts_from_db(row["due_time"])
        )

    def delete_task(self, vault_id: int) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            "DELETE FROM disburse_escrow_tasks WHERE vault_id = ?",
            (vault_id,),
        )
        return cursor.rowcount > 0

    def list_due_tasks(
        self,
        *,
        as_of: datetime,
        limit: int,
        after: tuple[datetime, int] | None = None,
    ) -> list[DisburseEscrowTask]:
        query = "SELECT vault_id, due_time FROM disburse_escrow_tasks WHERE due_time <= ?"
        params: list[object] = [ts_to_db(as_of)]
        if after is not None:
            after_ts = ts_to_db(after[0])
            query += " AND (due_time > ? OR (due_time = ? AND vault_id > ?))"
            params.extend([after_ts, after_ts, after[1]])
        query += " ORDER BY due_time, vault_id LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [
            DisburseEscrowTask(vault_id=int(row["vault_id"]), due_time=ts_from_db(row["due_time"]))
            for row in rows
        ]
