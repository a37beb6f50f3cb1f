from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

from dcabot.domain.models import Pair, PositionType
from dcabot.persistence.sqlite.sqlite_connection import ts_to_db

logger = logging.getLogger(__name__)

DEFAULT_SWAP_ADJUSTMENT = Decimal("1")


class SqlitePairsRepo:
    """Pair registry, swap-adjustment coefficients and runtime flags."""

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "pairs"}})
            raise PermissionError("UnitOfWork is read-only; pair writes are blocked")

    def save_pair(self, pair: Pair) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO pairs(address, base_denom, quote_denom, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                base_denom=excluded.base_denom,
                quote_denom=excluded.quote_denom
            """,
            (pair.address, pair.base_denom, pair.quote_denom, ts_to_db(datetime.now(UTC))),
        )

    def delete_pair(self, address: str) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute("DELETE FROM pairs WHERE address = ?", (address,))
        return cursor.rowcount > 0

    def get_pair(self, address: str) -> Pair | None:
        row = self._conn.execute(
            "SELECT address, base_denom, quote_denom FROM pairs WHERE address = ?",
            (address,),
        ).fetchone()
        if row is None:
            return None
        return Pair(
            address=str(row["address"]),
            base_denom=str(row["base_denom"]),
            quote_denom=str(row["quote_denom"]),
        )

    def list_pairs(self) -> list[Pair]:
        rows = self._conn.execute(
            "SELECT address, base_denom, quote_denom FROM pairs ORDER BY address"
        ).fetchall()
        return [
            Pair(
                address=str(row["address"]),
                base_denom=str(row["base_denom"]),
                quote_denom=str(row["quote_denom"]),
            )
            for row in rows
        ]

    def save_swap_adjustment(
        self,
        *,
        pair_address: str,
        position_type: PositionType,
        model_id: int,
        value: Decimal,
    ) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO swap_adjustments(pair_address, position_type, model_id, value, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(pair_address, position_type, model_id) DO UPDATE SET
                value=excluded.value,
                updated_at=excluded.updated_at
            """,
            (
                pair_address,
                position_type.value,
                model_id,
                str(value),
                ts_to_db(datetime.now(UTC)),
            ),
        )

    def get_swap_adjustment(
        self,
        *,
        pair_address: str,
        position_type: PositionType,
        model_id: int,
    ) -> Decimal:
        row = self._conn.execute(
            """
            SELECT value FROM swap_adjustments
            WHERE pair_address = ? AND position_type = ? AND model_id = ?
            """,
            (pair_address, position_type.value, model_id),
        ).fetchone()
        if row is None:
            return DEFAULT_SWAP_ADJUSTMENT
        return Decimal(str(row["value"]))

    def set_flag(self, key: str, value: str) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO runtime_flags(key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """,
            (key, value, ts_to_db(datetime.now(UTC))),
        )

    def get_flag(self, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM runtime_flags WHERE key = ?",
            (key,),
        ).fetchone()
        return None if row is None else str(row["value"])
