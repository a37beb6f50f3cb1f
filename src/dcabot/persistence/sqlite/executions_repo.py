from __future__ import annotations

import logging
import sqlite3

from dcabot.domain.models import Block, Coin, Execution, ExecutionOutcome
from dcabot.persistence.sqlite.sqlite_connection import next_sequence, ts_from_db, ts_to_db

logger = logging.getLogger(__name__)

_EXECUTION_SEQUENCE = "execution"


def _coin_columns(coin: Coin | None) -> tuple[str | None, str | None]:
    if coin is None:
        return None, None
    return coin.denom, str(coin.amount)


def _coin_from_columns(denom: object, amount: object) -> Coin | None:
    if denom is None or amount is None:
        return None
    return Coin(str(denom), int(str(amount)))


class SqliteExecutionsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "executions"}})
            raise PermissionError("UnitOfWork is read-only; execution writes are blocked")

    def record(
        self,
        *,
        vault_id: int,
        block: Block,
        outcome: ExecutionOutcome,
        sent: Coin | None = None,
        received: Coin | None = None,
        fee: Coin | None = None,
        reason: str | None = None,
    ) -> Execution:
        self._ensure_writable()
        execution = Execution(
            vault_id=vault_id,
            sequence=next_sequence(self._conn, _EXECUTION_SEQUENCE, vault_id),
            block_height=block.height,
            executed_at=block.time,
            outcome=outcome,
            sent=sent,
            received=received,
            fee=fee,
            reason=reason,
        )
        self._conn.execute(
            """
            INSERT INTO executions(
                vault_id, sequence, block_height, executed_at, outcome,
                sent_denom, sent_amount, received_denom, received_amount,
                fee_denom, fee_amount, reason
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.vault_id,
                execution.sequence,
                execution.block_height,
                ts_to_db(execution.executed_at),
                execution.outcome.value,
                *_coin_columns(sent),
                *_coin_columns(received),
                *_coin_columns(fee),
                reason,
            ),
        )
        return execution

    def list_executions(
        self,
        vault_id: int,
        *,
        start_after: int | None = None,
        limit: int = 30,
    ) -> list[Execution]:
        rows = self._conn.execute(
            """
            SELECT * FROM executions
            WHERE vault_id = ? AND sequence > ?
            ORDER BY sequence
            LIMIT ?
            """,
            (vault_id, start_after or 0, limit),
        ).fetchall()
        return [
            Execution(
                vault_id=int(row["vault_id"]),
                sequence=int(row["sequence"]),
                block_height=int(row["block_height"]),
                executed_at=ts_from_db(row["executed_at"]),
                outcome=ExecutionOutcome(str(row["outcome"])),
                sent=_coin_from_columns(row["sent_denom"], row["sent_amount"]),
                received=_coin_from_columns(row["received_denom"], row["received_amount"]),
                fee=_coin_from_columns(row["fee_denom"], row["fee_amount"]),
                reason=str(row["reason"]) if row["reason"] is not None else None,
            )
            for row in rows
        ]
