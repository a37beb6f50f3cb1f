from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from dcabot.domain.time_intervals import ensure_utc

_DB_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def ts_to_db(value: datetime) -> str:
    """Fixed-width UTC timestamp so that text ordering matches time ordering."""
    return ensure_utc(value).strftime(_DB_TS_FORMAT)


def ts_from_db(raw: object) -> datetime:
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sequences (
            kind TEXT NOT NULL,
            resource_id INTEGER NOT NULL,
            last_value INTEGER NOT NULL,
            PRIMARY KEY (kind, resource_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pairs (
            address TEXT PRIMARY KEY,
            base_denom TEXT NOT NULL,
            quote_denom TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS swap_adjustments (
            pair_address TEXT NOT NULL,
            position_type TEXT NOT NULL,
            model_id INTEGER NOT NULL,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (pair_address, position_type, model_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS runtime_flags (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS vaults (
            id INTEGER PRIMARY KEY,
            owner TEXT NOT NULL,
            label TEXT,
            pair_address TEXT NOT NULL,
            base_denom TEXT NOT NULL,
            quote_denom TEXT NOT NULL,
            position_type TEXT NOT NULL,
            balance_denom TEXT NOT NULL,
            balance_amount TEXT NOT NULL,
            swap_amount TEXT NOT NULL,
            time_interval TEXT NOT NULL,
            interval_seconds INTEGER,
            slippage_tolerance TEXT,
            price_threshold TEXT,
            target_price TEXT,
            repeat_price_trigger INTEGER NOT NULL DEFAULT 0,
            target_start_time TEXT,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT,
            swapped_amount TEXT NOT NULL,
            received_amount TEXT NOT NULL,
            dca_plus_json TEXT,
            destinations_json TEXT NOT NULL DEFAULT '[]',
            updated_at TEXT NOT NULL
        )
        """
    )
    vault_columns = {str(row["name"]) for row in conn.execute("PRAGMA table_info(vaults)")}
    if "destinations_json" not in vault_columns:
        conn.execute(
            "ALTER TABLE vaults ADD COLUMN destinations_json TEXT NOT NULL DEFAULT '[]'"
        )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_vaults_owner ON vaults(owner, id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_vaults_status ON vaults(status)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS triggers (
            vault_id INTEGER PRIMARY KEY,
            kind TEXT NOT NULL,
            target_time TEXT,
            target_price TEXT,
            order_idx TEXT,
            saga_state TEXT NOT NULL,
            pending_request_id TEXT,
            pending_amount TEXT NOT NULL DEFAULT '0',
            pending_order_filled INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_triggers_due ON triggers(kind, target_time, vault_id)"
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_triggers_pending_request_unique
        ON triggers(pending_request_id)
        WHERE pending_request_id IS NOT NULL
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS order_index (
            order_idx TEXT PRIMARY KEY,
            vault_id INTEGER NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_order_index_vault ON order_index(vault_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS executions (
            vault_id INTEGER NOT NULL,
            sequence INTEGER NOT NULL,
            block_height INTEGER NOT NULL,
            executed_at TEXT NOT NULL,
            outcome TEXT NOT NULL,
            sent_denom TEXT,
            sent_amount TEXT,
            received_denom TEXT,
            received_amount TEXT,
            fee_denom TEXT,
            fee_amount TEXT,
            reason TEXT,
            PRIMARY KEY (vault_id, sequence)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            resource_id INTEGER NOT NULL,
            sequence INTEGER NOT NULL,
            block_height INTEGER NOT NULL,
            ts TEXT NOT NULL,
            event_type TEXT NOT NULL,
            data_json TEXT NOT NULL,
            PRIMARY KEY (resource_id, sequence)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS disburse_escrow_tasks (
            vault_id INTEGER PRIMARY KEY,
            due_time TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_disburse_escrow_due
        ON disburse_escrow_tasks(due_time, vault_id)
        """
    )


def next_sequence(conn: sqlite3.Connection, kind: str, resource_id: int) -> int:
    """Increment and return the counter for ``(kind, resource_id)``.

    Must run inside the transaction of the write it numbers.
    """

    conn.execute(
        """
        INSERT INTO sequences(kind, resource_id, last_value) VALUES (?, ?, 1)
        ON CONFLICT(kind, resource_id) DO UPDATE SET last_value = last_value + 1
        """,
        (kind, resource_id),
    )
    row = conn.execute(
        "SELECT last_value FROM sequences WHERE kind = ? AND resource_id = ?",
        (kind, resource_id),
    ).fetchone()
    return int(row["last_value"])
