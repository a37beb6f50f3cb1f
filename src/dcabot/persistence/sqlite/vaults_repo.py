from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict
from datetime import UTC, datetime
from decimal import Decimal

from dcabot.domain.models import (
    Coin,
    DcaPlusConfig,
    Destination,
    Pair,
    PositionType,
    Vault,
    VaultStatus,
)
from dcabot.domain.time_intervals import TimeInterval
from dcabot.persistence.sqlite.sqlite_connection import next_sequence, ts_from_db, ts_to_db

logger = logging.getLogger(__name__)

_VAULT_ID_SEQUENCE = "vault"


def _optional_decimal(raw: object) -> Decimal | None:
    return None if raw is None else Decimal(str(raw))


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def _dump_dca_plus(config: DcaPlusConfig | None) -> str | None:
    if config is None:
        return None
    payload = asdict(config)
    payload["escrow_level"] = str(config.escrow_level)
    return json.dumps(payload, sort_keys=True)


def _load_dca_plus(raw: object) -> DcaPlusConfig | None:
    if raw is None:
        return None
    payload = json.loads(str(raw))
    return DcaPlusConfig(
        escrow_level=Decimal(str(payload["escrow_level"])),
        model_id=int(payload["model_id"]),
        total_deposit=int(payload["total_deposit"]),
        standard_dca_swapped_amount=int(payload["standard_dca_swapped_amount"]),
        standard_dca_received_amount=int(payload["standard_dca_received_amount"]),
        escrowed_balance=int(payload["escrowed_balance"]),
    )


def _dump_destinations(destinations: tuple[Destination, ...]) -> str:
    return json.dumps(
        [{"address": d.address, "allocation": str(d.allocation)} for d in destinations]
    )


def _load_destinations(raw: object) -> tuple[Destination, ...]:
    if raw is None:
        return ()
    return tuple(
        Destination(address=str(item["address"]), allocation=Decimal(str(item["allocation"])))
        for item in json.loads(str(raw))
    )


class SqliteVaultsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "vaults"}})
            raise PermissionError("UnitOfWork is read-only; vault writes are blocked")

    def _row_to_vault(self, row: sqlite3.Row) -> Vault:
        position_type = PositionType(str(row["position_type"]))
        pair = Pair(
            address=str(row["pair_address"]),
            base_denom=str(row["base_denom"]),
            quote_denom=str(row["quote_denom"]),
        )
        return Vault(
            id=int(row["id"]),
            owner=str(row["owner"]),
            label=_optional_str(row["label"]),
            pair=pair,
            position_type=position_type,
            balance=Coin(str(row["balance_denom"]), int(row["balance_amount"])),
            swap_amount=int(row["swap_amount"]),
            time_interval=TimeInterval(str(row["time_interval"])),
            interval_seconds=(
                int(row["interval_seconds"]) if row["interval_seconds"] is not None else None
            ),
            slippage_tolerance=_optional_decimal(row["slippage_tolerance"]),
            price_threshold=_optional_decimal(row["price_threshold"]),
            target_price=_optional_decimal(row["target_price"]),
            repeat_price_trigger=bool(row["repeat_price_trigger"]),
            target_start_time=(
                ts_from_db(row["target_start_time"]) if row["target_start_time"] else None
            ),
            status=VaultStatus(str(row["status"])),
            created_at=ts_from_db(row["created_at"]),
            started_at=ts_from_db(row["started_at"]) if row["started_at"] else None,
            swapped_amount=Coin(pair.input_denom(position_type), int(row["swapped_amount"])),
            received_amount=Coin(pair.output_denom(position_type), int(row["received_amount"])),
            dca_plus_config=_load_dca_plus(row["dca_plus_json"]),
            destinations=_load_destinations(row["destinations_json"]),
        )

    def next_vault_id(self) -> int:
        self._ensure_writable()
        return next_sequence(self._conn, _VAULT_ID_SEQUENCE, 0)

    def insert_vault(self, vault: Vault) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO vaults(
                id, owner, label, pair_address, base_denom, quote_denom, position_type,
                balance_denom, balance_amount, swap_amount, time_interval, interval_seconds,
                slippage_tolerance, price_threshold, target_price, repeat_price_trigger,
                target_start_time, status, created_at, started_at, swapped_amount,
                received_amount, dca_plus_json, destinations_json, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                vault.id,
                vault.owner,
                vault.label,
                vault.pair.address,
                vault.pair.base_denom,
                vault.pair.quote_denom,
                vault.position_type.value,
                vault.balance.denom,
                str(vault.balance.amount),
                str(vault.swap_amount),
                vault.time_interval.value,
                vault.interval_seconds,
                _optional_str(vault.slippage_tolerance),
                _optional_str(vault.price_threshold),
                _optional_str(vault.target_price),
                int(vault.repeat_price_trigger),
                ts_to_db(vault.target_start_time) if vault.target_start_time else None,
                vault.status.value,
                ts_to_db(vault.created_at),
                ts_to_db(vault.started_at) if vault.started_at else None,
                str(vault.swapped_amount.amount),
                str(vault.received_amount.amount),
                _dump_dca_plus(vault.dca_plus_config),
                _dump_destinations(vault.destinations),
                ts_to_db(datetime.now(UTC)),
            ),
        )

    def update_vault(self, vault: Vault) -> None:
        """Persist the mutable state of an existing vault."""
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE vaults
            SET label=?, balance_amount=?, status=?, started_at=?, swapped_amount=?,
                received_amount=?, dca_plus_json=?, updated_at=?
            WHERE id=?
            """,
            (
                vault.label,
                str(vault.balance.amount),
                vault.status.value,
                ts_to_db(vault.started_at) if vault.started_at else None,
                str(vault.swapped_amount.amount),
                str(vault.received_amount.amount),
                _dump_dca_plus(vault.dca_plus_config),
                ts_to_db(datetime.now(UTC)),
                vault.id,
            ),
        )
        if cursor.rowcount != 1:
            raise LookupError(f"vault {vault.id} does not exist")

    def get_vault(self, vault_id: int) -> Vault | None:
        row = self._conn.execute("SELECT * FROM vaults WHERE id = ?", (vault_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_vault(row)

    def list_vaults_by_owner(
        self,
        owner: str,
        *,
        start_after: int | None = None,
        limit: int = 30,
        status: VaultStatus | None = None,
    ) -> list[Vault]:
        query = "SELECT * FROM vaults WHERE owner = ? AND id > ?"
        params: list[object] = [owner, start_after or 0]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_vault(row) for row in rows]

    def list_vaults(
        self,
        *,
        start_after: int | None = None,
        limit: int = 30,
        status: VaultStatus | None = None,
    ) -> list[Vault]:
        query = "SELECT * FROM vaults WHERE id > ?"
        params: list[object] = [start_after or 0]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_vault(row) for row in rows]
