from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from dcabot.persistence.sqlite.escrow_repo import SqliteEscrowRepo
from dcabot.persistence.sqlite.events_repo import SqliteEventsRepo
from dcabot.persistence.sqlite.executions_repo import SqliteExecutionsRepo
from dcabot.persistence.sqlite.pairs_repo import SqlitePairsRepo
from dcabot.persistence.sqlite.sqlite_connection import create_sqlite_connection, ensure_schema
from dcabot.persistence.sqlite.triggers_repo import SqliteTriggersRepo
from dcabot.persistence.sqlite.vaults_repo import SqliteVaultsRepo

logger = logging.getLogger(__name__)


class UnitOfWork:
    """One invocation's transaction: every repo write commits or none does."""

    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.pairs: SqlitePairsRepo
        self.vaults: SqliteVaultsRepo
        self.triggers: SqliteTriggersRepo
        self.events: SqliteEventsRepo
        self.executions: SqliteExecutionsRepo
        self.escrow: SqliteEscrowRepo

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        ensure_schema(conn)
        if self.read_only:
            conn.execute("BEGIN")
        else:
            conn.execute("BEGIN IMMEDIATE")
        self._conn = conn
        self.pairs = SqlitePairsRepo(conn, read_only=self.read_only)
        self.vaults = SqliteVaultsRepo(conn, read_only=self.read_only)
        self.triggers = SqliteTriggersRepo(conn, read_only=self.read_only)
        self.events = SqliteEventsRepo(conn, read_only=self.read_only)
        self.executions = SqliteExecutionsRepo(conn, read_only=self.read_only)
        self.escrow = SqliteEscrowRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                logger.info(
                    "uow_rolled_back",
                    extra={"extra": {"error_type": exc_type.__name__}},
                )
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)
