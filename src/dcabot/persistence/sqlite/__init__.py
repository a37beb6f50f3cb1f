from dcabot.persistence.sqlite.escrow_repo import SqliteEscrowRepo
from dcabot.persistence.sqlite.events_repo import SqliteEventsRepo
from dcabot.persistence.sqlite.executions_repo import SqliteExecutionsRepo
from dcabot.persistence.sqlite.pairs_repo import SqlitePairsRepo
from dcabot.persistence.sqlite.triggers_repo import SqliteTriggersRepo
from dcabot.persistence.sqlite.vaults_repo import SqliteVaultsRepo

__all__ = [
    "SqliteEscrowRepo",
    "SqliteEventsRepo",
    "SqliteExecutionsRepo",
    "SqlitePairsRepo",
    "SqliteTriggersRepo",
    "SqliteVaultsRepo",
]
