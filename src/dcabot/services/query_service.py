from __future__ import annotations

from dataclasses import dataclass, replace

from dcabot.config import Settings
from dcabot.domain.errors import InvalidInputError, NotFoundError
from dcabot.domain.models import Page, Trigger, Vault, VaultStatus
from dcabot.persistence.uow import UnitOfWorkFactory


@dataclass(frozen=True)
class VaultView:
    vault: Vault
    trigger: Trigger | None


def _parse_cursor(cursor: str | None) -> int | None:
    if cursor is None:
        return None
    try:
        return int(cursor)
    except ValueError as exc:
        raise InvalidInputError(f"malformed cursor: {cursor!r}") from exc


class QueryService:
    """Read-only accessors over the ledger; every call uses a read-only unit of work."""

    def __init__(self, uow_factory: UnitOfWorkFactory, settings: Settings) -> None:
        self._read_factory = replace(uow_factory, read_only=True)
        self._settings = settings

    def _limit(self, limit: int | None) -> int:
        resolved = self._settings.page_limit if limit is None else limit
        if resolved <= 0:
            raise InvalidInputError("limit must be > 0")
        return resolved

    def get_vault(self, vault_id: int) -> VaultView:
        with self._read_factory() as uow:
            vault = uow.vaults.get_vault(vault_id)
            if vault is None:
                raise NotFoundError(f"vault {vault_id} not found")
            return VaultView(vault=vault, trigger=uow.triggers.get_trigger(vault_id))

    def get_vaults_by_owner(
        self,
        owner: str,
        *,
        cursor: str | None = None,
        limit: int | None = None,
        status: VaultStatus | None = None,
    ) -> Page:
        page_size = self._limit(limit)
        with self._read_factory() as uow:
            vaults = uow.vaults.list_vaults_by_owner(
                owner,
                start_after=_parse_cursor(cursor),
                limit=page_size + 1,
                status=status,
            )
        return self._page(vaults, page_size, lambda vault: vault.id)

    def get_events_by_resource_id(
        self,
        resource_id: int,
        *,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> Page:
        page_size = self._limit(limit)
        with self._read_factory() as uow:
            events = uow.events.list_events(
                resource_id, start_after=_parse_cursor(cursor), limit=page_size + 1
            )
        return self._page(events, page_size, lambda event: event.sequence)

    def get_executions(
        self,
        vault_id: int,
        *,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> Page:
        page_size = self._limit(limit)
        with self._read_factory() as uow:
            executions = uow.executions.list_executions(
                vault_id, start_after=_parse_cursor(cursor), limit=page_size + 1
            )
        return self._page(executions, page_size, lambda execution: execution.sequence)

    def get_order_index_owner(self, order_idx: str) -> int:
        with self._read_factory() as uow:
            vault_id = uow.triggers.vault_id_for_order(order_idx)
        if vault_id is None:
            raise NotFoundError(f"no vault owns order {order_idx}")
        return vault_id

    @staticmethod
    def _page(items: list, page_size: int, key) -> Page:
        has_more = len(items) > page_size
        items = items[:page_size]
        next_cursor = str(key(items[-1])) if has_more and items else None
        return Page(items=items, next_cursor=next_cursor)
