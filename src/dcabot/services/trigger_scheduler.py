from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime

from dcabot.domain.errors import InvalidInputError, NotFoundError
from dcabot.domain.models import SagaState, Trigger, TriggerKind, Vault
from dcabot.domain.time_intervals import ensure_utc, next_target_time
from dcabot.persistence.sqlite.sqlite_connection import ts_from_db, ts_to_db
from dcabot.persistence.uow import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)

_CURSOR_SEPARATOR = "|"


@dataclass(frozen=True)
class TriggerPage:
    vault_ids: list[int] = field(default_factory=list)
    next_cursor: str | None = None


def encode_time_cursor(target_time: datetime, vault_id: int) -> str:
    return f"{ts_to_db(target_time)}{_CURSOR_SEPARATOR}{vault_id}"


def decode_time_cursor(cursor: str) -> tuple[datetime, int]:
    try:
        raw_time, raw_id = cursor.rsplit(_CURSOR_SEPARATOR, 1)
        return ts_from_db(raw_time), int(raw_id)
    except ValueError as exc:
        raise InvalidInputError(f"malformed cursor: {cursor!r}") from exc


def _decode_id_cursor(cursor: str | None) -> int | None:
    if cursor is None:
        return None
    try:
        return int(cursor)
    except ValueError as exc:
        raise InvalidInputError(f"malformed cursor: {cursor!r}") from exc


def advance_trigger(uow: UnitOfWork, vault: Vault, trigger: Trigger, as_of: datetime) -> Trigger:
    """Move a time trigger to its next slot and clear any saga state.

    Idle triggers never self-advance; callers invoke this only after an
    execution attempt consumed the current slot.
    """

    if trigger.kind != TriggerKind.TIME or trigger.target_time is None:
        raise InvalidInputError(f"vault {vault.id} does not have a time trigger")
    advanced = replace(
        trigger,
        target_time=next_target_time(
            trigger.target_time,
            vault.time_interval,
            as_of,
            interval_seconds=vault.interval_seconds,
            anchor_day=vault.schedule_anchor_day,
        ),
        saga_state=SagaState.IDLE,
        pending_request_id=None,
        pending_amount=0,
        pending_order_filled=False,
    )
    uow.triggers.save_trigger(advanced)
    logger.info(
        "trigger_advanced",
        extra={
            "extra": {
                "vault_id": vault.id,
                "previous_target_time": trigger.target_time.isoformat(),
                "target_time": advanced.target_time.isoformat() if advanced.target_time else None,
            }
        },
    )
    return advanced


class TriggerScheduler:
    def __init__(self, uow_factory: UnitOfWorkFactory, *, page_limit: int = 30) -> None:
        self._uow_factory = uow_factory
        self._read_factory = replace(uow_factory, read_only=True)
        self._page_limit = page_limit

    def _limit(self, limit: int | None) -> int:
        resolved = self._page_limit if limit is None else limit
        if resolved <= 0:
            raise InvalidInputError("limit must be > 0")
        return resolved

    def due_time_triggers(
        self,
        as_of: datetime,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> TriggerPage:
        """Time triggers due at ``as_of``, oldest first with ties broken by vault id."""
        page_size = self._limit(limit)
        after = decode_time_cursor(cursor) if cursor is not None else None
        with self._read_factory() as uow:
            triggers = uow.triggers.list_due_time_triggers(
                as_of=ensure_utc(as_of), limit=page_size + 1, after=after
            )
        has_more = len(triggers) > page_size
        triggers = triggers[:page_size]
        next_cursor = None
        if has_more and triggers:
            last = triggers[-1]
            if last.target_time is not None:
                next_cursor = encode_time_cursor(last.target_time, last.vault_id)
        return TriggerPage(vault_ids=[t.vault_id for t in triggers], next_cursor=next_cursor)

    def open_price_triggers(
        self,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> TriggerPage:
        page_size = self._limit(limit)
        with self._read_factory() as uow:
            triggers = uow.triggers.list_price_triggers(
                saga_state=SagaState.ORDER_OPEN,
                limit=page_size + 1,
                start_after=_decode_id_cursor(cursor),
            )
        has_more = len(triggers) > page_size
        triggers = triggers[:page_size]
        next_cursor = str(triggers[-1].vault_id) if has_more and triggers else None
        return TriggerPage(vault_ids=[t.vault_id for t in triggers], next_cursor=next_cursor)

    def lookup_by_order_index(self, order_idx: str) -> int:
        with self._read_factory() as uow:
            vault_id = uow.triggers.vault_id_for_order(order_idx)
        if vault_id is None:
            raise NotFoundError(f"no pending order with index {order_idx}")
        return vault_id

    def advance(self, vault_id: int, as_of: datetime) -> Trigger:
        with self._uow_factory() as uow:
            vault = uow.vaults.get_vault(vault_id)
            trigger = uow.triggers.get_trigger(vault_id)
            if vault is None or trigger is None:
                raise NotFoundError(f"vault {vault_id} has no trigger")
            return advance_trigger(uow, vault, trigger, as_of)

    def delete(self, vault_id: int) -> bool:
        with self._uow_factory() as uow:
            deleted = uow.triggers.delete_trigger(vault_id)
        logger.info("trigger_deleted", extra={"extra": {"vault_id": vault_id, "deleted": deleted}})
        return deleted
