from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from dcabot.config import Settings
from dcabot.domain import dca_plus
from dcabot.domain.errors import InvalidInputError, NotEligibleError, NotFoundError
from dcabot.domain.events import EventDraft, EventType, coin_payload
from dcabot.domain.messages import OutboundMessage, Response, split_transfers
from dcabot.domain.models import Block, Coin, DisburseEscrowTask, Page, Vault
from dcabot.domain.time_intervals import ensure_utc
from dcabot.logging_context import vault_context
from dcabot.observability import get_instrumentation
from dcabot.persistence.uow import UnitOfWork, UnitOfWorkFactory
from dcabot.services.admin_service import swap_adjustment_for
from dcabot.services.trigger_scheduler import decode_time_cursor, encode_time_cursor

logger = logging.getLogger(__name__)


def schedule_for_vault(uow: UnitOfWork, vault: Vault, now: datetime) -> DisburseEscrowTask | None:
    """Upsert the disbursement task of a DCA+ vault that just became terminal."""
    if vault.dca_plus_config is None:
        return None
    task = DisburseEscrowTask(
        vault_id=vault.id,
        due_time=dca_plus.expected_completion_time(vault, ensure_utc(now)),
    )
    uow.escrow.save_task(task)
    logger.info(
        "escrow_disbursement_scheduled",
        extra={"extra": {"vault_id": vault.id, "due_time": task.due_time.isoformat()}},
    )
    return task


class EscrowService:
    def __init__(self, uow_factory: UnitOfWorkFactory, settings: Settings) -> None:
        self._uow_factory = uow_factory
        self._read_factory = replace(uow_factory, read_only=True)
        self._settings = settings

    def schedule_disbursement(self, vault_id: int, due_time: datetime) -> DisburseEscrowTask:
        task = DisburseEscrowTask(vault_id=vault_id, due_time=ensure_utc(due_time))
        with self._uow_factory() as uow:
            if uow.vaults.get_vault(vault_id) is None:
                raise NotFoundError(f"vault {vault_id} not found")
            uow.escrow.save_task(task)
        return task

    def due_disbursement_tasks(
        self,
        as_of: datetime,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page:
        page_size = self._settings.page_limit if limit is None else limit
        if page_size <= 0:
            raise InvalidInputError("limit must be > 0")
        after = decode_time_cursor(cursor) if cursor is not None else None
        with self._read_factory() as uow:
            tasks = uow.escrow.list_due_tasks(
                as_of=ensure_utc(as_of), limit=page_size + 1, after=after
            )
        has_more = len(tasks) > page_size
        tasks = tasks[:page_size]
        next_cursor = (
            encode_time_cursor(tasks[-1].due_time, tasks[-1].vault_id)
            if has_more and tasks
            else None
        )
        return Page(items=tasks, next_cursor=next_cursor)

    def disburse(self, vault_id: int, *, block: Block) -> Response:
        """Release a terminal DCA+ vault's escrow once its due time has passed."""
        with vault_context(vault_id), self._uow_factory() as uow:
            vault = uow.vaults.get_vault(vault_id)
            if vault is None:
                raise NotFoundError(f"vault {vault_id} not found")
            config = vault.dca_plus_config
            if config is None:
                raise NotEligibleError(f"vault {vault_id} is not a DCA+ vault")
            task = uow.escrow.get_task(vault_id)
            if task is None:
                raise NotEligibleError(f"vault {vault_id} has no pending escrow disbursement")
            if not vault.is_terminal:
                raise NotEligibleError(f"vault {vault_id} is still {vault.status.value}")
            if task.due_time > block.time:
                raise NotEligibleError(
                    f"escrow of vault {vault_id} is due at {task.due_time.isoformat()}"
                )

            settlement = dca_plus.settle_escrow(
                vault,
                coefficient=swap_adjustment_for(uow, vault),
                performance_fee_percent=self._settings.performance_fee_percent,
            )
            out_denom = vault.output_denom
            messages: list[OutboundMessage] = []
            messages.extend(
                split_transfers(
                    Coin(out_denom, settlement.owner_amount), vault.payout_destinations
                )
            )
            messages.extend(
                split_transfers(
                    Coin(out_denom, settlement.performance_fee), self._settings.fee_shares
                )
            )

            uow.vaults.update_vault(
                replace(vault, dca_plus_config=replace(config, escrowed_balance=0))
            )
            uow.escrow.delete_task(vault_id)
            uow.events.append(
                EventDraft.at(
                    vault_id,
                    block,
                    EventType.ESCROW_DISBURSED,
                    amount_disbursed=coin_payload(Coin(out_denom, settlement.owner_amount)),
                    performance_fee=coin_payload(Coin(out_denom, settlement.performance_fee)),
                    benchmark_received=str(settlement.benchmark_received),
                )
            )

        get_instrumentation().counter("escrow_disbursements_total", 1)
        logger.info(
            "escrow_disbursed",
            extra={
                "extra": {
                    "vault_id": vault_id,
                    "owner_amount": settlement.owner_amount,
                    "performance_fee": settlement.performance_fee,
                    "benchmark_received": settlement.benchmark_received,
                }
            },
        )
        return Response(action="disburse_escrow", vault_id=vault_id, messages=messages)

    claim = disburse
