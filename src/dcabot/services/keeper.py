from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from uuid import uuid4

from dcabot.adapters.venue import SwapVenue
from dcabot.domain.errors import DcaError, SagaInFlightError, TriggerNotReadyError, VenueError
from dcabot.domain.messages import ExecutionStatus, Response
from dcabot.domain.models import Block
from dcabot.logging_context import with_cycle_context
from dcabot.observability import get_instrumentation
from dcabot.services.dispatcher import MessageDispatcher
from dcabot.services.escrow_service import EscrowService
from dcabot.services.execution_service import ExecutionService
from dcabot.services.trigger_scheduler import TriggerScheduler

logger = logging.getLogger(__name__)

_MAX_REPLY_ROUNDS = 16


@dataclass
class CycleReport:
    cycle_id: str
    swaps_submitted: int = 0
    withdrawals_submitted: int = 0
    skipped: int = 0
    not_ready: int = 0
    in_flight: int = 0
    replies_handled: int = 0
    disbursed: int = 0
    errors: int = 0


class Keeper:
    """Scheduled job that drives due triggers, venue replies and escrow payouts."""

    def __init__(
        self,
        *,
        scheduler: TriggerScheduler,
        execution_service: ExecutionService,
        escrow_service: EscrowService,
        venue: SwapVenue,
        dispatcher: MessageDispatcher,
        page_limit: int = 30,
    ) -> None:
        self._scheduler = scheduler
        self._execution = execution_service
        self._escrow = escrow_service
        self._venue = venue
        self._dispatcher = dispatcher
        self._page_limit = page_limit

    def recover(self) -> int:
        """Re-send the requests of sagas left in flight by a previous run."""
        messages = self._execution.pending_requests()
        sent = self._dispatcher.dispatch_messages(messages)
        if sent:
            logger.warning(
                "keeper_resubmitted_pending_requests", extra={"extra": {"count": sent}}
            )
        return sent

    def run_cycle(self, block: Block, *, cycle_id: str | None = None) -> CycleReport:
        report = CycleReport(cycle_id=cycle_id or uuid4().hex)
        instrumentation = get_instrumentation()
        with with_cycle_context(report.cycle_id), instrumentation.timed(
            "keeper_cycle_duration_ms"
        ), instrumentation.trace("keeper_cycle", attrs={"block_height": block.height}):
            logger.info(
                "keeper_cycle_started",
                extra={
                    "extra": {
                        "block_height": block.height,
                        "block_time": block.time.isoformat(),
                    }
                },
            )
            self._run_due_time_triggers(block, report)
            self._run_open_price_triggers(block, report)
            self._deliver_replies(block, report)
            self._run_due_disbursements(block, report)
            logger.info("keeper_cycle_finished", extra={"extra": vars(report)})
        get_instrumentation().counter("keeper_cycles_total", 1)
        if report.errors:
            get_instrumentation().counter("keeper_errors_total", report.errors)
        return report

    def _guarded(
        self,
        report: CycleReport,
        stage: str,
        vault_id: int,
        fn: Callable[[], Response],
    ) -> Response | None:
        try:
            response = fn()
        except TriggerNotReadyError:
            report.not_ready += 1
            return None
        except SagaInFlightError:
            report.in_flight += 1
            return None
        except (DcaError, VenueError) as exc:
            self._record_failure(report, stage, vault_id, exc)
            return None
        try:
            self._dispatcher.dispatch(response)
        except VenueError as exc:
            # Committed but undelivered requests are re-sent by recover().
            self._record_failure(report, f"{stage}_dispatch", vault_id, exc)
        return response

    @staticmethod
    def _record_failure(report: CycleReport, stage: str, vault_id: int, exc: Exception) -> None:
        report.errors += 1
        logger.warning(
            "keeper_vault_failed",
            extra={
                "extra": {
                    "stage": stage,
                    "vault_id": vault_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            },
        )

    def _run_due_time_triggers(self, block: Block, report: CycleReport) -> None:
        cursor: str | None = None
        while True:
            page = self._scheduler.due_time_triggers(block.time, self._page_limit, cursor)
            for vault_id in page.vault_ids:
                result = self._guarded(
                    report,
                    "time_trigger",
                    vault_id,
                    lambda vault_id=vault_id: self._execution.execute_trigger(
                        vault_id, block=block
                    ),
                )
                if result is None:
                    continue
                if getattr(result, "status", None) == ExecutionStatus.SKIPPED:
                    report.skipped += 1
                else:
                    report.swaps_submitted += 1
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def _run_open_price_triggers(self, block: Block, report: CycleReport) -> None:
        cursor: str | None = None
        while True:
            page = self._scheduler.open_price_triggers(self._page_limit, cursor)
            for vault_id in page.vault_ids:
                result = self._guarded(
                    report,
                    "price_trigger",
                    vault_id,
                    lambda vault_id=vault_id: self._execution.execute_trigger(
                        vault_id, block=block
                    ),
                )
                if result is not None:
                    report.withdrawals_submitted += 1
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def _deliver_replies(self, block: Block, report: CycleReport) -> None:
        # Handling a reply can issue new requests whose replies arrive in the next round.
        for _ in range(_MAX_REPLY_ROUNDS):
            try:
                replies = self._venue.take_replies()
            except VenueError as exc:
                # Unread replies stay queued at the venue for the next cycle.
                self._record_failure(report, "take_replies", 0, exc)
                return
            if not replies:
                return
            for reply in replies:
                result = self._guarded(
                    report,
                    "reply",
                    0,
                    lambda reply=reply: self._execution.handle_reply(reply, block=block),
                )
                if result is not None:
                    report.replies_handled += 1
        logger.warning(
            "keeper_reply_rounds_exhausted", extra={"extra": {"rounds": _MAX_REPLY_ROUNDS}}
        )

    def _run_due_disbursements(self, block: Block, report: CycleReport) -> None:
        cursor: str | None = None
        while True:
            page = self._escrow.due_disbursement_tasks(block.time, self._page_limit, cursor)
            for task in page.items:
                result = self._guarded(
                    report,
                    "escrow",
                    task.vault_id,
                    lambda vault_id=task.vault_id: self._escrow.disburse(vault_id, block=block),
                )
                if result is not None:
                    report.disbursed += 1
            if page.next_cursor is None:
                return
            cursor = page.next_cursor
