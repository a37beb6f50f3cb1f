from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal

from dcabot.adapters.venue import SwapVenue
from dcabot.config import Settings
from dcabot.domain import dca_plus
from dcabot.domain.errors import (
    AlreadyTerminalError,
    InvalidInputError,
    NotFoundError,
    SagaInFlightError,
    TriggerNotReadyError,
    VenueError,
)
from dcabot.domain.events import EventDraft, EventType, coin_payload
from dcabot.domain.messages import (
    ExecutionResult,
    ExecutionStatus,
    LimitOrderSubmittedReply,
    OrderRetractedReply,
    OrderWithdrawnReply,
    OutboundMessage,
    RetractOrder,
    SubmitLimitOrder,
    SubmitSwap,
    SwapErrorKind,
    SwapReply,
    VenueReply,
    WithdrawOrder,
    split_transfers,
)
from dcabot.domain.models import (
    Block,
    Coin,
    Execution,
    ExecutionOutcome,
    PositionType,
    SagaState,
    SkipReason,
    Trigger,
    TriggerKind,
    Vault,
    VaultStatus,
)
from dcabot.domain.time_intervals import add_interval
from dcabot.logging_context import vault_context, with_logging_context
from dcabot.observability import get_instrumentation
from dcabot.persistence.uow import UnitOfWork, UnitOfWorkFactory
from dcabot.services.admin_service import ensure_not_paused, swap_adjustment_for
from dcabot.services.escrow_service import schedule_for_vault
from dcabot.services.trigger_scheduler import advance_trigger
from dcabot.services.vault_service import finalize_cancellation, submit_limit_order

logger = logging.getLogger(__name__)


def _price_condition_met(vault: Vault, price: Decimal) -> bool:
    if vault.price_threshold is None:
        return True
    if vault.position_type == PositionType.ENTER:
        return price <= vault.price_threshold
    return price >= vault.price_threshold


def _clear_pending(trigger: Trigger) -> Trigger:
    return replace(
        trigger,
        pending_request_id=None,
        pending_amount=0,
        pending_order_filled=False,
    )


class ExecutionService:
    """Drives the execution saga of one vault per invocation.

    ``execute_trigger`` starts a tranche and ``handle_reply`` folds in the
    venue's answer. Each call runs in a single unit of work and returns the
    outbound messages to dispatch once that work has committed.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        venue: SwapVenue,
        settings: Settings,
    ) -> None:
        self._uow_factory = uow_factory
        self._read_factory = replace(uow_factory, read_only=True)
        self._venue = venue
        self._settings = settings

    def execute_trigger(self, vault_id: int, *, block: Block) -> ExecutionResult:
        with vault_context(vault_id), self._uow_factory() as uow:
            ensure_not_paused(uow, self._settings)
            vault = uow.vaults.get_vault(vault_id)
            if vault is None:
                raise NotFoundError(f"vault {vault_id} not found")
            if vault.is_terminal:
                raise AlreadyTerminalError(f"vault {vault_id} is {vault.status.value}")
            trigger = uow.triggers.get_trigger(vault_id)
            if trigger is None:
                raise NotFoundError(f"vault {vault_id} has no trigger")
            if trigger.is_in_flight:
                raise SagaInFlightError(
                    f"vault {vault_id} is awaiting {trigger.saga_state.value}"
                )
            if trigger.kind == TriggerKind.PRICE:
                return self._poll_order(uow, vault, trigger)
            return self._start_swap(uow, vault, trigger, block)

    def _start_swap(
        self, uow: UnitOfWork, vault: Vault, trigger: Trigger, block: Block
    ) -> ExecutionResult:
        if trigger.target_time is None or trigger.target_time > block.time:
            raise TriggerNotReadyError(f"vault {vault.id} is not due yet")
        if vault.balance.amount <= 0:
            raise TriggerNotReadyError(f"vault {vault.id} has no balance left")

        amount = dca_plus.tranche_amount(vault, swap_adjustment_for(uow, vault))
        price = self._venue.get_price(vault.pair.address, vault.position_type)
        if not _price_condition_met(vault, price):
            logger.info(
                "execution_price_condition_not_met",
                extra={
                    "extra": {
                        "vault_id": vault.id,
                        "price": str(price),
                        "threshold": str(vault.price_threshold),
                    }
                },
            )
            get_instrumentation().counter(
                "executions_skipped_total",
                1,
                attrs={"reason": SkipReason.PRICE_CONDITION_NOT_MET.value},
            )
            return ExecutionResult(
                action="execute_trigger",
                vault_id=vault.id,
                status=ExecutionStatus.SKIPPED,
                skip_reason=SkipReason.PRICE_CONDITION_NOT_MET,
            )

        if vault.status == VaultStatus.SCHEDULED:
            vault = self._activate(uow, vault, block)

        uow.events.append(
            EventDraft.at(
                vault.id,
                block,
                EventType.EXECUTION_TRIGGERED,
                asset_price=price,
                base_denom=vault.pair.base_denom,
                quote_denom=vault.pair.quote_denom,
            )
        )
        request_id = uow.triggers.next_request_id(vault.id, "swap")
        uow.triggers.save_trigger(
            replace(
                trigger,
                saga_state=SagaState.AWAITING_SWAP_CONFIRMATION,
                pending_request_id=request_id,
                pending_amount=amount,
            )
        )
        message = SubmitSwap(
            request_id=request_id,
            pair_address=vault.pair.address,
            offer=Coin(vault.input_denom, amount),
            belief_price=price,
            max_spread=self._max_spread(vault),
        )
        logger.info(
            "swap_submitted",
            extra={
                "extra": {
                    "vault_id": vault.id,
                    "request_id": request_id,
                    "offer": str(message.offer),
                    "price": str(price),
                }
            },
        )
        get_instrumentation().counter("executions_triggered_total", 1)
        return ExecutionResult(
            action="execute_trigger",
            vault_id=vault.id,
            messages=[message],
            status=ExecutionStatus.SWAP_SUBMITTED,
            attributes={"request_id": request_id},
        )

    def _poll_order(self, uow: UnitOfWork, vault: Vault, trigger: Trigger) -> ExecutionResult:
        if trigger.saga_state != SagaState.ORDER_OPEN or trigger.order_idx is None:
            raise TriggerNotReadyError(f"vault {vault.id} has no open limit order")
        fill = self._venue.query_order(vault.pair.address, trigger.order_idx)
        if fill.filled_amount <= 0:
            raise TriggerNotReadyError(f"limit order {trigger.order_idx} has not been filled")
        request_id = uow.triggers.next_request_id(vault.id, "withdraw")
        uow.triggers.save_trigger(
            replace(
                trigger,
                saga_state=SagaState.AWAITING_WITHDRAWAL_CONFIRMATION,
                pending_request_id=request_id,
                pending_amount=fill.filled_amount,
                pending_order_filled=fill.remaining_amount <= 0,
            )
        )
        logger.info(
            "limit_order_withdrawal_submitted",
            extra={
                "extra": {
                    "vault_id": vault.id,
                    "order_idx": trigger.order_idx,
                    "filled_amount": fill.filled_amount,
                    "remaining_amount": fill.remaining_amount,
                }
            },
        )
        return ExecutionResult(
            action="execute_trigger",
            vault_id=vault.id,
            messages=[
                WithdrawOrder(
                    request_id=request_id,
                    pair_address=vault.pair.address,
                    order_idx=trigger.order_idx,
                )
            ],
            status=ExecutionStatus.WITHDRAWAL_SUBMITTED,
            attributes={"request_id": request_id, "order_idx": trigger.order_idx},
        )

    def handle_reply(self, reply: VenueReply, *, block: Block) -> ExecutionResult:
        with with_logging_context(request_id=reply.request_id), self._uow_factory() as uow:
            trigger = uow.triggers.get_trigger_by_request_id(reply.request_id)
            if trigger is None:
                logger.warning(
                    "venue_reply_unmatched",
                    extra={
                        "extra": {
                            "request_id": reply.request_id,
                            "reply_type": type(reply).__name__,
                        }
                    },
                )
                raise NotFoundError(f"no pending request {reply.request_id}")
            vault = uow.vaults.get_vault(trigger.vault_id)
            if vault is None:
                raise NotFoundError(f"vault {trigger.vault_id} not found")
            get_instrumentation().counter(
                "venue_replies_total", 1, attrs={"type": type(reply).__name__}
            )
            with vault_context(vault.id, order_idx=trigger.order_idx):
                if isinstance(reply, SwapReply):
                    self._expect(trigger, SagaState.AWAITING_SWAP_CONFIRMATION, reply)
                    return self._on_swap_reply(uow, vault, trigger, reply, block)
                if isinstance(reply, LimitOrderSubmittedReply):
                    self._expect(trigger, SagaState.AWAITING_ORDER_SUBMISSION, reply)
                    return self._on_order_submitted(uow, vault, trigger, reply, block)
                if isinstance(reply, OrderWithdrawnReply):
                    self._expect(trigger, SagaState.AWAITING_WITHDRAWAL_CONFIRMATION, reply)
                    return self._on_order_withdrawn(uow, vault, trigger, reply, block)
                if isinstance(reply, OrderRetractedReply):
                    self._expect(trigger, SagaState.AWAITING_ORDER_RETRACTION, reply)
                    return self._on_order_retracted(uow, vault, trigger, reply, block)
                raise InvalidInputError(f"unsupported reply type {type(reply).__name__}")

    @staticmethod
    def _expect(trigger: Trigger, state: SagaState, reply: VenueReply) -> None:
        if trigger.saga_state != state:
            raise InvalidInputError(
                f"{type(reply).__name__} does not match pending {trigger.saga_state.value}"
            )

    def _on_swap_reply(
        self,
        uow: UnitOfWork,
        vault: Vault,
        trigger: Trigger,
        reply: SwapReply,
        block: Block,
    ) -> ExecutionResult:
        if not reply.ok:
            if reply.error == SwapErrorKind.SLIPPAGE_EXCEEDED:
                outcome = ExecutionOutcome.SKIPPED_SLIPPAGE
                reason = SkipReason.SLIPPAGE_TOLERANCE_EXCEEDED
                status = ExecutionStatus.SKIPPED
            else:
                outcome = ExecutionOutcome.FAILED
                reason = SkipReason.VENUE_FAILURE
                status = ExecutionStatus.FAILED
            execution = uow.executions.record(
                vault_id=vault.id,
                block=block,
                outcome=outcome,
                reason=reply.error_message or reason.value,
            )
            uow.events.append(
                EventDraft.at(
                    vault.id,
                    block,
                    EventType.EXECUTION_SKIPPED,
                    reason=reason,
                    detail=reply.error_message,
                )
            )
            advance_trigger(uow, vault, trigger, block.time)
            logger.info(
                "execution_skipped",
                extra={
                    "extra": {
                        "vault_id": vault.id,
                        "reason": reason.value,
                        "detail": reply.error_message,
                    }
                },
            )
            get_instrumentation().counter(
                "executions_skipped_total", 1, attrs={"reason": reason.value}
            )
            return ExecutionResult(
                action="swap_reply",
                vault_id=vault.id,
                status=status,
                execution=execution,
                skip_reason=reason,
            )

        if reply.sent is None or reply.received is None:
            raise VenueError(f"swap reply {reply.request_id} is missing amounts")
        vault, execution, messages = self._settle_tranche(
            uow, vault, sent=reply.sent, received=reply.received, block=block
        )
        if vault.balance.amount == 0:
            vault = self._complete(uow, vault, block)
        else:
            advance_trigger(uow, vault, trigger, block.time)
        return ExecutionResult(
            action="swap_reply",
            vault_id=vault.id,
            messages=messages,
            status=ExecutionStatus.SETTLED,
            execution=execution,
            attributes={"vault_status": vault.status.value},
        )

    def _on_order_submitted(
        self,
        uow: UnitOfWork,
        vault: Vault,
        trigger: Trigger,
        reply: LimitOrderSubmittedReply,
        block: Block,
    ) -> ExecutionResult:
        uow.triggers.save_trigger(
            _clear_pending(
                replace(trigger, saga_state=SagaState.ORDER_OPEN, order_idx=reply.order_idx)
            )
        )
        uow.triggers.index_order(reply.order_idx, vault.id)
        uow.events.append(
            EventDraft.at(
                vault.id,
                block,
                EventType.LIMIT_ORDER_SUBMITTED,
                order_idx=reply.order_idx,
                target_price=trigger.target_price,
                offer=coin_payload(Coin(vault.input_denom, trigger.pending_amount)),
            )
        )
        logger.info(
            "limit_order_open",
            extra={"extra": {"vault_id": vault.id, "order_idx": reply.order_idx}},
        )
        return ExecutionResult(
            action="limit_order_reply",
            vault_id=vault.id,
            status=ExecutionStatus.ORDER_OPEN,
            attributes={"order_idx": reply.order_idx},
        )

    def _on_order_withdrawn(
        self,
        uow: UnitOfWork,
        vault: Vault,
        trigger: Trigger,
        reply: OrderWithdrawnReply,
        block: Block,
    ) -> ExecutionResult:
        if vault.status == VaultStatus.SCHEDULED:
            vault = self._activate(uow, vault, block)
        vault, execution, messages = self._settle_tranche(
            uow,
            vault,
            sent=Coin(vault.input_denom, trigger.pending_amount),
            received=reply.received,
            block=block,
        )

        if not trigger.pending_order_filled:
            uow.triggers.save_trigger(
                _clear_pending(replace(trigger, saga_state=SagaState.ORDER_OPEN))
            )
            status = ExecutionStatus.ORDER_OPEN
        elif vault.balance.amount == 0:
            vault = self._complete(uow, vault, block)
            status = ExecutionStatus.SETTLED
        else:
            if trigger.order_idx is not None:
                uow.triggers.unindex_order(trigger.order_idx)
            if vault.repeat_price_trigger and trigger.target_price is not None:
                _, order = submit_limit_order(uow, vault, trigger.target_price)
                messages.append(order)
                status = ExecutionStatus.ORDER_SUBMITTED
            else:
                uow.triggers.save_trigger(
                    Trigger.time(
                        vault.id,
                        add_interval(
                            block.time,
                            vault.time_interval,
                            interval_seconds=vault.interval_seconds,
                            anchor_day=vault.schedule_anchor_day,
                        ),
                    )
                )
                status = ExecutionStatus.SETTLED
        return ExecutionResult(
            action="withdraw_reply",
            vault_id=vault.id,
            messages=messages,
            status=status,
            execution=execution,
            attributes={"vault_status": vault.status.value},
        )

    def _on_order_retracted(
        self,
        uow: UnitOfWork,
        vault: Vault,
        trigger: Trigger,
        reply: OrderRetractedReply,
        block: Block,
    ) -> ExecutionResult:
        del trigger
        messages: list[OutboundMessage] = []
        execution = None
        if reply.sent.amount > 0:
            vault, execution, messages = self._settle_tranche(
                uow, vault, sent=reply.sent, received=reply.received, block=block
            )
        vault, refunds = finalize_cancellation(uow, vault, block=block)
        messages.extend(refunds)
        return ExecutionResult(
            action="retract_reply",
            vault_id=vault.id,
            messages=messages,
            status=ExecutionStatus.CANCELLED,
            execution=execution,
        )

    def _activate(self, uow: UnitOfWork, vault: Vault, block: Block) -> Vault:
        activated = replace(vault, status=VaultStatus.ACTIVE, started_at=block.time)
        uow.vaults.update_vault(activated)
        uow.events.append(EventDraft.at(vault.id, block, EventType.VAULT_ACTIVATED))
        logger.info("vault_activated", extra={"extra": {"vault_id": vault.id}})
        return activated

    def _settle_tranche(
        self,
        uow: UnitOfWork,
        vault: Vault,
        *,
        sent: Coin,
        received: Coin,
        block: Block,
    ) -> tuple[Vault, Execution, list[OutboundMessage]]:
        """Apply one successful tranche to the vault and split its proceeds."""
        if sent.denom != vault.input_denom or received.denom != vault.output_denom:
            raise VenueError(
                f"venue settled {sent} -> {received}, expected "
                f"{vault.input_denom} -> {vault.output_denom}"
            )
        if sent.amount > vault.balance.amount:
            raise VenueError(f"venue sent {sent}, more than balance {vault.balance}")

        fee_amount = dca_plus.floor_amount(
            Decimal(received.amount) * self._settings.swap_fee_percent
        )
        net_received = received.amount - fee_amount
        config = vault.dca_plus_config
        escrowed = 0
        if config is not None:
            escrowed = dca_plus.escrow_delta(net_received, config.escrow_level)
            config = dca_plus.record_tranche(
                config,
                sent=sent.amount,
                received=received.amount,
                coefficient=swap_adjustment_for(uow, vault),
                swap_fee_percent=self._settings.swap_fee_percent,
                escrowed=escrowed,
            )
        owner_amount = net_received - escrowed

        messages: list[OutboundMessage] = []
        messages.extend(
            split_transfers(received.with_amount(fee_amount), self._settings.fee_shares)
        )
        messages.extend(
            split_transfers(received.with_amount(owner_amount), vault.payout_destinations)
        )

        vault = replace(
            vault,
            balance=vault.balance.with_amount(vault.balance.amount - sent.amount),
            swapped_amount=vault.swapped_amount.with_amount(
                vault.swapped_amount.amount + sent.amount
            ),
            received_amount=vault.received_amount.with_amount(
                vault.received_amount.amount + net_received
            ),
            dca_plus_config=config,
        )
        uow.vaults.update_vault(vault)
        execution = uow.executions.record(
            vault_id=vault.id,
            block=block,
            outcome=ExecutionOutcome.SUCCESS,
            sent=sent,
            received=received,
            fee=received.with_amount(fee_amount),
        )
        uow.events.append(
            EventDraft.at(
                vault.id,
                block,
                EventType.EXECUTION_COMPLETED,
                sent=coin_payload(sent),
                received=coin_payload(received),
                fee=coin_payload(received.with_amount(fee_amount)),
                escrowed=str(escrowed),
            )
        )
        logger.info(
            "tranche_settled",
            extra={
                "extra": {
                    "vault_id": vault.id,
                    "sequence": execution.sequence,
                    "sent": str(sent),
                    "received": str(received),
                    "fee": fee_amount,
                    "escrowed": escrowed,
                    "balance": str(vault.balance),
                }
            },
        )
        get_instrumentation().counter("executions_settled_total", 1)
        return vault, execution, messages

    def _complete(self, uow: UnitOfWork, vault: Vault, block: Block) -> Vault:
        completed = replace(vault, status=VaultStatus.COMPLETED)
        uow.vaults.update_vault(completed)
        uow.triggers.delete_trigger(vault.id)
        uow.events.append(EventDraft.at(vault.id, block, EventType.VAULT_COMPLETED))
        schedule_for_vault(uow, completed, block.time)
        logger.info("vault_completed", extra={"extra": {"vault_id": vault.id}})
        return completed

    def _max_spread(self, vault: Vault) -> Decimal:
        if vault.slippage_tolerance is not None:
            return vault.slippage_tolerance
        return self._settings.default_slippage_tolerance

    def pending_requests(self) -> list[OutboundMessage]:
        """Rebuild the venue requests of every in-flight saga.

        Used on startup to re-submit requests that may not have reached the
        venue, or whose reply was lost while being handled. The venue
        de-duplicates by request id and queues its original reply again.
        """

        messages: list[OutboundMessage] = []
        with self._read_factory() as uow:
            for trigger in uow.triggers.list_in_flight_triggers():
                vault = uow.vaults.get_vault(trigger.vault_id)
                if vault is None or trigger.pending_request_id is None:
                    continue
                request_id = trigger.pending_request_id
                pair_address = vault.pair.address
                if trigger.saga_state == SagaState.AWAITING_SWAP_CONFIRMATION:
                    messages.append(
                        SubmitSwap(
                            request_id=request_id,
                            pair_address=pair_address,
                            offer=Coin(vault.input_denom, trigger.pending_amount),
                            belief_price=None,
                            max_spread=self._max_spread(vault),
                        )
                    )
                elif (
                    trigger.saga_state == SagaState.AWAITING_ORDER_SUBMISSION
                    and trigger.target_price is not None
                ):
                    messages.append(
                        SubmitLimitOrder(
                            request_id=request_id,
                            pair_address=pair_address,
                            offer=Coin(vault.input_denom, trigger.pending_amount),
                            price=trigger.target_price,
                        )
                    )
                elif trigger.order_idx is not None:
                    request_type = (
                        RetractOrder
                        if trigger.saga_state == SagaState.AWAITING_ORDER_RETRACTION
                        else WithdrawOrder
                    )
                    messages.append(
                        request_type(
                            request_id=request_id,
                            pair_address=pair_address,
                            order_idx=trigger.order_idx,
                        )
                    )
        return messages
