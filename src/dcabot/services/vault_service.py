from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

from dcabot.config import Settings
from dcabot.domain import dca_plus
from dcabot.domain.errors import (
    AlreadyCancelledError,
    AlreadyTerminalError,
    DenomMismatchError,
    InvalidInputError,
    NotFoundError,
    SagaInFlightError,
    UnauthorizedError,
)
from dcabot.domain.events import EventDraft, EventType, coin_payload
from dcabot.domain.messages import (
    OutboundMessage,
    Response,
    RetractOrder,
    SubmitLimitOrder,
    Transfer,
)
from dcabot.domain.models import (
    Block,
    Coin,
    Destination,
    PositionType,
    SagaState,
    Trigger,
    Vault,
    VaultStatus,
)
from dcabot.domain.time_intervals import TimeInterval, ensure_utc
from dcabot.logging_context import vault_context
from dcabot.observability import get_instrumentation
from dcabot.persistence.uow import UnitOfWork, UnitOfWorkFactory
from dcabot.services.admin_service import ensure_not_paused, swap_adjustment_for
from dcabot.services.escrow_service import schedule_for_vault

logger = logging.getLogger(__name__)

MAX_DESTINATIONS = 10


def _single_coin(funds: Sequence[Coin]) -> Coin:
    if len(funds) != 1:
        raise InvalidInputError(f"exactly one asset must be sent, received {len(funds)}")
    coin = funds[0]
    if coin.amount <= 0:
        raise InvalidInputError("deposit amount must be > 0")
    return coin


def _resolve_destinations(
    owner: str, destinations: Sequence[Destination] | None
) -> tuple[Destination, ...]:
    if not destinations:
        return (Destination(owner, Decimal(1)),)
    if len(destinations) > MAX_DESTINATIONS:
        raise InvalidInputError(f"no more than {MAX_DESTINATIONS} destinations are allowed")
    addresses = [destination.address for destination in destinations]
    if any(not address for address in addresses):
        raise InvalidInputError("destination address must not be empty")
    if len(set(addresses)) != len(addresses):
        raise InvalidInputError("destination addresses must be unique")
    if any(destination.allocation <= 0 for destination in destinations):
        raise InvalidInputError("destination allocations must be > 0")
    if sum(destination.allocation for destination in destinations) != 1:
        raise InvalidInputError("destination allocations must sum to 1")
    return tuple(destinations)


def submit_limit_order(
    uow: UnitOfWork, vault: Vault, target_price: Decimal
) -> tuple[Trigger, SubmitLimitOrder]:
    """Persist a price trigger awaiting order submission and build its request."""
    amount = dca_plus.tranche_amount(vault, swap_adjustment_for(uow, vault))
    request_id = uow.triggers.next_request_id(vault.id, "order")
    trigger = replace(
        Trigger.price(vault.id, target_price),
        saga_state=SagaState.AWAITING_ORDER_SUBMISSION,
        pending_request_id=request_id,
        pending_amount=amount,
    )
    uow.triggers.save_trigger(trigger)
    message = SubmitLimitOrder(
        request_id=request_id,
        pair_address=vault.pair.address,
        offer=Coin(vault.input_denom, amount),
        price=target_price,
    )
    return trigger, message


def finalize_cancellation(
    uow: UnitOfWork, vault: Vault, *, block: Block
) -> tuple[Vault, list[OutboundMessage]]:
    """Refund the remaining balance and retire the vault and its trigger."""
    uow.events.append(EventDraft.at(vault.id, block, EventType.VAULT_CANCELLED))
    cancelled = replace(
        vault,
        balance=vault.balance.with_amount(0),
        status=VaultStatus.CANCELLED,
    )
    schedule_for_vault(uow, cancelled, block.time)
    messages: list[OutboundMessage] = []
    if vault.balance.amount > 0:
        messages.append(Transfer(vault.owner, vault.balance))
    uow.vaults.update_vault(cancelled)
    uow.triggers.delete_trigger(vault.id)
    logger.info(
        "vault_cancelled",
        extra={"extra": {"vault_id": vault.id, "refund": str(vault.balance)}},
    )
    get_instrumentation().counter("vault_cancellations_total", 1)
    return cancelled, messages


class VaultService:
    def __init__(self, uow_factory: UnitOfWorkFactory, settings: Settings) -> None:
        self._uow_factory = uow_factory
        self._settings = settings

    def create(
        self,
        owner: str,
        pair_address: str,
        swap_amount: int,
        time_interval: TimeInterval,
        funds: Sequence[Coin],
        *,
        position_type: PositionType | None = None,
        slippage_tolerance: Decimal | None = None,
        price_threshold: Decimal | None = None,
        target_price: Decimal | None = None,
        repeat_price_trigger: bool = False,
        target_start_time: datetime | None = None,
        use_dca_plus: bool = False,
        label: str | None = None,
        interval_seconds: int | None = None,
        destinations: Sequence[Destination] | None = None,
        block: Block,
    ) -> Response:
        deposit = _single_coin(funds)
        resolved_destinations = _resolve_destinations(owner, destinations)
        if swap_amount <= 0:
            raise InvalidInputError("swap amount must be > 0")
        if swap_amount > deposit.amount:
            raise InvalidInputError("swap amount must not exceed the deposited amount")
        if slippage_tolerance is not None and not (0 <= slippage_tolerance <= 1):
            raise InvalidInputError("slippage tolerance must be within [0, 1]")
        if price_threshold is not None and price_threshold <= 0:
            raise InvalidInputError("price threshold must be > 0")
        if target_price is not None and target_price <= 0:
            raise InvalidInputError("target price must be > 0")
        if target_price is not None and target_start_time is not None:
            raise InvalidInputError("cannot provide both a target start time and a target price")
        if target_start_time is not None:
            target_start_time = ensure_utc(target_start_time)
            if target_start_time <= block.time:
                raise InvalidInputError("target start time must be in the future")
        custom = time_interval == TimeInterval.CUSTOM
        if custom and (interval_seconds is None or interval_seconds <= 0):
            raise InvalidInputError("custom interval requires positive interval seconds")
        if not custom:
            interval_seconds = None

        with self._uow_factory() as uow:
            ensure_not_paused(uow, self._settings)
            pair = uow.pairs.get_pair(pair_address)
            if pair is None:
                raise NotFoundError(f"pair {pair_address} not found")
            derived_position = pair.position_for_denom(deposit.denom)
            if derived_position is None:
                raise DenomMismatchError(
                    f"denom {deposit.denom} is not traded on pair {pair_address}"
                )
            resolved_position = position_type or derived_position
            if pair.input_denom(resolved_position) != deposit.denom:
                raise DenomMismatchError(
                    f"{resolved_position.value} position on {pair_address} must be funded "
                    f"with {pair.input_denom(resolved_position)}"
                )

            vault_id = uow.vaults.next_vault_id()
            waiting = target_start_time is not None or target_price is not None
            status = VaultStatus.SCHEDULED if waiting else VaultStatus.ACTIVE
            vault = Vault(
                id=vault_id,
                owner=owner,
                label=label,
                pair=pair,
                position_type=resolved_position,
                balance=deposit,
                swap_amount=swap_amount,
                time_interval=time_interval,
                interval_seconds=interval_seconds,
                slippage_tolerance=slippage_tolerance,
                price_threshold=price_threshold,
                target_price=target_price,
                repeat_price_trigger=repeat_price_trigger,
                target_start_time=target_start_time,
                status=status,
                created_at=block.time,
                started_at=None if waiting else block.time,
                swapped_amount=Coin(deposit.denom, 0),
                received_amount=Coin(pair.output_denom(resolved_position), 0),
                dca_plus_config=(
                    dca_plus.new_config(
                        escrow_level=self._settings.dca_plus_escrow_level,
                        total_deposit=deposit.amount,
                        swap_amount=swap_amount,
                    )
                    if use_dca_plus
                    else None
                ),
                destinations=resolved_destinations,
            )
            uow.vaults.insert_vault(vault)
            uow.events.append(
                EventDraft.at(
                    vault_id,
                    block,
                    EventType.VAULT_CREATED,
                    owner=owner,
                    pair_address=pair.address,
                    position_type=resolved_position,
                    swap_amount=str(swap_amount),
                    time_interval=time_interval,
                    dca_plus=use_dca_plus,
                    destinations=[
                        {"address": d.address, "allocation": str(d.allocation)}
                        for d in resolved_destinations
                    ],
                )
            )
            uow.events.append(
                EventDraft.at(
                    vault_id, block, EventType.FUNDS_DEPOSITED, amount=coin_payload(deposit)
                )
            )

            messages: list[OutboundMessage] = []
            if target_price is not None:
                _, order = submit_limit_order(uow, vault, target_price)
                messages.append(order)
            else:
                uow.triggers.save_trigger(
                    Trigger.time(vault_id, target_start_time or block.time)
                )

        logger.info(
            "vault_created",
            extra={
                "extra": {
                    "vault_id": vault_id,
                    "owner": owner,
                    "pair": pair_address,
                    "status": status.value,
                    "dca_plus": use_dca_plus,
                }
            },
        )
        get_instrumentation().counter("vaults_created_total", 1)
        return Response(
            action="create_vault",
            vault_id=vault_id,
            messages=messages,
            attributes={"status": status.value},
        )

    def deposit(
        self, vault_id: int, owner: str, funds: Sequence[Coin], *, block: Block
    ) -> Response:
        deposit = _single_coin(funds)
        with vault_context(vault_id), self._uow_factory() as uow:
            ensure_not_paused(uow, self._settings)
            vault = uow.vaults.get_vault(vault_id)
            if vault is None:
                raise NotFoundError(f"vault {vault_id} not found")
            if owner != vault.owner:
                raise UnauthorizedError()
            if vault.status == VaultStatus.CANCELLED:
                raise AlreadyCancelledError()
            if deposit.denom != vault.balance.denom:
                raise DenomMismatchError(
                    f"vault {vault_id} is funded with {vault.balance.denom}, got {deposit.denom}"
                )
            if (
                vault.status == VaultStatus.COMPLETED
                and vault.is_dca_plus
                and uow.escrow.get_task(vault_id) is not None
            ):
                raise AlreadyTerminalError(
                    f"vault {vault_id} is completed and its escrow is pending"
                )

            config = vault.dca_plus_config
            if config is not None:
                config = replace(config, total_deposit=config.total_deposit + deposit.amount)
            updated = replace(
                vault,
                balance=vault.balance.with_amount(vault.balance.amount + deposit.amount),
                dca_plus_config=config,
            )

            if vault.status == VaultStatus.COMPLETED:
                updated = replace(updated, status=VaultStatus.ACTIVE)
                uow.triggers.save_trigger(Trigger.time(vault_id, block.time))
                uow.events.append(EventDraft.at(vault_id, block, EventType.VAULT_ACTIVATED))
            elif vault.status == VaultStatus.SCHEDULED and self._start_reached(vault, block):
                updated = replace(updated, status=VaultStatus.ACTIVE, started_at=block.time)
                uow.events.append(EventDraft.at(vault_id, block, EventType.VAULT_ACTIVATED))

            uow.vaults.update_vault(updated)
            uow.events.append(
                EventDraft.at(
                    vault_id, block, EventType.FUNDS_DEPOSITED, amount=coin_payload(deposit)
                )
            )

        logger.info(
            "funds_deposited",
            extra={
                "extra": {
                    "vault_id": vault_id,
                    "amount": str(deposit),
                    "status": updated.status.value,
                }
            },
        )
        return Response(
            action="deposit",
            vault_id=vault_id,
            attributes={"status": updated.status.value},
        )

    @staticmethod
    def _start_reached(vault: Vault, block: Block) -> bool:
        if vault.target_price is not None:
            return False
        return vault.target_start_time is None or vault.target_start_time <= block.time

    def cancel(self, vault_id: int, caller: str, *, block: Block) -> Response:
        with vault_context(vault_id), self._uow_factory() as uow:
            vault = uow.vaults.get_vault(vault_id)
            if vault is None:
                raise NotFoundError(f"vault {vault_id} not found")
            if caller not in {vault.owner, self._settings.admin_address}:
                raise UnauthorizedError()
            if vault.status == VaultStatus.CANCELLED:
                raise AlreadyCancelledError()
            if vault.status == VaultStatus.COMPLETED:
                raise AlreadyTerminalError(f"vault {vault_id} is already completed")

            trigger = uow.triggers.get_trigger(vault_id)
            if trigger is not None and trigger.is_in_flight:
                raise SagaInFlightError(
                    f"vault {vault_id} is awaiting {trigger.saga_state.value}"
                )

            if trigger is not None and trigger.saga_state == SagaState.ORDER_OPEN:
                if trigger.order_idx is None:
                    raise NotFoundError(f"vault {vault_id} has no open order index")
                request_id = uow.triggers.next_request_id(vault_id, "retract")
                uow.triggers.save_trigger(
                    replace(
                        trigger,
                        saga_state=SagaState.AWAITING_ORDER_RETRACTION,
                        pending_request_id=request_id,
                    )
                )
                logger.info(
                    "vault_cancel_retracting_order",
                    extra={"extra": {"vault_id": vault_id, "order_idx": trigger.order_idx}},
                )
                return Response(
                    action="cancel_vault",
                    vault_id=vault_id,
                    messages=[
                        RetractOrder(
                            request_id=request_id,
                            pair_address=vault.pair.address,
                            order_idx=trigger.order_idx,
                        )
                    ],
                    attributes={"status": "retraction_submitted"},
                )

            _, messages = finalize_cancellation(uow, vault, block=block)

        return Response(
            action="cancel_vault",
            vault_id=vault_id,
            messages=messages,
            attributes={"status": VaultStatus.CANCELLED.value},
        )
