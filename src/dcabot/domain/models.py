from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from enum import StrEnum

from dcabot.domain.time_intervals import TimeInterval, ensure_utc


class VaultStatus(StrEnum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PositionType(StrEnum):
    ENTER = "enter"
    EXIT = "exit"


class TriggerKind(StrEnum):
    TIME = "time"
    PRICE = "price"


class SagaState(StrEnum):
    IDLE = "idle"
    AWAITING_SWAP_CONFIRMATION = "awaiting_swap_confirmation"
    AWAITING_ORDER_SUBMISSION = "awaiting_order_submission"
    ORDER_OPEN = "order_open"
    AWAITING_WITHDRAWAL_CONFIRMATION = "awaiting_withdrawal_confirmation"
    AWAITING_ORDER_RETRACTION = "awaiting_order_retraction"


IN_FLIGHT_SAGA_STATES = frozenset(
    {
        SagaState.AWAITING_SWAP_CONFIRMATION,
        SagaState.AWAITING_ORDER_SUBMISSION,
        SagaState.AWAITING_WITHDRAWAL_CONFIRMATION,
        SagaState.AWAITING_ORDER_RETRACTION,
    }
)


class ExecutionOutcome(StrEnum):
    SUCCESS = "success"
    SKIPPED_SLIPPAGE = "skipped_slippage"
    FAILED = "failed"


class SkipReason(StrEnum):
    PRICE_CONDITION_NOT_MET = "price_condition_not_met"
    SLIPPAGE_TOLERANCE_EXCEEDED = "slippage_tolerance_exceeded"
    VENUE_FAILURE = "venue_failure"


@dataclass(frozen=True)
class Coin:
    denom: str
    amount: int

    def __post_init__(self) -> None:
        if not self.denom:
            raise ValueError("coin denom must be non-empty")
        if self.amount < 0:
            raise ValueError("coin amount must be >= 0")

    def with_amount(self, amount: int) -> Coin:
        return Coin(denom=self.denom, amount=amount)

    def __str__(self) -> str:
        return f"{self.amount}{self.denom}"


@dataclass(frozen=True)
class Block:
    """Height and time of the invocation that is being processed."""

    height: int
    time: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "time", ensure_utc(self.time))


@dataclass(frozen=True)
class Pair:
    address: str
    base_denom: str
    quote_denom: str

    def input_denom(self, position_type: PositionType) -> str:
        return self.quote_denom if position_type == PositionType.ENTER else self.base_denom

    def output_denom(self, position_type: PositionType) -> str:
        return self.base_denom if position_type == PositionType.ENTER else self.quote_denom

    def position_for_denom(self, denom: str) -> PositionType | None:
        if denom == self.quote_denom:
            return PositionType.ENTER
        if denom == self.base_denom:
            return PositionType.EXIT
        return None


@dataclass(frozen=True)
class Destination:
    """Recipient of a share of a vault's proceeds; shares of a vault sum to one."""

    address: str
    allocation: Decimal


def split_by_allocation(amount: int, shares: Sequence[Destination]) -> list[tuple[str, int]]:
    """Floor each share of ``amount``; the last recipient takes the rounding remainder."""
    if not shares:
        raise ValueError("at least one recipient is required")
    parts: list[tuple[str, int]] = []
    for share in shares[:-1]:
        portion = Decimal(amount) * share.allocation
        parts.append((share.address, int(portion.to_integral_value(rounding=ROUND_DOWN))))
    parts.append((shares[-1].address, amount - sum(taken for _, taken in parts)))
    return parts


@dataclass(frozen=True)
class DcaPlusConfig:
    escrow_level: Decimal
    model_id: int
    total_deposit: int
    standard_dca_swapped_amount: int = 0
    standard_dca_received_amount: int = 0
    escrowed_balance: int = 0

    @property
    def standard_dca_remaining(self) -> int:
        return max(0, self.total_deposit - self.standard_dca_swapped_amount)


@dataclass(frozen=True)
class Vault:
    id: int
    owner: str
    pair: Pair
    position_type: PositionType
    balance: Coin
    swap_amount: int
    time_interval: TimeInterval
    status: VaultStatus
    created_at: datetime
    swapped_amount: Coin
    received_amount: Coin
    label: str | None = None
    interval_seconds: int | None = None
    slippage_tolerance: Decimal | None = None
    price_threshold: Decimal | None = None
    target_price: Decimal | None = None
    repeat_price_trigger: bool = False
    target_start_time: datetime | None = None
    started_at: datetime | None = None
    dca_plus_config: DcaPlusConfig | None = None
    destinations: tuple[Destination, ...] = ()

    @property
    def payout_destinations(self) -> tuple[Destination, ...]:
        return self.destinations or (Destination(self.owner, Decimal(1)),)

    @property
    def input_denom(self) -> str:
        return self.balance.denom

    @property
    def output_denom(self) -> str:
        return self.received_amount.denom

    @property
    def is_terminal(self) -> bool:
        return self.status in {VaultStatus.CANCELLED, VaultStatus.COMPLETED}

    @property
    def is_dca_plus(self) -> bool:
        return self.dca_plus_config is not None

    @property
    def schedule_anchor_day(self) -> int:
        """Day of month monthly triggers return to after a shorter month."""
        return (self.target_start_time or self.created_at).day

    def average_price(self) -> Decimal | None:
        """Average received units per unit sent across successful tranches."""
        if self.swapped_amount.amount <= 0:
            return None
        return Decimal(self.received_amount.amount) / Decimal(self.swapped_amount.amount)


@dataclass(frozen=True)
class Trigger:
    """Scheduling condition of a vault, tagged by ``kind``.

    Time triggers use ``target_time``; price triggers use ``target_price`` and,
    once the venue confirms the limit order, ``order_idx``. The ``saga_state``
    and ``pending_*`` fields carry the execution saga across venue calls.
    """

    vault_id: int
    kind: TriggerKind
    target_time: datetime | None = None
    target_price: Decimal | None = None
    order_idx: str | None = None
    saga_state: SagaState = SagaState.IDLE
    pending_request_id: str | None = None
    pending_amount: int = 0
    pending_order_filled: bool = False

    @classmethod
    def time(cls, vault_id: int, target_time: datetime) -> Trigger:
        return cls(vault_id=vault_id, kind=TriggerKind.TIME, target_time=ensure_utc(target_time))

    @classmethod
    def price(cls, vault_id: int, target_price: Decimal) -> Trigger:
        return cls(vault_id=vault_id, kind=TriggerKind.PRICE, target_price=target_price)

    @property
    def is_in_flight(self) -> bool:
        return self.saga_state in IN_FLIGHT_SAGA_STATES


@dataclass(frozen=True)
class Execution:
    vault_id: int
    sequence: int
    block_height: int
    executed_at: datetime
    outcome: ExecutionOutcome
    sent: Coin | None = None
    received: Coin | None = None
    fee: Coin | None = None
    reason: str | None = None


@dataclass(frozen=True)
class DisburseEscrowTask:
    vault_id: int
    due_time: datetime


@dataclass(frozen=True)
class Page:
    """A slice of ordered results plus a cursor to resume after it."""

    items: list = field(default_factory=list)
    next_cursor: str | None = None
