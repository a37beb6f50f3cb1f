from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum

from dcabot.domain.models import Coin, Destination, Execution, SkipReason, split_by_allocation


# Outbound messages, dispatched after the invocation's ledger transaction commits.


@dataclass(frozen=True)
class Transfer:
    to: str
    coin: Coin


def split_transfers(coin: Coin, shares: Sequence[Destination]) -> list[Transfer]:
    return [
        Transfer(address, coin.with_amount(amount))
        for address, amount in split_by_allocation(coin.amount, shares)
        if amount > 0
    ]


@dataclass(frozen=True)
class SubmitSwap:
    request_id: str
    pair_address: str
    offer: Coin
    belief_price: Decimal | None
    max_spread: Decimal


@dataclass(frozen=True)
class SubmitLimitOrder:
    request_id: str
    pair_address: str
    offer: Coin
    price: Decimal


@dataclass(frozen=True)
class WithdrawOrder:
    request_id: str
    pair_address: str
    order_idx: str


@dataclass(frozen=True)
class RetractOrder:
    request_id: str
    pair_address: str
    order_idx: str


OutboundMessage = Transfer | SubmitSwap | SubmitLimitOrder | WithdrawOrder | RetractOrder


# Venue replies, each delivered as its own later invocation.


class SwapErrorKind(StrEnum):
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    FAILED = "failed"


@dataclass(frozen=True)
class SwapReply:
    request_id: str
    sent: Coin | None = None
    received: Coin | None = None
    error: SwapErrorKind | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class LimitOrderSubmittedReply:
    request_id: str
    order_idx: str


@dataclass(frozen=True)
class OrderWithdrawnReply:
    request_id: str
    received: Coin


@dataclass(frozen=True)
class OrderRetractedReply:
    """Unfilled offer returned, plus proceeds of fills not yet withdrawn."""

    request_id: str
    refunded: Coin
    sent: Coin
    received: Coin


VenueReply = SwapReply | LimitOrderSubmittedReply | OrderWithdrawnReply | OrderRetractedReply


class ExecutionStatus(StrEnum):
    SWAP_SUBMITTED = "swap_submitted"
    ORDER_SUBMITTED = "order_submitted"
    ORDER_OPEN = "order_open"
    WITHDRAWAL_SUBMITTED = "withdrawal_submitted"
    RETRACTION_SUBMITTED = "retraction_submitted"
    SETTLED = "settled"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Response:
    action: str
    vault_id: int | None = None
    messages: list[OutboundMessage] = field(default_factory=list)
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionResult(Response):
    status: ExecutionStatus = ExecutionStatus.SETTLED
    execution: Execution | None = None
    skip_reason: SkipReason | None = None
