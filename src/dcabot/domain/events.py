from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum, StrEnum

from dcabot.domain.models import Block, Coin
from dcabot.domain.time_intervals import ensure_utc


class EventType(StrEnum):
    VAULT_CREATED = "vault_created"
    FUNDS_DEPOSITED = "funds_deposited"
    VAULT_ACTIVATED = "vault_activated"
    EXECUTION_TRIGGERED = "execution_triggered"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_SKIPPED = "execution_skipped"
    LIMIT_ORDER_SUBMITTED = "limit_order_submitted"
    VAULT_COMPLETED = "vault_completed"
    VAULT_CANCELLED = "vault_cancelled"
    ESCROW_DISBURSED = "escrow_disbursed"


@dataclass(frozen=True)
class EventDraft:
    """An event that has not been assigned its per-resource sequence yet."""

    resource_id: int
    block_height: int
    timestamp: datetime
    event_type: EventType
    data: dict[str, object] = field(default_factory=dict)

    @classmethod
    def at(
        cls, resource_id: int, block: Block, event_type: EventType, **data: object
    ) -> EventDraft:
        return cls(
            resource_id=resource_id,
            block_height=block.height,
            timestamp=block.time,
            event_type=event_type,
            data=dict(data),
        )

    def build(self, sequence: int) -> Event:
        return Event(
            resource_id=self.resource_id,
            sequence=sequence,
            block_height=self.block_height,
            timestamp=self.timestamp,
            event_type=self.event_type,
            data=self.data,
        )


@dataclass(frozen=True)
class Event:
    resource_id: int
    sequence: int
    block_height: int
    timestamp: datetime
    event_type: EventType
    data: dict[str, object]

    def data_json(self) -> str:
        return json.dumps(self.data, sort_keys=True, separators=(",", ":"), default=json_default)


def coin_payload(coin: Coin) -> dict[str, object]:
    return {"denom": coin.denom, "amount": str(coin.amount)}


def json_default(value: object) -> object:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return ensure_utc(value).astimezone(UTC).isoformat()
    if isinstance(value, Coin):
        return coin_payload(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Unsupported payload type: {type(value).__name__}")
