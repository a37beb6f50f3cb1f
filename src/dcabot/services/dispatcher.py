from __future__ import annotations

import logging

from dcabot.adapters.settlement import SettlementLedger
from dcabot.adapters.venue import SwapVenue
from dcabot.domain.messages import (
    OutboundMessage,
    Response,
    RetractOrder,
    SubmitLimitOrder,
    SubmitSwap,
    Transfer,
    WithdrawOrder,
)
from dcabot.observability import get_instrumentation

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Delivers a committed invocation's outbound messages, in order."""

    def __init__(self, venue: SwapVenue, ledger: SettlementLedger) -> None:
        self._venue = venue
        self._ledger = ledger

    def dispatch(self, response: Response) -> int:
        return self.dispatch_messages(response.messages)

    def dispatch_messages(self, messages: list[OutboundMessage]) -> int:
        for message in messages:
            self._send(message)
            get_instrumentation().counter(
                "outbound_messages_total", 1, attrs={"type": type(message).__name__}
            )
        return len(messages)

    def _send(self, message: OutboundMessage) -> None:
        if isinstance(message, Transfer):
            self._ledger.transfer(message.to, message.coin)
        elif isinstance(message, SubmitSwap):
            self._venue.submit_swap(message)
        elif isinstance(message, SubmitLimitOrder):
            self._venue.submit_limit_order(message)
        elif isinstance(message, WithdrawOrder):
            self._venue.withdraw_order(message)
        elif isinstance(message, RetractOrder):
            self._venue.retract_order(message)
        else:
            raise TypeError(f"Unsupported outbound message: {type(message).__name__}")
        logger.debug("outbound_message_sent", extra={"extra": {"type": type(message).__name__}})
