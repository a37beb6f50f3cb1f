from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from dcabot.domain.models import Coin

logger = logging.getLogger(__name__)


class SettlementLedger(ABC):
    @abstractmethod
    def transfer(self, to: str, coin: Coin) -> None:
        """Fire-and-forget value transfer."""
        raise NotImplementedError


class InMemorySettlementLedger(SettlementLedger):
    """Keeps issued transfers and per-address totals for dry runs and tests."""

    def __init__(self) -> None:
        self.transfers: list[tuple[str, Coin]] = []

    def transfer(self, to: str, coin: Coin) -> None:
        if coin.amount <= 0:
            return
        self.transfers.append((to, coin))
        logger.info(
            "settlement_transfer",
            extra={"extra": {"to": to, "denom": coin.denom, "amount": str(coin.amount)}},
        )

    def total_for(self, to: str, denom: str) -> int:
        return sum(
            coin.amount
            for address, coin in self.transfers
            if address == to and coin.denom == denom
        )
