from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from dcabot.domain.messages import (
    RetractOrder,
    SubmitLimitOrder,
    SubmitSwap,
    VenueReply,
    WithdrawOrder,
)
from dcabot.domain.models import PositionType


@dataclass(frozen=True)
class OrderFill:
    """Fill state of a limit order, in units of the offered denom.

    ``filled_amount`` counts only fills that have not been withdrawn yet.
    """

    filled_amount: int
    remaining_amount: int


class SwapVenue(ABC):
    """Asynchronous swap venue.

    Submissions return immediately; their results are collected later through
    :meth:`take_replies`, in the order the requests were issued.
    """

    @abstractmethod
    def get_price(self, pair_address: str, position_type: PositionType) -> Decimal:
        """Return the current price in quote units per base unit."""
        raise NotImplementedError

    @abstractmethod
    def submit_swap(self, request: SubmitSwap) -> None:
        raise NotImplementedError

    @abstractmethod
    def submit_limit_order(self, request: SubmitLimitOrder) -> None:
        raise NotImplementedError

    @abstractmethod
    def query_order(self, pair_address: str, order_idx: str) -> OrderFill:
        raise NotImplementedError

    @abstractmethod
    def withdraw_order(self, request: WithdrawOrder) -> None:
        raise NotImplementedError

    @abstractmethod
    def retract_order(self, request: RetractOrder) -> None:
        raise NotImplementedError

    @abstractmethod
    def take_replies(self) -> list[VenueReply]:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources associated with the venue client."""
        return None
