from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from dcabot.adapters.venue import OrderFill, SwapVenue
from dcabot.domain.errors import VenueError
from dcabot.domain.messages import (
    LimitOrderSubmittedReply,
    OrderRetractedReply,
    OrderWithdrawnReply,
    RetractOrder,
    SubmitLimitOrder,
    SubmitSwap,
    SwapErrorKind,
    SwapReply,
    VenueReply,
    WithdrawOrder,
)
from dcabot.domain.models import Coin, Pair, PositionType

logger = logging.getLogger(__name__)


@dataclass
class _SimOrder:
    order_idx: str
    pair: Pair
    offer: Coin
    price: Decimal
    filled: int = 0
    withdrawn: int = 0

    @property
    def buys_base(self) -> bool:
        return self.offer.denom == self.pair.quote_denom


def _convert(pair: Pair, offer: Coin, price: Decimal) -> Coin:
    if price <= 0:
        raise VenueError(f"non-positive price for pair {pair.address}")
    if offer.denom == pair.quote_denom:
        amount = Decimal(offer.amount) / price
        denom = pair.base_denom
    elif offer.denom == pair.base_denom:
        amount = Decimal(offer.amount) * price
        denom = pair.quote_denom
    else:
        raise VenueError(f"denom {offer.denom} is not traded on pair {pair.address}")
    return Coin(denom, int(amount.to_integral_value(rounding=ROUND_DOWN)))


class SimulatedVenue(SwapVenue):
    """Deterministic in-process venue for dry runs and tests.

    Swaps settle at the listed price. Limit orders fill when the listed price
    crosses the order price, or explicitly through :meth:`fill_order`.
    Requests are de-duplicated by request id: a repeated request is not
    executed again, its original reply is queued again instead. That lets a
    saga whose reply was lost resume through re-submission.
    """

    def __init__(self, *, swap_error: SwapErrorKind | None = None) -> None:
        self.swap_error = swap_error
        self._pairs: dict[str, Pair] = {}
        self._prices: dict[str, Decimal] = {}
        self._orders: dict[str, _SimOrder] = {}
        self._replies: deque[VenueReply] = deque()
        self._sent_replies: dict[str, VenueReply] = {}
        self._order_counter = 0

    def list_pair(self, pair: Pair, price: Decimal) -> None:
        self._pairs[pair.address] = pair
        self._prices[pair.address] = Decimal(str(price))

    def set_price(self, pair_address: str, price: Decimal) -> None:
        if pair_address not in self._pairs:
            raise VenueError(f"unknown pair {pair_address}")
        self._prices[pair_address] = Decimal(str(price))

    def _pair(self, pair_address: str) -> Pair:
        pair = self._pairs.get(pair_address)
        if pair is None:
            raise VenueError(f"unknown pair {pair_address}")
        return pair

    def _replayed(self, request_id: str) -> bool:
        reply = self._sent_replies.get(request_id)
        if reply is None:
            return False
        logger.info("sim_venue_duplicate_request", extra={"extra": {"request_id": request_id}})
        if not any(queued is reply for queued in self._replies):
            self._replies.append(reply)
        return True

    def _reply(self, reply: VenueReply) -> None:
        self._sent_replies[reply.request_id] = reply
        self._replies.append(reply)

    def get_price(self, pair_address: str, position_type: PositionType) -> Decimal:
        del position_type
        self._pair(pair_address)
        return self._prices[pair_address]

    def submit_swap(self, request: SubmitSwap) -> None:
        if self._replayed(request.request_id):
            return
        pair = self._pair(request.pair_address)
        if self.swap_error is not None:
            self._reply(
                SwapReply(
                    request_id=request.request_id,
                    error=self.swap_error,
                    error_message=f"simulated {self.swap_error.value}",
                )
            )
            return
        received = _convert(pair, request.offer, self._prices[pair.address])
        self._reply(
            SwapReply(request_id=request.request_id, sent=request.offer, received=received)
        )

    def submit_limit_order(self, request: SubmitLimitOrder) -> None:
        if self._replayed(request.request_id):
            return
        pair = self._pair(request.pair_address)
        self._order_counter += 1
        order_idx = str(self._order_counter)
        self._orders[order_idx] = _SimOrder(
            order_idx=order_idx,
            pair=pair,
            offer=request.offer,
            price=request.price,
        )
        self._reply(
            LimitOrderSubmittedReply(request_id=request.request_id, order_idx=order_idx)
        )

    def fill_order(self, order_idx: str, amount: int | None = None) -> None:
        """Fill ``amount`` more of the order's offer, or all of it."""
        order = self._order(order_idx)
        remaining = order.offer.amount - order.filled
        fill = remaining if amount is None else min(amount, remaining)
        order.filled += max(0, fill)

    def _order(self, order_idx: str) -> _SimOrder:
        order = self._orders.get(order_idx)
        if order is None:
            raise VenueError(f"unknown order {order_idx}")
        return order

    def _maybe_fill(self, order: _SimOrder) -> None:
        market = self._prices[order.pair.address]
        crossed = market <= order.price if order.buys_base else market >= order.price
        if crossed:
            order.filled = order.offer.amount

    def query_order(self, pair_address: str, order_idx: str) -> OrderFill:
        del pair_address
        order = self._order(order_idx)
        self._maybe_fill(order)
        return OrderFill(
            filled_amount=order.filled - order.withdrawn,
            remaining_amount=order.offer.amount - order.filled,
        )

    def withdraw_order(self, request: WithdrawOrder) -> None:
        if self._replayed(request.request_id):
            return
        order = self._order(request.order_idx)
        unwithdrawn = order.offer.with_amount(order.filled - order.withdrawn)
        order.withdrawn = order.filled
        if order.filled >= order.offer.amount:
            del self._orders[order.order_idx]
        self._reply(
            OrderWithdrawnReply(
                request_id=request.request_id,
                received=_convert(order.pair, unwithdrawn, order.price),
            )
        )

    def retract_order(self, request: RetractOrder) -> None:
        if self._replayed(request.request_id):
            return
        order = self._order(request.order_idx)
        del self._orders[order.order_idx]
        unwithdrawn = order.offer.with_amount(order.filled - order.withdrawn)
        self._reply(
            OrderRetractedReply(
                request_id=request.request_id,
                refunded=order.offer.with_amount(order.offer.amount - order.filled),
                sent=unwithdrawn,
                received=_convert(order.pair, unwithdrawn, order.price),
            )
        )

    def open_orders(self) -> list[str]:
        return sorted(self._orders, key=int)

    def take_replies(self) -> list[VenueReply]:
        replies = list(self._replies)
        self._replies.clear()
        return replies
