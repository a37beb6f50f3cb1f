from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from dcabot.adapters.venue_http import HttpSwapVenue, parse_reply
from dcabot.domain.errors import VenueError
from dcabot.domain.messages import (
    LimitOrderSubmittedReply,
    OrderRetractedReply,
    OrderWithdrawnReply,
    SubmitSwap,
    SwapErrorKind,
    SwapReply,
    WithdrawOrder,
)
from dcabot.domain.models import Coin, PositionType
from dcabot.observability import Instrumentation, NoopInstrumentation, set_instrumentation


def _venue(handler) -> HttpSwapVenue:
    return HttpSwapVenue(
        "https://venue.test",
        api_key="secret-token",
        transport=httpx.MockTransport(handler),
    )


def test_get_price_parses_decimal_and_sends_auth_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"price": "1.2345"})

    with _venue(handler) as venue:
        price = venue.get_price("pair-1", PositionType.EXIT)

    assert price == Decimal("1.2345")
    assert seen[0].url.path == "/pairs/pair-1/price"
    assert seen[0].url.params["position_type"] == "exit"
    assert seen[0].headers["Authorization"] == "Bearer secret-token"
    assert seen[0].headers["X-Request-ID"]


@pytest.mark.parametrize("payload", [{}, {"price": "abc"}, {"price": "0"}, {"price": "NaN"}])
def test_get_price_rejects_malformed_payloads(payload: dict) -> None:
    venue = _venue(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(VenueError):
        venue.get_price("pair-1", PositionType.ENTER)
    venue.close()


def test_submit_swap_posts_request_body() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/swaps"
        bodies.append(json.loads(request.content))
        return httpx.Response(202)

    with _venue(handler) as venue:
        venue.submit_swap(
            SubmitSwap(
                request_id="4-swap-1",
                pair_address="pair-1",
                offer=Coin("uusd", 250),
                belief_price=Decimal("1.5"),
                max_spread=Decimal("0.02"),
            )
        )

    assert bodies == [
        {
            "request_id": "4-swap-1",
            "pair_address": "pair-1",
            "offer": {"denom": "uusd", "amount": "250"},
            "belief_price": "1.5",
            "max_spread": "0.02",
        }
    ]


def test_withdraw_order_targets_order_path() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(202)

    with _venue(handler) as venue:
        venue.withdraw_order(
            WithdrawOrder(request_id="4-withdraw-2", pair_address="pair-1", order_idx="17")
        )

    assert paths == ["/limit-orders/17/withdraw"]


def test_query_order_parses_fill() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["pair_address"] == "pair-1"
        return httpx.Response(200, json={"filled_amount": "40", "remaining_amount": 60})

    with _venue(handler) as venue:
        fill = venue.query_order("pair-1", "17")

    assert (fill.filled_amount, fill.remaining_amount) == (40, 60)


def test_error_status_raises_venue_error() -> None:
    venue = _venue(lambda request: httpx.Response(503, text="maintenance"))

    with pytest.raises(VenueError) as exc_info:
        venue.get_price("pair-1", PositionType.ENTER)

    assert exc_info.value.status_code == 503
    assert exc_info.value.request_path == "/pairs/pair-1/price"
    venue.close()


def test_transport_error_raises_venue_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    venue = _venue(handler)
    with pytest.raises(VenueError) as exc_info:
        venue.take_replies()

    assert exc_info.value.status_code is None
    venue.close()


def test_take_replies_parses_every_reply_type() -> None:
    replies = [
        {
            "type": "swap",
            "request_id": "1-swap-1",
            "sent": {"denom": "uusd", "amount": "100"},
            "received": {"denom": "uatom", "amount": "98"},
        },
        {"type": "swap", "request_id": "2-swap-1", "error": "slippage_exceeded"},
        {"type": "limit_order_submitted", "request_id": "3-order-1", "order_idx": 9},
        {
            "type": "order_withdrawn",
            "request_id": "3-withdraw-2",
            "received": {"denom": "uatom", "amount": "10"},
        },
        {
            "type": "order_retracted",
            "request_id": "3-retract-3",
            "refunded": {"denom": "uusd", "amount": "5"},
            "sent": {"denom": "uusd", "amount": "0"},
            "received": {"denom": "uatom", "amount": "0"},
        },
    ]
    venue = _venue(lambda request: httpx.Response(200, json={"replies": replies}))

    parsed = venue.take_replies()
    venue.close()

    assert parsed == [
        SwapReply(request_id="1-swap-1", sent=Coin("uusd", 100), received=Coin("uatom", 98)),
        SwapReply(
            request_id="2-swap-1",
            error=SwapErrorKind.SLIPPAGE_EXCEEDED,
            error_message="slippage_exceeded",
        ),
        LimitOrderSubmittedReply(request_id="3-order-1", order_idx="9"),
        OrderWithdrawnReply(request_id="3-withdraw-2", received=Coin("uatom", 10)),
        OrderRetractedReply(
            request_id="3-retract-3",
            refunded=Coin("uusd", 5),
            sent=Coin("uusd", 0),
            received=Coin("uatom", 0),
        ),
    ]


def test_unknown_swap_error_maps_to_failed() -> None:
    reply = parse_reply({"type": "swap", "request_id": "1-swap-1", "error": "pool_drained"})

    assert isinstance(reply, SwapReply)
    assert reply.error == SwapErrorKind.FAILED
    assert reply.error_message == "pool_drained"


@pytest.mark.parametrize(
    "item",
    [
        [],
        {"type": "swap"},
        {"type": "mystery", "request_id": "1"},
        {"type": "order_withdrawn", "request_id": "1", "received": {"amount": "1"}},
        {
            "type": "order_withdrawn",
            "request_id": "1",
            "received": {"denom": "uatom", "amount": "1.5"},
        },
    ],
)
def test_parse_reply_rejects_malformed_items(item: object) -> None:
    with pytest.raises(VenueError):
        parse_reply(item)


class _CountingInstrumentation(Instrumentation):
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}

    def counter(self, name: str, value: int = 1, *, attrs=None) -> None:
        self.counts[name] = self.counts.get(name, 0) + value


def test_take_replies_skips_malformed_items_and_keeps_the_rest(
    caplog: pytest.LogCaptureFixture,
) -> None:
    counting = _CountingInstrumentation()
    set_instrumentation(counting)
    replies = [
        {"type": "swap", "request_id": "1-swap-1", "error": "slippage_exceeded"},
        {"type": "order_withdrawn", "request_id": "2-withdraw-1", "received": {"amount": "1"}},
        {"type": "limit_order_submitted", "request_id": "3-order-1", "order_idx": 4},
    ]
    venue = _venue(lambda request: httpx.Response(200, json={"replies": replies}))

    try:
        with caplog.at_level("WARNING", logger="dcabot.adapters.venue_http"):
            parsed = venue.take_replies()
    finally:
        venue.close()
        set_instrumentation(NoopInstrumentation())

    assert [reply.request_id for reply in parsed] == ["1-swap-1", "3-order-1"]
    [record] = [r for r in caplog.records if r.getMessage() == "venue_reply_malformed"]
    assert record.extra["position"] == 1
    assert record.extra["request_id"] == "2-withdraw-1"
    assert counting.counts["venue_replies_malformed_total"] == 1
