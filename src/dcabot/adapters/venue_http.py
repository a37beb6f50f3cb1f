from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from uuid import uuid4

import httpx

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
from dcabot.domain.models import Coin, PositionType
from dcabot.observability import get_instrumentation

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 240


def _response_snippet(response: httpx.Response) -> str:
    return response.text[:_ERROR_SNIPPET_LIMIT]


def _parse_decimal(value: object, *, field: str) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise VenueError(f"venue returned non-numeric {field}: {value!r}") from exc
    if not parsed.is_finite():
        raise VenueError(f"venue returned non-finite {field}: {value!r}")
    return parsed


def _parse_amount(value: object, *, field: str) -> int:
    parsed = _parse_decimal(value, field=field)
    if parsed != parsed.to_integral_value() or parsed < 0:
        raise VenueError(f"venue returned invalid {field}: {value!r}")
    return int(parsed)


def _parse_coin(payload: object, *, field: str) -> Coin:
    if not isinstance(payload, dict):
        raise VenueError(f"venue returned malformed {field}")
    denom = payload.get("denom")
    if not isinstance(denom, str) or not denom:
        raise VenueError(f"venue returned {field} without denom")
    return Coin(denom, _parse_amount(payload.get("amount"), field=f"{field}.amount"))


def _coin_json(coin: Coin) -> dict[str, str]:
    return {"denom": coin.denom, "amount": str(coin.amount)}


def parse_reply(item: object) -> VenueReply:
    if not isinstance(item, dict):
        raise VenueError("venue reply must be a JSON object")
    kind = item.get("type")
    request_id = item.get("request_id")
    if not isinstance(request_id, str) or not request_id:
        raise VenueError("venue reply is missing request_id")
    if kind == "swap":
        error = item.get("error")
        if error is not None:
            try:
                error_kind = SwapErrorKind(str(error))
            except ValueError:
                error_kind = SwapErrorKind.FAILED
            return SwapReply(
                request_id=request_id,
                error=error_kind,
                error_message=str(item.get("error_message") or error),
            )
        return SwapReply(
            request_id=request_id,
            sent=_parse_coin(item.get("sent"), field="sent"),
            received=_parse_coin(item.get("received"), field="received"),
        )
    if kind == "limit_order_submitted":
        order_idx = item.get("order_idx")
        if order_idx is None:
            raise VenueError("limit order reply is missing order_idx")
        return LimitOrderSubmittedReply(request_id=request_id, order_idx=str(order_idx))
    if kind == "order_withdrawn":
        return OrderWithdrawnReply(
            request_id=request_id,
            received=_parse_coin(item.get("received"), field="received"),
        )
    if kind == "order_retracted":
        return OrderRetractedReply(
            request_id=request_id,
            refunded=_parse_coin(item.get("refunded"), field="refunded"),
            sent=_parse_coin(item.get("sent"), field="sent"),
            received=_parse_coin(item.get("received"), field="received"),
        )
    raise VenueError(f"unknown venue reply type: {kind!r}")


class HttpSwapVenue(SwapVenue):
    """JSON-over-HTTP venue client.

    Submissions are acknowledged with ``202``; results are polled from
    ``GET /replies`` in issue order. The venue must treat a request id it has
    already seen as a request to deliver that request's original reply
    again, which is how in-flight sagas resume after a lost reply.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float | httpx.Timeout = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=5.0)
        )
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self.client = httpx.Client(
            base_url=base_url,
            timeout=resolved_timeout,
            transport=transport,
            headers=headers,
        )

    def __enter__(self) -> HttpSwapVenue:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, object] | None = None,
    ) -> object:
        trace_id = uuid4().hex
        try:
            instrumentation = get_instrumentation()
            with instrumentation.timed(
                "venue_request_duration_ms", attrs={"method": method}
            ), instrumentation.trace("venue_call", attrs={"method": method, "path": path}):
                response = self.client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers={"X-Request-ID": trace_id},
                )
        except httpx.HTTPError as exc:
            get_instrumentation().counter(
                "venue_transport_errors_total", 1, attrs={"path": path}
            )
            raise VenueError(
                f"venue transport error: {type(exc).__name__}", request_path=path
            ) from exc
        get_instrumentation().counter(
            "venue_requests_total",
            1,
            attrs={"method": method, "path": path, "status": str(response.status_code)},
        )
        if response.status_code >= 400:
            logger.warning(
                "venue_request_failed",
                extra={
                    "extra": {
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "response_snippet": _response_snippet(response),
                        "trace_id": trace_id,
                    }
                },
            )
            raise VenueError(
                f"venue error status={response.status_code} path={path}",
                status_code=response.status_code,
                request_path=path,
            )
        if response.status_code == 202 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise VenueError(
                "venue returned invalid JSON",
                status_code=response.status_code,
                request_path=path,
            ) from exc

    def get_price(self, pair_address: str, position_type: PositionType) -> Decimal:
        path = f"/pairs/{pair_address}/price"
        payload = self._request("GET", path, params={"position_type": position_type.value})
        if not isinstance(payload, dict) or "price" not in payload:
            raise VenueError("price response is missing price", request_path=path)
        price = _parse_decimal(payload["price"], field="price")
        if price <= 0:
            raise VenueError(f"venue returned non-positive price: {price}", request_path=path)
        return price

    def submit_swap(self, request: SubmitSwap) -> None:
        self._request(
            "POST",
            "/swaps",
            json={
                "request_id": request.request_id,
                "pair_address": request.pair_address,
                "offer": _coin_json(request.offer),
                "belief_price": (
                    str(request.belief_price) if request.belief_price is not None else None
                ),
                "max_spread": str(request.max_spread),
            },
        )

    def submit_limit_order(self, request: SubmitLimitOrder) -> None:
        self._request(
            "POST",
            "/limit-orders",
            json={
                "request_id": request.request_id,
                "pair_address": request.pair_address,
                "offer": _coin_json(request.offer),
                "price": str(request.price),
            },
        )

    def query_order(self, pair_address: str, order_idx: str) -> OrderFill:
        path = f"/limit-orders/{order_idx}"
        payload = self._request("GET", path, params={"pair_address": pair_address})
        if not isinstance(payload, dict):
            raise VenueError("order response must be a JSON object", request_path=path)
        return OrderFill(
            filled_amount=_parse_amount(payload.get("filled_amount"), field="filled_amount"),
            remaining_amount=_parse_amount(
                payload.get("remaining_amount"), field="remaining_amount"
            ),
        )

    def withdraw_order(self, request: WithdrawOrder) -> None:
        self._request(
            "POST",
            f"/limit-orders/{request.order_idx}/withdraw",
            json={"request_id": request.request_id, "pair_address": request.pair_address},
        )

    def retract_order(self, request: RetractOrder) -> None:
        self._request(
            "POST",
            f"/limit-orders/{request.order_idx}/retract",
            json={"request_id": request.request_id, "pair_address": request.pair_address},
        )

    def take_replies(self) -> list[VenueReply]:
        payload = self._request("GET", "/replies")
        if payload is None:
            return []
        if not isinstance(payload, dict) or not isinstance(payload.get("replies"), list):
            raise VenueError("replies response must contain a list", request_path="/replies")
        replies: list[VenueReply] = []
        for position, item in enumerate(payload["replies"]):
            try:
                replies.append(parse_reply(item))
            except VenueError as exc:
                # Skip the bad item; the rest of the batch is still delivered.
                get_instrumentation().counter("venue_replies_malformed_total", 1)
                logger.warning(
                    "venue_reply_malformed",
                    extra={
                        "extra": {
                            "position": position,
                            "request_id": (
                                item.get("request_id") if isinstance(item, dict) else None
                            ),
                            "error": str(exc),
                        }
                    },
                )
        return replies

    def close(self) -> None:
        self.client.close()
