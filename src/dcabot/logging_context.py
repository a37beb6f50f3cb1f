from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType

CORRELATION_FIELDS = ("run_id", "cycle_id", "vault_id", "request_id", "order_idx")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_CORRELATION: ContextVar[Mapping[str, str]] = ContextVar("dcabot_correlation", default=_EMPTY)


def get_logging_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def with_logging_context(**fields: object) -> Iterator[None]:
    """Layer correlation ids over the current ones for the duration of the block.

    Unknown keys and ``None`` values are ignored; values are stored as strings.
    """
    current = _CORRELATION.get()
    updates = {
        key: str(value)
        for key, value in fields.items()
        if key in CORRELATION_FIELDS and value is not None
    }
    if not updates:
        yield
        return
    token = _CORRELATION.set(MappingProxyType({**current, **updates}))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


@contextmanager
def with_cycle_context(cycle_id: str, run_id: str | None = None) -> Iterator[None]:
    with with_logging_context(cycle_id=cycle_id, run_id=run_id):
        yield


def vault_context(vault_id: int, *, request_id: str | None = None, order_idx: str | None = None):
    return with_logging_context(vault_id=vault_id, request_id=request_id, order_idx=order_idx)
