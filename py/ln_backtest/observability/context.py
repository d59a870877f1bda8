from __future__ import annotations

import contextvars
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

T = TypeVar("T")

_TRACE_ID: contextvars.ContextVar[str] = contextvars.ContextVar("ln_backtest_trace_id", default="no-trace")


def get_trace_id() -> str:
    return _TRACE_ID.get()


def set_trace_id(trace_id: str) -> contextvars.Token[str]:
    return _TRACE_ID.set(trace_id)


def reset_trace_id(token: contextvars.Token[str]) -> None:
    _TRACE_ID.reset(token)


@contextmanager
def trace_scope(trace_id: str | None = None) -> Iterator[str]:
    value = trace_id or uuid.uuid4().hex
    token = set_trace_id(value)
    try:
        yield value
    finally:
        reset_trace_id(token)


def bind_context(fn: Callable[..., T]) -> Callable[..., T]:
    """Wrap ``fn`` so it runs inside a copy of the caller's context (worker threads start empty)."""
    ctx = contextvars.copy_context()

    def _runner(*args: Any, **kwargs: Any) -> T:
        return ctx.copy().run(fn, *args, **kwargs)

    return _runner
