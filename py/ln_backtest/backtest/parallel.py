from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Generic, TypeVar

from ln_backtest.observability.context import bind_context

ItemT = TypeVar("ItemT")
T = TypeVar("T")


@dataclass(frozen=True)
class UnitOutcome(Generic[T]):
    index: int
    value: T | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class BatchOutcome(Generic[T]):
    outcomes: list[UnitOutcome[T]]
    budget_exhausted: bool

    def first_error(self) -> Exception | None:
        for outcome in self.outcomes:
            if outcome.error is not None:
                return outcome.error
        return None


def _resolve_workers(item_count: int, max_workers: int) -> int:
    return max(1, min(max_workers, item_count))


def run_units(
    items: Sequence[ItemT],
    handler: Callable[[int, ItemT], T],
    *,
    max_workers: int,
    budget_deadline: float | None = None,
) -> BatchOutcome[T]:
    """Run ``handler`` over independent ``items`` on a bounded thread pool.

    Outcomes come back ordered by item index whatever the completion order. Once
    ``budget_deadline`` (a ``time.monotonic()`` value) passes, units that have not
    started are cancelled and the batch is flagged as exhausted.
    """
    collected: list[UnitOutcome[T]] = []
    lock = threading.Lock()

    def _unit(index: int, item: ItemT) -> None:
        try:
            outcome: UnitOutcome[T] = UnitOutcome(index=index, value=handler(index, item))
        except Exception as exc:  # noqa: BLE001
            outcome = UnitOutcome(index=index, error=exc)
        with lock:
            collected.append(outcome)

    exhausted = False
    workers = _resolve_workers(len(items), max_workers)
    if workers == 1:
        for index, item in enumerate(items):
            if budget_deadline is not None and time.monotonic() > budget_deadline:
                exhausted = True
                break
            _unit(index, item)
    elif items:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ln-backtest") as pool:
            futures = [pool.submit(bind_context(_unit), index, item) for index, item in enumerate(items)]
            timeout = None if budget_deadline is None else max(0.0, budget_deadline - time.monotonic())
            _, pending = wait(futures, timeout=timeout)
            if pending:
                exhausted = True
                for future in pending:
                    future.cancel()

    with lock:
        ordered = sorted(collected, key=lambda outcome: outcome.index)
    return BatchOutcome(outcomes=ordered, budget_exhausted=exhausted)
