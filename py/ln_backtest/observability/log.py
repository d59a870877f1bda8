from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ln_backtest.observability.context import get_trace_id
from ln_backtest.storage.paths import RuntimePaths

EventCallback = Callable[[dict[str, Any]], None]

_WRITE_LOCK = threading.Lock()


def structured_log_path(paths: RuntimePaths) -> Path:
    return paths.logs_dir / "structured.log"


def write_structured_log(paths: RuntimePaths, event_type: str, payload: dict[str, Any]) -> None:
    paths.ensure()
    row = {
        "event_type": event_type,
        "trace_id": get_trace_id(),
        **payload,
    }
    line = json.dumps(row, sort_keys=True, default=str) + "\n"
    with _WRITE_LOCK:
        with structured_log_path(paths).open("a", encoding="utf-8") as handle:
            handle.write(line)


def structured_log_callback(paths: RuntimePaths) -> EventCallback:
    def _callback(event: dict[str, Any]) -> None:
        payload = dict(event)
        event_type = str(payload.pop("event", "event"))
        write_structured_log(paths, event_type, payload)

    return _callback


def read_structured_log(paths: RuntimePaths) -> list[dict[str, Any]]:
    log_path = structured_log_path(paths)
    if not log_path.exists():
        return []
    rows: list[dict[str, Any]] = []
    with log_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return rows
