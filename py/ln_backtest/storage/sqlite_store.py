from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator

from ln_backtest.backtest.models import BacktestResult
from ln_backtest.errors import ConfigError, DataUnavailable
from ln_backtest.storage.paths import RuntimePaths


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def connect(paths: RuntimePaths) -> Generator[sqlite3.Connection, None, None]:
    paths.ensure()
    conn = sqlite3.connect(paths.sqlite_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(paths: RuntimePaths) -> None:
    with connect(paths) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS backtest_results (
                id TEXT PRIMARY KEY,
                strategy_id TEXT NOT NULL,
                summary_json TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                saved_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_backtest_results_strategy
                ON backtest_results (strategy_id, created_at);
            """
        )
        conn.commit()


def save_backtest_result(paths: RuntimePaths, result: BacktestResult) -> str:
    payload = result.to_dict()
    with connect(paths) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO backtest_results (
                id, strategy_id, summary_json, payload_json, created_at, saved_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                result.id,
                result.strategy_id,
                json.dumps(payload["summary"], sort_keys=True),
                json.dumps(payload, sort_keys=True),
                payload["created_at"],
                _utc_now(),
            ),
        )
        conn.commit()
    return result.id


def get_backtest_result(paths: RuntimePaths, result_id: str) -> BacktestResult:
    with connect(paths) as conn:
        row = conn.execute(
            "SELECT payload_json FROM backtest_results WHERE id = ?",
            (result_id,),
        ).fetchone()
    if row is None:
        raise DataUnavailable(f"backtest_result not found: {result_id}")
    return BacktestResult.from_dict(json.loads(row["payload_json"]))


def list_backtest_results(paths: RuntimePaths, strategy_id: str, limit: int = 10) -> list[BacktestResult]:
    if limit <= 0:
        raise ConfigError("limit must be positive")
    with connect(paths) as conn:
        rows = conn.execute(
            """
            SELECT payload_json
            FROM backtest_results
            WHERE strategy_id = ?
            ORDER BY created_at DESC, saved_at DESC
            LIMIT ?
            """,
            (strategy_id, int(limit)),
        ).fetchall()
    return [BacktestResult.from_dict(json.loads(row["payload_json"])) for row in rows]


def list_result_summaries(paths: RuntimePaths, strategy_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
    sql = "SELECT id, strategy_id, summary_json, created_at FROM backtest_results"
    params: list[Any] = []
    if strategy_id is not None:
        sql += " WHERE strategy_id = ?"
        params.append(strategy_id)
    sql += " ORDER BY created_at DESC LIMIT ?"
    params.append(int(limit))
    with connect(paths) as conn:
        rows = conn.execute(sql, params).fetchall()
    return [
        {
            "result_id": row["id"],
            "strategy_id": row["strategy_id"],
            "summary": json.loads(row["summary_json"]),
            "created_at": row["created_at"],
        }
        for row in rows
    ]


class SqliteResultStore:
    """ResultStore backed by the runtime SQLite file; safe to share between worker threads."""

    def __init__(self, paths: RuntimePaths) -> None:
        self._paths = paths
        self._lock = threading.Lock()
        init_db(paths)

    def save(self, result: BacktestResult) -> None:
        with self._lock:
            save_backtest_result(self._paths, result)

    def list(self, strategy_id: str, limit: int = 10) -> list[BacktestResult]:
        return list_backtest_results(self._paths, strategy_id, limit)

    def get(self, result_id: str) -> BacktestResult:
        return get_backtest_result(self._paths, result_id)


class InMemoryResultStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: list[BacktestResult] = []

    def save(self, result: BacktestResult) -> None:
        with self._lock:
            self._results.append(result)

    def list(self, strategy_id: str, limit: int = 10) -> list[BacktestResult]:
        if limit <= 0:
            raise ConfigError("limit must be positive")
        with self._lock:
            matching = [result for result in self._results if result.strategy_id == strategy_id]
        return list(reversed(matching))[:limit]
