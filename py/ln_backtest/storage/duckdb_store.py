from __future__ import annotations

from datetime import datetime, timezone

import duckdb

from ln_backtest.backtest.models import Bar
from ln_backtest.storage.paths import RuntimePaths


def _connect(paths: RuntimePaths) -> duckdb.DuckDBPyConnection:
    paths.ensure()
    return duckdb.connect(str(paths.duckdb_path))


def init_db(paths: RuntimePaths) -> None:
    with _connect(paths) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS market_bars (
                timestamp TIMESTAMP NOT NULL,
                market VARCHAR NOT NULL,
                timeframe VARCHAR NOT NULL,
                open DOUBLE NOT NULL,
                high DOUBLE NOT NULL,
                low DOUBLE NOT NULL,
                close DOUBLE NOT NULL,
                volume DOUBLE NOT NULL,
                source_file VARCHAR NOT NULL,
                dataset_hash VARCHAR NOT NULL,
                ingested_at TIMESTAMP NOT NULL
            )
            """
        )


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def query_bars(
    paths: RuntimePaths,
    market: str,
    timeframe: str,
    start_time: datetime,
    end_time: datetime,
) -> list[Bar]:
    """Bars in ``[start_time, end_time)``, one per timestamp (latest ingest wins)."""
    init_db(paths)
    with _connect(paths) as conn:
        rows = conn.execute(
            """
            SELECT timestamp, open, high, low, close, volume
            FROM (
                SELECT *,
                       ROW_NUMBER() OVER (PARTITION BY timestamp ORDER BY ingested_at DESC) AS rn
                FROM market_bars
                WHERE market = ?
                  AND timeframe = ?
                  AND timestamp >= ?
                  AND timestamp < ?
            )
            WHERE rn = 1
            ORDER BY timestamp
            """,
            [market, timeframe, _as_naive_utc(start_time), _as_naive_utc(end_time)],
        ).fetchall()
    return [
        Bar(
            timestamp=timestamp.replace(tzinfo=timezone.utc),
            open=float(open_),
            high=float(high),
            low=float(low),
            close=float(close),
            volume=float(volume),
        )
        for timestamp, open_, high, low, close, volume in rows
    ]


def count_bars(paths: RuntimePaths, market: str, timeframe: str | None = None) -> int:
    init_db(paths)
    sql = "SELECT COUNT(*) FROM market_bars WHERE market = ?"
    params: list[str] = [market]
    if timeframe is not None:
        sql += " AND timeframe = ?"
        params.append(timeframe)
    with _connect(paths) as conn:
        row = conn.execute(sql, params).fetchone()
    return int(row[0])


class DuckDBBarProvider:
    def __init__(self, paths: RuntimePaths) -> None:
        self._paths = paths

    def get_bars(self, market: str, timeframe: str, start_time: datetime, end_time: datetime) -> list[Bar]:
        return query_bars(self._paths, market, timeframe, start_time, end_time)
