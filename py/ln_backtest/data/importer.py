from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import duckdb

from ln_backtest.backtest.models import TIMEFRAME_SECONDS
from ln_backtest.errors import ConfigError
from ln_backtest.storage import duckdb_store
from ln_backtest.storage.paths import RuntimePaths

REQUIRED_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class ImportResult:
    source_path: str
    market: str
    timeframe: str
    rows_inserted: int
    dataset_hash: str


def _hash_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _ensure_supported_input(path: Path) -> None:
    if not path.exists():
        raise ConfigError(f"input file not found: {path}")
    if path.suffix.lower() not in {".csv", ".parquet"}:
        raise ConfigError("only .csv and .parquet bar files are supported")


def _relation_for_file(path: Path) -> str:
    escaped = path.as_posix().replace("'", "''")
    if path.suffix.lower() == ".csv":
        return f"read_csv_auto('{escaped}', header=true)"
    return f"read_parquet('{escaped}')"


def _columns_for_relation(relation_sql: str) -> list[str]:
    with duckdb.connect() as conn:
        return [row[0] for row in conn.execute(f"SELECT * FROM {relation_sql} LIMIT 0").description]


def import_bars_file(
    path: Path,
    runtime_paths: RuntimePaths,
    market: str | None = None,
    timeframe: str = "1h",
) -> ImportResult:
    """Load an OHLCV file into ``market_bars``.

    The file needs ``timestamp, open, high, low, close, volume`` and, unless
    ``market`` is given, a ``market`` column naming the instrument of each row.
    """
    path = path.resolve()
    _ensure_supported_input(path)
    if timeframe not in TIMEFRAME_SECONDS:
        raise ConfigError(f"unsupported timeframe: {timeframe}")

    relation = _relation_for_file(path)
    columns = _columns_for_relation(relation)
    required = list(REQUIRED_COLUMNS) if market is not None else [*REQUIRED_COLUMNS, "market"]
    missing = [column for column in required if column not in columns]
    if missing:
        raise ConfigError(f"missing required columns: {missing}")

    dataset_hash = _hash_file(path)
    duckdb_store.init_db(runtime_paths)
    market_expr = "CAST(? AS VARCHAR)" if market is not None else "CAST(market AS VARCHAR)"
    params: list[Any] = [market] if market is not None else []
    params.extend([timeframe, str(path), dataset_hash, datetime.now(timezone.utc).replace(tzinfo=None)])

    with duckdb.connect(str(runtime_paths.duckdb_path)) as conn:
        before = conn.execute("SELECT COUNT(*) FROM market_bars").fetchone()[0]
        conn.execute(
            f"""
            INSERT INTO market_bars (timestamp, market, timeframe, open, high, low, close, volume, source_file, dataset_hash, ingested_at)
            SELECT
                CAST(timestamp AS TIMESTAMP),
                {market_expr},
                CAST(? AS VARCHAR),
                CAST(open AS DOUBLE),
                CAST(high AS DOUBLE),
                CAST(low AS DOUBLE),
                CAST(close AS DOUBLE),
                CAST(volume AS DOUBLE),
                ?,
                ?,
                CAST(? AS TIMESTAMP)
            FROM {relation}
            WHERE timestamp IS NOT NULL
            """,
            params,
        )
        after = conn.execute("SELECT COUNT(*) FROM market_bars").fetchone()[0]

    rows_inserted = int(after - before)
    if rows_inserted <= 0:
        raise ConfigError(f"no rows inserted from {path}")
    return ImportResult(
        source_path=str(path),
        market=market or "(from file)",
        timeframe=timeframe,
        rows_inserted=rows_inserted,
        dataset_hash=dataset_hash,
    )
