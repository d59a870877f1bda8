from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ln_backtest.backtest.models import BacktestResult, Bar
from ln_backtest.strategy.models import Strategy


class HistoricalDataProvider(Protocol):
    def get_bars(self, market: str, timeframe: str, start_time: datetime, end_time: datetime) -> list[Bar]: ...


class StrategyLookup(Protocol):
    def get(self, strategy_id: str) -> Strategy: ...


class ResultStore(Protocol):
    def save(self, result: BacktestResult) -> None: ...

    def list(self, strategy_id: str, limit: int = 10) -> list[BacktestResult]: ...
