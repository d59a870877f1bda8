from __future__ import annotations

import threading

from ln_backtest.errors import StrategyNotFound
from ln_backtest.strategy.models import Strategy
from ln_backtest.strategy.sma import SMA_CROSSOVER, SMA_STRATEGY


class StrategyRegistry:
    def __init__(self, strategies: list[Strategy] | None = None) -> None:
        self._lock = threading.Lock()
        self._strategies: dict[str, Strategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: Strategy) -> None:
        if not strategy.id.strip():
            raise ValueError("strategy id is required")
        with self._lock:
            if strategy.id in self._strategies:
                raise ValueError(f"strategy already registered: {strategy.id}")
            self._strategies[strategy.id] = strategy

    def get(self, strategy_id: str) -> Strategy:
        with self._lock:
            strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise StrategyNotFound(f"Strategy {strategy_id} not found")
        return strategy

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._strategies)


def default_registry() -> StrategyRegistry:
    return StrategyRegistry([SMA_STRATEGY, SMA_CROSSOVER])
