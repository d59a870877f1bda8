from __future__ import annotations

import random
from datetime import datetime, timedelta

from ln_backtest.backtest.models import TIMEFRAME_SECONDS, Bar
from ln_backtest.errors import ConfigError


class SyntheticBarProvider:
    """Seeded random-walk bars for tests and offline demos.

    Each call restarts the walk from ``start_price`` with a generator derived from
    ``seed`` and the request, so identical requests always return identical bars.
    """

    def __init__(
        self,
        seed: int,
        start_price: float = 50000.0,
        max_move: float = 0.01,
        max_bars: int = 500_000,
    ) -> None:
        if seed is None:
            raise ConfigError("SyntheticBarProvider requires an explicit seed")
        if start_price <= 0:
            raise ConfigError("start_price must be positive")
        if not 0 < max_move < 1:
            raise ConfigError("max_move must be in (0, 1)")
        self._seed = int(seed)
        self._start_price = float(start_price)
        self._max_move = float(max_move)
        self._max_bars = int(max_bars)

    def get_bars(self, market: str, timeframe: str, start_time: datetime, end_time: datetime) -> list[Bar]:
        seconds = TIMEFRAME_SECONDS.get(timeframe)
        if seconds is None:
            raise ConfigError(f"unsupported timeframe: {timeframe}")
        if start_time >= end_time:
            return []

        interval = timedelta(seconds=seconds)
        expected = int((end_time - start_time) / interval) + 1
        if expected > self._max_bars:
            raise ConfigError(f"requested range needs {expected} {timeframe} bars; limit is {self._max_bars}")

        rng = random.Random(f"{self._seed}:{market}:{timeframe}:{start_time.isoformat()}")
        bars: list[Bar] = []
        price = self._start_price
        current = start_time
        while current < end_time:
            open_price = price
            price = price * (1.0 + (rng.random() - 0.5) * 2.0 * self._max_move)
            high = max(open_price, price) * (1.0 + rng.random() * self._max_move)
            low = min(open_price, price) * (1.0 - rng.random() * self._max_move)
            bars.append(
                Bar(
                    timestamp=current,
                    open=open_price,
                    high=high,
                    low=low,
                    close=price,
                    volume=rng.random() * 1_000_000.0,
                )
            )
            current += interval
        return bars
