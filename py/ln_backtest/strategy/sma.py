from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ln_backtest.backtest.stats import trailing_mean
from ln_backtest.errors import ConfigError
from ln_backtest.strategy.models import BarWindow, ParameterSpec, Signal, Strategy


def _cross_signal(prev_fast: float, prev_slow: float, fast: float, slow: float) -> Signal:
    if fast > slow and prev_fast <= prev_slow:
        return "buy"
    if fast < slow and prev_fast >= prev_slow:
        return "sell"
    return "hold"


def price_sma_signal(window: BarWindow, parameters: Mapping[str, Any]) -> Signal:
    period = int(parameters["smaPeriod"])
    if len(window) < period + 1:
        return "hold"
    closes = window.closes(period + 1)
    current_sma = trailing_mean(closes, period, len(closes) - 1)
    previous_sma = trailing_mean(closes, period, len(closes) - 2)
    return _cross_signal(closes[-2], previous_sma, closes[-1], current_sma)


def sma_crossover_signal(window: BarWindow, parameters: Mapping[str, Any]) -> Signal:
    short_window = int(parameters["shortWindow"])
    long_window = int(parameters["longWindow"])
    if len(window) < long_window + 1:
        return "hold"
    closes = window.closes(long_window + 1)
    last = len(closes) - 1
    return _cross_signal(
        trailing_mean(closes, short_window, last - 1),
        trailing_mean(closes, long_window, last - 1),
        trailing_mean(closes, short_window, last),
        trailing_mean(closes, long_window, last),
    )


def _check_crossover_windows(parameters: Mapping[str, Any]) -> None:
    if int(parameters["shortWindow"]) >= int(parameters["longWindow"]):
        raise ConfigError("shortWindow must be less than longWindow")


SMA_STRATEGY = Strategy(
    id="sma_strategy",
    name="Simple Moving Average Strategy",
    description="Buy when price crosses above SMA, sell when below",
    evaluator=price_sma_signal,
    warmup=lambda parameters: int(parameters["smaPeriod"]),
    parameter_schema=(
        ParameterSpec("smaPeriod", "int", 20, min_value=1, description="moving average length in bars"),
        ParameterSpec("stopLoss", "float", 0.02, min_value=0.0, description="adverse move fraction"),
        ParameterSpec("takeProfit", "float", 0.04, min_value=0.0, description="favourable move fraction"),
    ),
)

SMA_CROSSOVER = Strategy(
    id="sma_crossover",
    name="SMA Crossover",
    description="Buy when the fast SMA crosses above the slow SMA, sell on the reverse cross",
    evaluator=sma_crossover_signal,
    warmup=lambda parameters: int(parameters["longWindow"]),
    parameter_schema=(
        ParameterSpec("shortWindow", "int", 5, min_value=1),
        ParameterSpec("longWindow", "int", 20, min_value=2),
    ),
    check_parameters=_check_crossover_windows,
)
