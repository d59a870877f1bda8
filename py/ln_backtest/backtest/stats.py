from __future__ import annotations

import math
from collections.abc import Sequence

from ln_backtest.errors import ComputationDegenerate


def safe_div(numerator: float, denominator: float) -> float:
    if denominator == 0 or not math.isfinite(denominator):
        raise ComputationDegenerate("division by zero or non-finite denominator")
    value = numerator / denominator
    if not math.isfinite(value):
        raise ComputationDegenerate("non-finite quotient")
    return value


def ratio_or_zero(numerator: float, denominator: float) -> float:
    try:
        return safe_div(numerator, denominator)
    except ComputationDegenerate:
        return 0.0


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / float(len(values))


def population_stddev(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    avg = mean(values)
    variance = sum((value - avg) ** 2 for value in values) / len(values)
    return math.sqrt(variance)


def root_mean_square(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return math.sqrt(sum(value * value for value in values) / len(values))


def trailing_mean(values: Sequence[float], window: int, end: int) -> float:
    """Mean of ``values[end - window + 1 : end + 1]``."""
    start = end - window + 1
    if window <= 0 or start < 0 or end >= len(values):
        raise ValueError(f"not enough values for window={window} ending at index {end}")
    segment = values[start : end + 1]
    return sum(segment) / float(window)


def period_returns(equity: Sequence[float]) -> list[float]:
    returns: list[float] = []
    for idx in range(1, len(equity)):
        returns.append(ratio_or_zero(equity[idx] - equity[idx - 1], equity[idx - 1]) if equity[idx - 1] > 0 else 0.0)
    return returns


def running_drawdowns(equity: Sequence[float]) -> list[tuple[float, float]]:
    """(drawdown, drawdown_percentage) for each point against its running peak."""
    result: list[tuple[float, float]] = []
    if not equity:
        return result
    peak = equity[0]
    for value in equity:
        peak = max(peak, value)
        drawdown = max(peak - value, 0.0)
        percentage = ratio_or_zero(drawdown, peak) * 100.0 if peak > 0 else 0.0
        result.append((drawdown, min(max(percentage, 0.0), 100.0)))
    return result


def longest_streak(flags: Sequence[bool]) -> int:
    best = 0
    current = 0
    for flag in flags:
        current = current + 1 if flag else 0
        best = max(best, current)
    return best
