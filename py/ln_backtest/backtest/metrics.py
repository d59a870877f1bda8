from __future__ import annotations

import math
from collections.abc import Sequence

from ln_backtest.backtest.models import BacktestMetrics, BacktestSummary, EquityPoint, Trade
from ln_backtest.backtest.stats import (
    longest_streak,
    mean,
    period_returns,
    population_stddev,
    ratio_or_zero,
    root_mean_square,
)


def value_at_risk(returns: Sequence[float], confidence: float) -> float:
    """Historical VaR as a positive loss fraction."""
    return abs(_quantile_return(returns, confidence))


def _quantile_return(returns: Sequence[float], confidence: float) -> float:
    if not returns:
        return 0.0
    ordered = sorted(returns)
    index = int(math.floor((1.0 - confidence) * len(ordered)))
    index = min(max(index, 0), len(ordered) - 1)
    return ordered[index]


def expected_shortfall(returns: Sequence[float], confidence: float = 0.95) -> float:
    if not returns:
        return 0.0
    threshold = _quantile_return(returns, confidence)
    tail = [value for value in returns if value <= threshold]
    return mean(tail)


def _recovery_time(equity_curve: Sequence[EquityPoint]) -> float:
    if not equity_curve:
        return 0.0
    trough = max(range(len(equity_curve)), key=lambda idx: equity_curve[idx].drawdown_percentage)
    trough_point = equity_curve[trough]
    if trough_point.drawdown <= 0:
        return 0.0
    peak = trough_point.equity + trough_point.drawdown
    for point in equity_curve[trough + 1 :]:
        if point.equity >= peak:
            return (point.timestamp - trough_point.timestamp).total_seconds() / 3600.0
    return (equity_curve[-1].timestamp - trough_point.timestamp).total_seconds() / 3600.0


def _annualized_return(equity: Sequence[float], periods_per_year: float | None) -> float:
    if periods_per_year is None or len(equity) < 2:
        return 0.0
    first, final = equity[0], equity[-1]
    if first <= 0 or final <= 0:
        return 0.0
    growth = ratio_or_zero(final, first)
    try:
        value = growth ** (periods_per_year / float(len(equity) - 1)) - 1.0
    except OverflowError:
        return 0.0
    return value if math.isfinite(value) else 0.0


def compute_metrics(
    trades: Sequence[Trade],
    equity_curve: Sequence[EquityPoint],
    initial_equity: float,
    periods_per_year: float | None = None,
) -> BacktestMetrics:
    """Risk/return metrics for one run.

    A run without closed trades reports all-zero metrics, even when an open position
    moved the equity curve.
    """
    if not trades:
        return BacktestMetrics()

    pnls = [trade.pnl for trade in trades]
    wins = [pnl for pnl in pnls if pnl > 0]
    losses = [pnl for pnl in pnls if pnl < 0]
    total_trades = len(trades)
    total_return = float(sum(pnls))

    equity = [point.equity for point in equity_curve]
    returns = period_returns(equity)
    avg_return = mean(returns)
    volatility = population_stddev(returns)
    downside = root_mean_square([min(value, 0.0) for value in returns])
    upside = root_mean_square([max(value, 0.0) for value in returns])

    max_drawdown = max((point.drawdown for point in equity_curve), default=0.0)
    max_drawdown_percentage = max((point.drawdown_percentage for point in equity_curve), default=0.0)

    holding_times = [trade.holding_time for trade in trades]
    volumes = [trade.volume for trade in trades]

    return BacktestMetrics(
        total_return=total_return,
        annualized_return=_annualized_return(equity, periods_per_year),
        volatility=volatility,
        annualized_volatility=volatility * math.sqrt(periods_per_year) if periods_per_year else 0.0,
        sharpe_ratio=ratio_or_zero(avg_return, volatility),
        sortino_ratio=ratio_or_zero(avg_return, downside),
        calmar_ratio=ratio_or_zero(ratio_or_zero(total_return, initial_equity), max_drawdown_percentage / 100.0),
        max_drawdown=max_drawdown,
        max_drawdown_percentage=max_drawdown_percentage,
        recovery_time=_recovery_time(equity_curve),
        total_trades=total_trades,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=ratio_or_zero(len(wins), total_trades),
        profit_factor=ratio_or_zero(abs(sum(wins)), abs(sum(losses))),
        average_trade=ratio_or_zero(total_return, total_trades),
        average_win=ratio_or_zero(sum(wins), len(wins)),
        average_loss=ratio_or_zero(sum(losses), len(losses)),
        largest_win=max(pnls, default=0.0),
        largest_loss=min(pnls, default=0.0),
        consecutive_wins=longest_streak([pnl > 0 for pnl in pnls]),
        consecutive_losses=longest_streak([pnl < 0 for pnl in pnls]),
        var_95=value_at_risk(returns, 0.95),
        var_99=value_at_risk(returns, 0.99),
        expected_shortfall=expected_shortfall(returns, 0.95),
        downside_deviation=downside,
        upside_deviation=upside,
        average_holding_time=mean(holding_times),
        max_holding_time=max(holding_times, default=0.0),
        min_holding_time=min(holding_times, default=0.0),
        total_volume=float(sum(volumes)),
        average_volume=mean(volumes),
        max_volume=max(volumes, default=0.0),
        min_volume=min(volumes, default=0.0),
    )


def build_summary(metrics: BacktestMetrics, initial_equity: float) -> BacktestSummary:
    return BacktestSummary(
        total_trades=metrics.total_trades,
        winning_trades=metrics.winning_trades,
        losing_trades=metrics.losing_trades,
        win_rate=metrics.win_rate,
        total_return=metrics.total_return,
        total_return_percentage=ratio_or_zero(metrics.total_return, initial_equity) * 100.0,
        max_drawdown=metrics.max_drawdown,
        max_drawdown_percentage=metrics.max_drawdown_percentage,
        sharpe_ratio=metrics.sharpe_ratio,
        sortino_ratio=metrics.sortino_ratio,
        calmar_ratio=metrics.calmar_ratio,
        profit_factor=metrics.profit_factor,
        average_trade=metrics.average_trade,
        average_win=metrics.average_win,
        average_loss=metrics.average_loss,
        largest_win=metrics.largest_win,
        largest_loss=metrics.largest_loss,
        consecutive_wins=metrics.consecutive_wins,
        consecutive_losses=metrics.consecutive_losses,
        total_volume=metrics.total_volume,
        average_holding_time=metrics.average_holding_time,
    )
