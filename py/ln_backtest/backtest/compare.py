from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from ln_backtest.backtest.models import BacktestMetrics, BacktestResult
from ln_backtest.backtest.optimizer import resolve_objective


METRIC_KEYS = [
    "total_return",
    "sharpe_ratio",
    "sortino_ratio",
    "calmar_ratio",
    "max_drawdown_percentage",
    "win_rate",
    "profit_factor",
    "total_trades",
    "var_95",
]

# metrics where a lower value is the better outcome
_LOWER_IS_BETTER = {"max_drawdown", "max_drawdown_percentage", "volatility", "var_95", "var_99", "downside_deviation"}


def _metric(metrics: BacktestMetrics, key: str) -> float:
    return float(getattr(metrics, key))


def rank_results(
    results: Sequence[BacktestResult],
    objective: str | Callable[[BacktestMetrics], float] = "sharpe_ratio",
) -> list[BacktestResult]:
    """Best first. Equal scores keep their input order.

    A metric name must be a ``BacktestMetrics`` field, otherwise ``ConfigError`` is raised.
    """
    if callable(objective):
        score = objective
    else:
        name, value_of = resolve_objective(objective)
        direction = -1.0 if name in _LOWER_IS_BETTER else 1.0

        def score(metrics: BacktestMetrics) -> float:
            return direction * value_of(metrics)

    return sorted(results, key=lambda result: score(result.metrics), reverse=True)


def _metric_deltas(baseline: BacktestMetrics, candidate: BacktestMetrics) -> dict[str, float]:
    return {key: _metric(candidate, key) - _metric(baseline, key) for key in METRIC_KEYS}


def _likely_causes(baseline: BacktestResult, candidate: BacktestResult, deltas: dict[str, float]) -> list[str]:
    notes: list[str] = []
    if baseline.strategy_id != candidate.strategy_id:
        notes.append(f"strategy changed: baseline={baseline.strategy_id} candidate={candidate.strategy_id}")

    base_params = baseline.config.parameters
    cand_params = candidate.config.parameters
    for key in sorted(set(base_params) | set(cand_params)):
        if base_params.get(key) != cand_params.get(key):
            notes.append(
                f"strategy parameter changed: {key} baseline={base_params.get(key)} candidate={cand_params.get(key)}"
            )

    if deltas["total_return"] > 0:
        notes.append(f"candidate improved total_return by {deltas['total_return']:.6f}")
    elif deltas["total_return"] < 0:
        notes.append(f"candidate reduced total_return by {abs(deltas['total_return']):.6f}")

    if deltas["max_drawdown_percentage"] > 0:
        notes.append("candidate drawdown became deeper")
    elif deltas["max_drawdown_percentage"] < 0:
        notes.append("candidate drawdown improved")

    if deltas["total_trades"] != 0:
        notes.append(f"total_trades changed by {int(deltas['total_trades'])}")

    if not notes:
        notes.append("no clear cause identified from available metadata")
    return notes


def compare_results(baseline: BacktestResult, candidate: BacktestResult) -> dict[str, Any]:
    deltas = _metric_deltas(baseline.metrics, candidate.metrics)
    return {
        "baseline": {
            "result_id": baseline.id,
            "strategy_id": baseline.strategy_id,
            "created_at": baseline.created_at.isoformat(),
            "metrics": {key: _metric(baseline.metrics, key) for key in METRIC_KEYS},
        },
        "candidate": {
            "result_id": candidate.id,
            "strategy_id": candidate.strategy_id,
            "created_at": candidate.created_at.isoformat(),
            "metrics": {key: _metric(candidate.metrics, key) for key in METRIC_KEYS},
        },
        "metrics_delta": deltas,
        "likely_causes": _likely_causes(baseline, candidate, deltas),
    }
