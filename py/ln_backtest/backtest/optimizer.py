from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from itertools import product
from typing import Any

from ln_backtest.backtest.models import BacktestMetrics, BacktestResult, OptimizationResult, SkippedCombination
from ln_backtest.backtest.parallel import run_units
from ln_backtest.config import EngineSettings
from ln_backtest.errors import BacktestError, ConfigError, NoOptimizationResults, RunTimeout
from ln_backtest.observability.log import EventCallback

NO_RESULTS_MESSAGE = "No optimization results found"
BUDGET_EXHAUSTED_REASON = "optimization budget exhausted"
DEFAULT_OBJECTIVE = "sharpe_ratio"

Objective = str | Callable[[BacktestMetrics], float]
EvaluateFn = Callable[[dict[str, Any], float | None], BacktestResult]

_METRIC_FIELDS = {item.name for item in fields(BacktestMetrics)}


class _BudgetExhausted(RunTimeout):
    """A combination cut short by the optimization budget rather than its own run timeout."""


@dataclass(frozen=True)
class ParameterRange:
    name: str
    min_value: float
    max_value: float
    step: float
    integral: bool

    def values(self) -> list[float | int]:
        """``min, min + step, ...`` up to ``max``; ``max`` only when stepping reaches it."""
        if self.max_value < self.min_value:
            return []
        tolerance = abs(self.step) * 1e-9
        values: list[float | int] = []
        k = 0
        while True:
            current = self.min_value + k * self.step
            if current > self.max_value + tolerance:
                break
            values.append(int(round(current)) if self.integral else round(current, 10))
            k += 1
        return values


def _coerce_float(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be numeric: {value!r}") from exc


def _is_integral(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()


def parse_parameter_ranges(raw_ranges: Mapping[str, Any]) -> list[ParameterRange]:
    if not isinstance(raw_ranges, Mapping):
        raise ConfigError("parameter_ranges must be a mapping of name -> {min, max, step}")

    ranges: list[ParameterRange] = []
    for name, raw in raw_ranges.items():
        param_name = str(name).strip()
        if not param_name:
            raise ConfigError("parameter_ranges contains an empty parameter name")
        if isinstance(raw, ParameterRange):
            ranges.append(raw)
            continue
        if not isinstance(raw, Mapping):
            raise ConfigError(f"{param_name}: range must be an object with min, max and step")
        missing = [key for key in ("min", "max", "step") if raw.get(key) is None]
        if missing:
            raise ConfigError(f"{param_name}: range is missing {missing}")

        min_value = _coerce_float(raw["min"], f"{param_name}.min")
        max_value = _coerce_float(raw["max"], f"{param_name}.max")
        step = _coerce_float(raw["step"], f"{param_name}.step")
        if step <= 0:
            raise ConfigError(f"{param_name}.step must be positive")
        ranges.append(
            ParameterRange(
                name=param_name,
                min_value=min_value,
                max_value=max_value,
                step=step,
                integral=all(_is_integral(raw[key]) for key in ("min", "max", "step")),
            )
        )
    return ranges


def generate_combinations(ranges: list[ParameterRange]) -> list[dict[str, Any]]:
    """Cartesian product in declaration order; the last parameter varies fastest."""
    if not ranges:
        return []
    value_lists = [spec.values() for spec in ranges]
    return [
        {ranges[index].name: value for index, value in enumerate(row)}
        for row in product(*value_lists)
    ]


def resolve_objective(objective: Objective | None) -> tuple[str, Callable[[BacktestMetrics], float]]:
    if objective is None:
        objective = DEFAULT_OBJECTIVE
    if callable(objective):
        label = getattr(objective, "__name__", "custom")
        return label, objective
    metric = str(objective).strip()
    if metric not in _METRIC_FIELDS:
        raise ConfigError(f"unknown objective metric: {metric}; expected one of {sorted(_METRIC_FIELDS)}")
    return metric, lambda metrics: float(getattr(metrics, metric))


def select_best(results: list[BacktestResult], score: Callable[[BacktestMetrics], float]) -> BacktestResult:
    """Stable argmax: on equal scores the earliest result wins."""
    if not results:
        raise NoOptimizationResults(NO_RESULTS_MESSAGE)
    best = results[0]
    best_score = score(best.metrics)
    for result in results[1:]:
        value = score(result.metrics)
        if value > best_score:
            best, best_score = result, value
    return best


def optimize(
    evaluate: EvaluateFn,
    combinations: list[dict[str, Any]],
    objective: Objective | None = None,
    settings: EngineSettings | None = None,
    event_callback: EventCallback | None = None,
) -> OptimizationResult:
    settings = settings or EngineSettings()
    objective_name, score = resolve_objective(objective)
    if not combinations:
        raise NoOptimizationResults(NO_RESULTS_MESSAGE)

    started = time.monotonic()
    budget_deadline = (
        started + settings.optimization_budget_seconds if settings.optimization_budget_seconds is not None else None
    )

    def _emit(payload: dict[str, Any]) -> None:
        if event_callback is not None:
            event_callback(payload)

    def _unit(index: int, combination: dict[str, Any]) -> BacktestResult:
        deadline = budget_deadline
        if settings.run_timeout_seconds is not None:
            run_deadline = time.monotonic() + settings.run_timeout_seconds
            deadline = run_deadline if deadline is None else min(deadline, run_deadline)
        try:
            result = evaluate(dict(combination), deadline)
        except RunTimeout as exc:
            if budget_deadline is not None and deadline == budget_deadline:
                raise _BudgetExhausted(BUDGET_EXHAUSTED_REASON) from exc
            raise
        _emit(
            {
                "event": "optimization.candidate.evaluated",
                "candidate_index": index,
                "params": combination,
                "score": score(result.metrics),
                "result_id": result.id,
            }
        )
        return result

    _emit(
        {
            "event": "optimization.started",
            "objective": objective_name,
            "combinations": len(combinations),
            "max_workers": settings.max_workers,
        }
    )

    batch = run_units(combinations, _unit, max_workers=settings.max_workers, budget_deadline=budget_deadline)

    all_results: list[BacktestResult] = []
    skipped: list[SkippedCombination] = []
    seen: set[int] = set()
    budget_hit = batch.budget_exhausted
    for outcome in batch.outcomes:
        seen.add(outcome.index)
        if outcome.error is None:
            all_results.append(outcome.value)
            continue
        if not isinstance(outcome.error, BacktestError):
            raise outcome.error
        if isinstance(outcome.error, _BudgetExhausted):
            budget_hit = True
        skipped.append(
            SkippedCombination(index=outcome.index, parameters=combinations[outcome.index], reason=str(outcome.error))
        )
        _emit(
            {
                "event": "optimization.candidate.skipped",
                "candidate_index": outcome.index,
                "params": combinations[outcome.index],
                "error": str(outcome.error),
            }
        )
    for index, combination in enumerate(combinations):
        if index not in seen:
            skipped.append(SkippedCombination(index=index, parameters=combination, reason=BUDGET_EXHAUSTED_REASON))

    status = "partial" if budget_hit else "completed"
    if not all_results:
        raise NoOptimizationResults(NO_RESULTS_MESSAGE)

    best = select_best(all_results, score)
    _emit(
        {
            "event": "optimization.completed",
            "objective": objective_name,
            "status": status,
            "evaluated": len(all_results),
            "skipped": len(skipped),
            "best_result_id": best.id,
            "best_score": score(best.metrics),
            "duration_ms": round((time.monotonic() - started) * 1000.0, 3),
        }
    )
    return OptimizationResult(
        best_result=best,
        all_results=all_results,
        status=status,
        combinations_requested=len(combinations),
        skipped=sorted(skipped, key=lambda item: item.index),
    )
