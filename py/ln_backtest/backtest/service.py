from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from ln_backtest.backtest.compare import rank_results
from ln_backtest.backtest.metrics import build_summary, compute_metrics
from ln_backtest.backtest.models import (
    BacktestConfig,
    BacktestResult,
    Bar,
    OptimizationResult,
    periods_per_year,
    result_id_for,
)
from ln_backtest.backtest.optimizer import (
    NO_RESULTS_MESSAGE,
    Objective,
    generate_combinations,
    optimize,
    parse_parameter_ranges,
)
from ln_backtest.backtest.parallel import run_units
from ln_backtest.backtest.ports import HistoricalDataProvider, ResultStore, StrategyLookup
from ln_backtest.backtest.simulation import NO_DATA_MESSAGE, simulate
from ln_backtest.config import EngineSettings
from ln_backtest.errors import ConfigError, DataUnavailable, NoOptimizationResults
from ln_backtest.observability.log import EventCallback, write_structured_log
from ln_backtest.storage.paths import RuntimePaths
from ln_backtest.strategy.models import Strategy
from ln_backtest.strategy.registry import default_registry

ConfigInput = BacktestConfig | Mapping[str, Any]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_config(config: ConfigInput, strategy_id: str | None = None) -> BacktestConfig:
    if isinstance(config, BacktestConfig):
        parsed = config
    else:
        try:
            parsed = BacktestConfig.model_validate(dict(config))
        except ValidationError as exc:
            raise ConfigError(f"invalid backtest config: {exc}") from exc
    if strategy_id is not None:
        parsed = parsed.model_copy(update={"strategy_id": strategy_id})
    return parsed


class BacktestService:
    """Runs backtests, strategy comparisons and parameter grids over injected collaborators.

    The data provider, strategy registry and result store are owned by the caller.
    A missing result store simply disables persistence.
    """

    def __init__(
        self,
        data_provider: HistoricalDataProvider,
        strategies: StrategyLookup | None = None,
        result_store: ResultStore | None = None,
        *,
        settings: EngineSettings | None = None,
        event_callback: EventCallback | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._data_provider = data_provider
        self._strategies = strategies if strategies is not None else default_registry()
        self._result_store = result_store
        self._settings = settings or EngineSettings()
        self._event_callback = event_callback
        self._clock = clock or _utc_now

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self._event_callback is not None:
            self._event_callback({"event": event, **payload})

    def _load_bars(self, config: BacktestConfig) -> tuple[Bar, ...]:
        if config.start_time >= config.end_time:
            raise DataUnavailable(NO_DATA_MESSAGE)
        bars = self._data_provider.get_bars(config.market, config.timeframe, config.start_time, config.end_time)
        if not bars:
            raise DataUnavailable(NO_DATA_MESSAGE)
        for prev, curr in zip(bars, bars[1:]):
            if curr.timestamp <= prev.timestamp:
                raise DataUnavailable(
                    f"historical bars for {config.market} are not strictly increasing at {curr.timestamp.isoformat()}"
                )
        return tuple(bars)

    def _run_deadline(self) -> float | None:
        if self._settings.run_timeout_seconds is None:
            return None
        return time.monotonic() + self._settings.run_timeout_seconds

    def _execute(
        self,
        strategy: Strategy,
        bars: Sequence[Bar],
        config: BacktestConfig,
        deadline: float | None,
    ) -> BacktestResult:
        parameters = strategy.resolve_parameters(config.parameters)
        output = simulate(bars, strategy, config, self._settings, parameters=parameters, deadline=deadline)
        metrics = compute_metrics(
            output.trades,
            output.equity_curve,
            config.initial_balance,
            periods_per_year=periods_per_year(config.timeframe),
        )
        result = BacktestResult(
            id=result_id_for(strategy.id, config),
            strategy_id=strategy.id,
            config=config,
            summary=build_summary(metrics, config.initial_balance),
            trades=output.trades,
            equity_curve=output.equity_curve,
            metrics=metrics,
            created_at=self._clock(),
        )
        self._persist(result)
        return result

    def _persist(self, result: BacktestResult) -> None:
        if self._result_store is None:
            return
        try:
            self._result_store.save(result)
        except Exception as exc:  # noqa: BLE001
            payload = {
                "result_id": result.id,
                "strategy_id": result.strategy_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            }
            if self._event_callback is None:
                # no subscriber: the failure still lands in the runtime structured log
                write_structured_log(RuntimePaths.from_env(), "backtest.save.failed", payload)
            else:
                self._emit("backtest.save.failed", payload)

    def run_backtest(self, config: ConfigInput) -> BacktestResult:
        parsed = coerce_config(config)
        started = time.perf_counter()
        self._emit(
            "backtest.run.started",
            {
                "strategy_id": parsed.strategy_id,
                "market": parsed.market,
                "timeframe": parsed.timeframe,
            },
        )
        strategy = self._strategies.get(parsed.strategy_id)
        bars = self._load_bars(parsed)
        result = self._execute(strategy, bars, parsed, self._run_deadline())
        self._emit(
            "backtest.run.completed",
            {
                "result_id": result.id,
                "strategy_id": result.strategy_id,
                "bars": len(bars),
                "total_trades": result.summary.total_trades,
                "total_return_percentage": round(result.summary.total_return_percentage, 6),
                "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
            },
        )
        return result

    def compare_strategies(self, strategy_ids: Sequence[str], config: ConfigInput) -> list[BacktestResult]:
        if not strategy_ids:
            raise ConfigError("strategy_ids must not be empty")
        parsed = coerce_config(config, strategy_id="")
        strategies = [self._strategies.get(strategy_id) for strategy_id in strategy_ids]
        bars = self._load_bars(parsed)

        def _unit(_: int, strategy: Strategy) -> BacktestResult:
            run_config = parsed.model_copy(update={"strategy_id": strategy.id})
            return self._execute(strategy, bars, run_config, self._run_deadline())

        batch = run_units(strategies, _unit, max_workers=self._settings.max_workers)
        error = batch.first_error()
        if error is not None:
            raise error
        results = [outcome.value for outcome in batch.outcomes]
        self._emit(
            "comparison.completed",
            {
                "strategy_ids": list(strategy_ids),
                "ranking": [result.strategy_id for result in rank_results(results)],
            },
        )
        return results

    def optimize_parameters(
        self,
        strategy_id: str,
        config: ConfigInput,
        parameter_ranges: Mapping[str, Any],
        objective: Objective | None = None,
    ) -> OptimizationResult:
        parsed = coerce_config(config, strategy_id=strategy_id)
        strategy = self._strategies.get(strategy_id)
        combinations = generate_combinations(parse_parameter_ranges(parameter_ranges))
        if not combinations:
            raise NoOptimizationResults(NO_RESULTS_MESSAGE)
        bars = self._load_bars(parsed)

        def _evaluate(combination: dict[str, Any], deadline: float | None) -> BacktestResult:
            run_config = parsed.model_copy(update={"parameters": {**parsed.parameters, **combination}})
            return self._execute(strategy, bars, run_config, deadline)

        return optimize(
            _evaluate,
            combinations,
            objective=objective,
            settings=self._settings,
            event_callback=self._event_callback,
        )

    def get_backtest_results(self, strategy_id: str, limit: int = 10) -> list[BacktestResult]:
        if limit <= 0:
            raise ConfigError("limit must be positive")
        if self._result_store is None:
            return []
        return self._result_store.list(strategy_id, limit)
