from __future__ import annotations

import os
import tempfile
import unittest
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import patch

from ln_backtest.backtest.compare import compare_results, rank_results
from ln_backtest.backtest.models import BacktestResult
from ln_backtest.backtest.service import BacktestService
from ln_backtest.config import EngineSettings
from ln_backtest.data.synthetic import SyntheticBarProvider
from ln_backtest.errors import ConfigError, DataUnavailable, NoOptimizationResults, StrategyNotFound
from ln_backtest.observability.log import read_structured_log
from ln_backtest.storage.paths import RuntimePaths
from ln_backtest.storage.sqlite_store import InMemoryResultStore

FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _config(**overrides: Any) -> dict[str, Any]:
    config: dict[str, Any] = {
        "strategy_id": "sma_strategy",
        "start_time": "2025-01-01T00:00:00Z",
        "end_time": "2025-01-31T00:00:00Z",
        "initial_balance": 100000,
        "timeframe": "1h",
        "markets": ["btcusd"],
        "parameters": {"smaPeriod": 20},
    }
    config.update(overrides)
    return config


class _FailingStore:
    def save(self, result: BacktestResult) -> None:
        raise RuntimeError("disk full")

    def list(self, strategy_id: str, limit: int = 10) -> list[BacktestResult]:
        return []


class BacktestServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.store = InMemoryResultStore()
        self.service = BacktestService(
            SyntheticBarProvider(seed=42),
            result_store=self.store,
            settings=EngineSettings(max_workers=2),
            event_callback=self.events.append,
            clock=lambda: FIXED_NOW,
        )

    def test_run_backtest_produces_consistent_result(self) -> None:
        result = self.service.run_backtest(_config())

        self.assertTrue(result.id.startswith("backtest_"))
        self.assertEqual(result.strategy_id, "sma_strategy")
        self.assertEqual(result.config.markets, ["btcusd"])
        self.assertEqual(result.created_at, FIXED_NOW)
        # 30 days of hourly bars minus the 20-bar warmup
        self.assertEqual(len(result.equity_curve), 30 * 24 - 20)

        self.assertAlmostEqual(sum(trade.pnl for trade in result.trades), result.metrics.total_return, places=6)
        self.assertEqual(result.summary.total_trades, len(result.trades))
        self.assertGreaterEqual(result.summary.win_rate, 0.0)
        self.assertLessEqual(result.summary.win_rate, 1.0)
        self.assertGreaterEqual(result.metrics.max_drawdown_percentage, 0.0)
        self.assertLessEqual(result.metrics.max_drawdown_percentage, 100.0)
        self.assertAlmostEqual(
            result.summary.total_return_percentage,
            result.metrics.total_return / 100000 * 100,
        )

        timestamps = [point.timestamp for point in result.equity_curve]
        self.assertEqual(timestamps, sorted(timestamps))
        for trade in result.trades:
            self.assertIn(trade.side, ("b", "s"))
            self.assertGreater(trade.entry_price, 0)
            self.assertGreater(trade.quantity, 0)
            self.assertGreaterEqual(trade.commission, 0)
            self.assertGreater(trade.exit_time, trade.entry_time)

        events = [event["event"] for event in self.events]
        self.assertEqual(events, ["backtest.run.started", "backtest.run.completed"])
        self.assertEqual(self.service.get_backtest_results("sma_strategy"), [result])

    def test_identical_runs_are_deterministic(self) -> None:
        first = self.service.run_backtest(_config())
        second = self.service.run_backtest(_config())
        self.assertEqual(first.to_dict(), second.to_dict())

    def test_round_trip_through_dict(self) -> None:
        result = self.service.run_backtest(_config())
        restored = BacktestResult.from_dict(result.to_dict())
        self.assertEqual(restored.to_dict(), result.to_dict())

    def test_empty_window_reports_no_data(self) -> None:
        with self.assertRaises(DataUnavailable) as ctx:
            self.service.run_backtest(_config(end_time="2025-01-01T00:00:00Z"))
        self.assertIn("No historical data available", str(ctx.exception))

    def test_unknown_strategy(self) -> None:
        with self.assertRaises(StrategyNotFound) as ctx:
            self.service.run_backtest(_config(strategy_id="invalid_strategy"))
        self.assertEqual(str(ctx.exception), "Strategy invalid_strategy not found")

    def test_invalid_config_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            self.service.run_backtest(_config(markets=[]))
        with self.assertRaises(ConfigError):
            self.service.run_backtest(_config(initial_balance=0))
        with self.assertRaises(ConfigError):
            self.service.run_backtest(_config(timeframe="3h"))
        with self.assertRaises(ConfigError):
            self.service.run_backtest(_config(parameters={"smaPeriod": 0}))

    def test_save_failure_does_not_fail_run(self) -> None:
        service = BacktestService(
            SyntheticBarProvider(seed=42),
            result_store=_FailingStore(),
            event_callback=self.events.append,
        )
        result = service.run_backtest(_config())
        self.assertGreater(len(result.equity_curve), 0)
        failures = [event for event in self.events if event["event"] == "backtest.save.failed"]
        self.assertEqual(len(failures), 1)
        self.assertEqual(failures[0]["error"], "disk full")

    def test_save_failure_without_callback_goes_to_structured_log(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, patch.dict(os.environ, {"LN_BACKTEST_HOME": tmp}):
            service = BacktestService(SyntheticBarProvider(seed=42), result_store=_FailingStore())
            result = service.run_backtest(_config())

            rows = read_structured_log(RuntimePaths(root=Path(tmp)))
        failures = [row for row in rows if row["event_type"] == "backtest.save.failed"]
        self.assertEqual(len(failures), 1)
        self.assertEqual(failures[0]["result_id"], result.id)
        self.assertEqual(failures[0]["error_type"], "RuntimeError")

    def test_results_without_store(self) -> None:
        service = BacktestService(SyntheticBarProvider(seed=42))
        service.run_backtest(_config())
        self.assertEqual(service.get_backtest_results("sma_strategy"), [])
        with self.assertRaises(ConfigError):
            service.get_backtest_results("sma_strategy", limit=0)

    def test_results_are_newest_first_and_limited(self) -> None:
        short = self.service.run_backtest(_config(parameters={"smaPeriod": 10}))
        long = self.service.run_backtest(_config(parameters={"smaPeriod": 30}))
        self.assertEqual(self.service.get_backtest_results("sma_strategy", limit=1), [long])
        self.assertEqual(self.service.get_backtest_results("sma_strategy"), [long, short])
        self.assertEqual(self.service.get_backtest_results("sma_crossover"), [])


class CompareStrategiesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.service = BacktestService(
            SyntheticBarProvider(seed=11),
            settings=EngineSettings(max_workers=2),
            event_callback=self.events.append,
            clock=lambda: FIXED_NOW,
        )

    def test_results_follow_requested_order(self) -> None:
        results = self.service.compare_strategies(["sma_crossover", "sma_strategy"], _config(parameters={}))
        self.assertEqual([result.strategy_id for result in results], ["sma_crossover", "sma_strategy"])
        self.assertEqual(results[0].config.strategy_id, "sma_crossover")

        completed = [event for event in self.events if event["event"] == "comparison.completed"]
        self.assertEqual(len(completed), 1)
        self.assertEqual(
            completed[0]["ranking"],
            [result.strategy_id for result in rank_results(results)],
        )

    def test_each_result_matches_a_single_run(self) -> None:
        compared = self.service.compare_strategies(["sma_strategy"], _config(parameters={}))
        single = self.service.run_backtest(_config(parameters={}))
        self.assertEqual(compared[0].to_dict(), single.to_dict())

    def test_unknown_strategy_fails_whole_comparison(self) -> None:
        with self.assertRaises(StrategyNotFound):
            self.service.compare_strategies(["sma_strategy", "unknown"], _config())

    def test_empty_strategy_list(self) -> None:
        with self.assertRaises(ConfigError):
            self.service.compare_strategies([], _config())

    def test_rank_results_by_metric_direction(self) -> None:
        results = self.service.compare_strategies(["sma_strategy", "sma_crossover"], _config(parameters={}))
        by_drawdown = rank_results(results, "max_drawdown_percentage")
        self.assertLessEqual(
            by_drawdown[0].metrics.max_drawdown_percentage, by_drawdown[1].metrics.max_drawdown_percentage
        )
        with self.assertRaises(ConfigError) as ctx:
            rank_results(results, "sharp_ratio")
        self.assertIn("unknown objective metric", str(ctx.exception))

    def test_compare_results_explains_parameter_change(self) -> None:
        baseline = self.service.run_backtest(_config(parameters={"smaPeriod": 10}))
        candidate = self.service.run_backtest(_config(parameters={"smaPeriod": 30}))
        report = compare_results(baseline, candidate)
        self.assertEqual(report["baseline"]["result_id"], baseline.id)
        self.assertAlmostEqual(
            report["metrics_delta"]["total_return"],
            candidate.metrics.total_return - baseline.metrics.total_return,
        )
        self.assertTrue(any("smaPeriod" in note for note in report["likely_causes"]))


class OptimizeParametersTests(unittest.TestCase):
    RANGES = {
        "smaPeriod": {"min": 10, "max": 30, "step": 10},
        "stopLoss": {"min": 0.01, "max": 0.03, "step": 0.01},
    }

    def _service(self, max_workers: int, events: list[dict[str, Any]] | None = None) -> BacktestService:
        return BacktestService(
            SyntheticBarProvider(seed=42),
            settings=EngineSettings(max_workers=max_workers),
            event_callback=events.append if events is not None else None,
            clock=lambda: FIXED_NOW,
        )

    def test_grid_search_picks_first_best_sharpe(self) -> None:
        events: list[dict[str, Any]] = []
        outcome = self._service(4, events).optimize_parameters("sma_strategy", _config(), self.RANGES)

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(outcome.combinations_requested, 9)
        self.assertEqual(len(outcome.all_results), 9)
        self.assertEqual(outcome.skipped, [])

        sharpes = [result.metrics.sharpe_ratio for result in outcome.all_results]
        self.assertEqual(outcome.best_result.metrics.sharpe_ratio, max(sharpes))
        self.assertIs(outcome.best_result, outcome.all_results[sharpes.index(max(sharpes))])
        # stopLoss is inert without protective exits, so ties go to the lowest stopLoss
        self.assertEqual(outcome.best_result.config.parameters["stopLoss"], 0.01)

        params = [result.config.parameters for result in outcome.all_results]
        self.assertEqual(params[0], {"smaPeriod": 10, "stopLoss": 0.01})
        self.assertEqual(params[-1], {"smaPeriod": 30, "stopLoss": 0.03})

        names = [event["event"] for event in events]
        self.assertEqual(names.count("optimization.candidate.evaluated"), 9)
        self.assertEqual(names[-1], "optimization.completed")

    def test_worker_count_does_not_change_outcome(self) -> None:
        sequential = self._service(1).optimize_parameters("sma_strategy", _config(), self.RANGES)
        parallel = self._service(4).optimize_parameters("sma_strategy", _config(), self.RANGES)
        self.assertEqual(sequential.to_dict(), parallel.to_dict())

    def test_optimize_by_other_metric(self) -> None:
        outcome = self._service(2).optimize_parameters(
            "sma_strategy", _config(), {"smaPeriod": {"min": 10, "max": 30, "step": 10}}, objective="total_return"
        )
        returns = [result.metrics.total_return for result in outcome.all_results]
        self.assertEqual(outcome.best_result.metrics.total_return, max(returns))

    def test_empty_grid(self) -> None:
        with self.assertRaises(NoOptimizationResults) as ctx:
            self._service(1).optimize_parameters("sma_strategy", _config(), {})
        self.assertEqual(str(ctx.exception), "No optimization results found")
        with self.assertRaises(NoOptimizationResults):
            self._service(1).optimize_parameters(
                "sma_strategy", _config(), {"smaPeriod": {"min": 30, "max": 10, "step": 10}}
            )

    def test_invalid_combinations_are_skipped(self) -> None:
        outcome = self._service(2).optimize_parameters(
            "sma_crossover",
            _config(parameters={}),
            {"shortWindow": {"min": 5, "max": 15, "step": 5}, "longWindow": {"min": 10, "max": 10, "step": 1}},
        )
        self.assertEqual(len(outcome.all_results), 1)
        self.assertEqual([item.index for item in outcome.skipped], [1, 2])
        self.assertIn("shortWindow must be less than longWindow", outcome.skipped[0].reason)

    def test_unknown_strategy(self) -> None:
        with self.assertRaises(StrategyNotFound):
            self._service(1).optimize_parameters("unknown", _config(), self.RANGES)

    def test_optimization_result_serialises(self) -> None:
        outcome = self._service(2).optimize_parameters(
            "sma_strategy", _config(), {"smaPeriod": {"min": 10, "max": 20, "step": 10}}
        )
        payload = outcome.to_dict()
        self.assertEqual(payload["combinations_evaluated"], 2)
        self.assertEqual(payload["all_results"][payload["best_index"]]["id"], outcome.best_result.id)
        self.assertEqual(payload["best_result"]["summary"], asdict(outcome.best_result.summary))


if __name__ == "__main__":
    unittest.main()
