from __future__ import annotations

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from ln_backtest.cli import main
from ln_backtest.observability.log import read_structured_log
from ln_backtest.storage.paths import RuntimePaths

WINDOW = ["--start", "2025-01-01T00:00:00Z", "--end", "2025-01-08T00:00:00Z"]


def _run(argv: list[str]) -> tuple[int, str, str]:
    out, err = io.StringIO(), io.StringIO()
    with redirect_stdout(out), redirect_stderr(err):
        code = main(argv)
    return code, out.getvalue(), err.getvalue()


class CliTests(unittest.TestCase):
    def test_run_then_list_results(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = ["--runtime-home", tmp, "--source", "synthetic", "--seed", "4"]
            code, out, _ = _run([*base, "run", *WINDOW, "--param", "smaPeriod=10"])
            self.assertEqual(code, 0)
            payload = json.loads(out)
            self.assertEqual(payload["strategy_id"], "sma_strategy")
            self.assertEqual(payload["parameters"], {"smaPeriod": 10})
            self.assertIn("sharpe_ratio", payload["metrics"])

            code, out, _ = _run([*base, "results", "--strategy-id", "sma_strategy"])
            self.assertEqual(code, 0)
            listed = json.loads(out)
            self.assertEqual([row["result_id"] for row in listed], [payload["result_id"]])

            events = [row["event_type"] for row in read_structured_log(RuntimePaths(root=Path(tmp)))]
            self.assertIn("backtest.run.completed", events)

    def test_compare_and_optimize(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = ["--runtime-home", tmp, "--source", "synthetic"]
            code, out, _ = _run([*base, "compare", "sma_strategy", "sma_crossover", *WINDOW])
            self.assertEqual(code, 0)
            payload = json.loads(out)
            self.assertEqual([row["strategy_id"] for row in payload["results"]], ["sma_strategy", "sma_crossover"])
            self.assertEqual(sorted(payload["ranking"]), ["sma_crossover", "sma_strategy"])

            code, out, _ = _run([*base, "optimize", *WINDOW, "--range", "smaPeriod=10:30:10"])
            self.assertEqual(code, 0)
            payload = json.loads(out)
            self.assertEqual(payload["status"], "completed")
            self.assertEqual(payload["combinations_requested"], 3)
            self.assertEqual(len(payload["all_results"]), 3)

    def test_import_then_backtest_from_duckdb(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            csv_path = Path(tmp) / "bars.csv"
            start = datetime(2025, 1, 1, tzinfo=timezone.utc)
            lines = ["timestamp,open,high,low,close,volume"]
            for idx in range(96):
                ts = (start + timedelta(hours=idx)).strftime("%Y-%m-%d %H:%M:%S")
                close = 100 + (idx % 9) - (idx % 4)
                lines.append(f"{ts},{close},{close + 1},{close - 1},{close},10")
            csv_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

            base = ["--runtime-home", tmp]
            code, out, _ = _run([*base, "import-bars", str(csv_path), "--market", "btcusd"])
            self.assertEqual(code, 0)
            self.assertEqual(json.loads(out)["rows_inserted"], 96)

            code, out, _ = _run(
                [*base, "run", "--start", "2025-01-01T00:00:00Z", "--end", "2025-01-05T00:00:00Z", "--param", "smaPeriod=5", "--full"]
            )
            self.assertEqual(code, 0)
            payload = json.loads(out)
            self.assertEqual(len(payload["equity_curve"]), 96 - 5)

    def test_errors_exit_with_code_two(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = ["--runtime-home", tmp, "--source", "synthetic"]
            code, _, err = _run([*base, "run", "--strategy-id", "unknown", *WINDOW])
            self.assertEqual(code, 2)
            self.assertIn("Strategy unknown not found", err)

            code, _, err = _run([*base, "optimize", *WINDOW, "--range", "smaPeriod=10"])
            self.assertEqual(code, 2)
            self.assertIn("--range", err)

            rows = read_structured_log(RuntimePaths(root=Path(tmp)))
            errors = [row for row in rows if row["event_type"] == "cli.error"]
            self.assertEqual(len(errors), 2)
            self.assertEqual(errors[0]["command"], "cmd_run")

    def test_results_by_id_and_summaries(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = ["--runtime-home", tmp, "--source", "synthetic"]
            code, out, _ = _run([*base, "run", *WINDOW])
            self.assertEqual(code, 0)
            result_id = json.loads(out)["result_id"]

            code, out, _ = _run([*base, "results", "--id", result_id])
            self.assertEqual(code, 0)
            self.assertEqual(json.loads(out)["result_id"], result_id)

            code, out, _ = _run([*base, "results", "--summary"])
            self.assertEqual(code, 0)
            summaries = json.loads(out)
            self.assertEqual([row["result_id"] for row in summaries], [result_id])
            self.assertIn("total_trades", summaries[0]["summary"])

            code, _, err = _run([*base, "results", "--id", "backtest_missing"])
            self.assertEqual(code, 2)
            self.assertIn("backtest_result not found", err)

            code, _, err = _run([*base, "results"])
            self.assertEqual(code, 2)
            self.assertIn("--strategy-id", err)

    def test_runtime_home_defaults_to_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmp, patch.dict(os.environ, {"LN_BACKTEST_HOME": tmp}):
            code, _, _ = _run(["--source", "synthetic", "run", *WINDOW])
            self.assertEqual(code, 0)
            paths = RuntimePaths(root=Path(tmp))
            self.assertTrue(paths.sqlite_path.exists())
            events = [row["event_type"] for row in read_structured_log(paths)]
            self.assertIn("backtest.run.completed", events)

    def test_bars_counts_imported_rows(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            csv_path = Path(tmp) / "bars.csv"
            lines = ["timestamp,open,high,low,close,volume"]
            for idx in range(12):
                lines.append(f"2025-01-01 {idx:02d}:00:00,100,101,99,100,10")
            csv_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

            base = ["--runtime-home", tmp]
            code, _, _ = _run([*base, "import-bars", str(csv_path), "--market", "btcusd"])
            self.assertEqual(code, 0)

            code, out, _ = _run([*base, "bars", "--market", "btcusd"])
            self.assertEqual(code, 0)
            self.assertEqual(json.loads(out)["bars"], 12)
            code, out, _ = _run([*base, "bars", "--market", "btcusd", "--timeframe", "4h"])
            self.assertEqual(json.loads(out)["bars"], 0)
            code, out, _ = _run([*base, "bars", "--market", "ethusd"])
            self.assertEqual(json.loads(out)["bars"], 0)

    def test_unknown_compare_objective_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = ["--runtime-home", tmp, "--source", "synthetic"]
            code, out, err = _run([*base, "compare", "sma_strategy", "sma_crossover", *WINDOW, "--objective", "sharp_ratio"])
            self.assertEqual(code, 2)
            self.assertEqual(out, "")
            self.assertIn("unknown objective metric", err)

    def test_empty_duckdb_reports_no_data(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            code, _, err = _run(["--runtime-home", tmp, "run", *WINDOW])
            self.assertEqual(code, 2)
            self.assertIn("No historical data available", err)


if __name__ == "__main__":
    unittest.main()
