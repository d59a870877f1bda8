from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ln_backtest.backtest.compare import rank_results
from ln_backtest.backtest.models import BacktestResult, TIMEFRAME_SECONDS
from ln_backtest.backtest.optimizer import resolve_objective
from ln_backtest.backtest.ports import HistoricalDataProvider
from ln_backtest.backtest.service import BacktestService
from ln_backtest.config import settings_from_env
from ln_backtest.data.importer import import_bars_file
from ln_backtest.data.synthetic import SyntheticBarProvider
from ln_backtest.errors import BacktestError, ConfigError
from ln_backtest.observability.context import trace_scope
from ln_backtest.observability.log import structured_log_callback, write_structured_log
from ln_backtest.storage.duckdb_store import DuckDBBarProvider, count_bars
from ln_backtest.storage.paths import RuntimePaths
from ln_backtest.storage.sqlite_store import SqliteResultStore, init_db, list_result_summaries
from ln_backtest.strategy.registry import default_registry


def _parse_scalar(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _parse_assignments(values: list[str] | None, label: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for item in values or []:
        if "=" not in item:
            raise ConfigError(f"{label} must look like name=value: {item}")
        key, raw = item.split("=", 1)
        result[key.strip()] = _parse_scalar(raw.strip())
    return result


def _parse_ranges(values: list[str] | None) -> dict[str, dict[str, Any]]:
    ranges: dict[str, dict[str, Any]] = {}
    for item in values or []:
        if "=" not in item:
            raise ConfigError(f"--range must look like name=min:max:step: {item}")
        key, raw = item.split("=", 1)
        parts = raw.split(":")
        if len(parts) != 3:
            raise ConfigError(f"--range must look like name=min:max:step: {item}")
        ranges[key.strip()] = {
            "min": _parse_scalar(parts[0]),
            "max": _parse_scalar(parts[1]),
            "step": _parse_scalar(parts[2]),
        }
    return ranges


def _paths(args: argparse.Namespace) -> RuntimePaths:
    if args.runtime_home:
        return RuntimePaths(root=Path(args.runtime_home))
    return RuntimePaths.from_env()


def _provider(args: argparse.Namespace, paths: RuntimePaths) -> HistoricalDataProvider:
    if args.source == "duckdb":
        return DuckDBBarProvider(paths)
    return SyntheticBarProvider(seed=args.seed)


def _service(args: argparse.Namespace) -> BacktestService:
    paths = _paths(args)
    return BacktestService(
        _provider(args, paths),
        default_registry(),
        SqliteResultStore(paths),
        settings=settings_from_env(),
        event_callback=structured_log_callback(paths),
    )


def _config(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "strategy_id": getattr(args, "strategy_id", "") or "",
        "start_time": args.start,
        "end_time": args.end,
        "initial_balance": args.initial_balance,
        "timeframe": args.timeframe,
        "markets": [args.market],
        "parameters": _parse_assignments(args.param, "--param"),
    }


def _result_view(result: BacktestResult, full: bool) -> dict[str, Any]:
    if full:
        return result.to_dict()
    return {
        "result_id": result.id,
        "strategy_id": result.strategy_id,
        "parameters": result.config.parameters,
        "summary": asdict(result.summary),
        "metrics": asdict(result.metrics),
    }


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_import(args: argparse.Namespace) -> None:
    result = import_bars_file(Path(args.path), _paths(args), market=args.market, timeframe=args.timeframe)
    _print(asdict(result))


def cmd_run(args: argparse.Namespace) -> None:
    result = _service(args).run_backtest(_config(args))
    _print(_result_view(result, args.full))


def cmd_compare(args: argparse.Namespace) -> None:
    objective, _ = resolve_objective(args.objective)
    results = _service(args).compare_strategies(args.strategy_ids, _config(args))
    _print(
        {
            "results": [_result_view(result, args.full) for result in results],
            "ranking": [result.strategy_id for result in rank_results(results, objective)],
        }
    )


def cmd_optimize(args: argparse.Namespace) -> None:
    objective, _ = resolve_objective(args.objective)
    optimization = _service(args).optimize_parameters(
        args.strategy_id,
        _config(args),
        _parse_ranges(args.range),
        objective=objective,
    )
    _print(
        {
            "status": optimization.status,
            "combinations_requested": optimization.combinations_requested,
            "best_result": _result_view(optimization.best_result, args.full),
            "all_results": [
                {
                    "result_id": result.id,
                    "parameters": result.config.parameters,
                    objective: getattr(result.metrics, objective),
                }
                for result in optimization.all_results
            ],
            "skipped": [asdict(item) for item in optimization.skipped],
        }
    )


def cmd_results(args: argparse.Namespace) -> None:
    paths = _paths(args)
    if args.id:
        _print(_result_view(SqliteResultStore(paths).get(args.id), args.full))
        return
    if args.summary:
        init_db(paths)
        _print(list_result_summaries(paths, args.strategy_id, args.limit))
        return
    if not args.strategy_id:
        raise ConfigError("results needs --strategy-id, --id or --summary")
    results = _service(args).get_backtest_results(args.strategy_id, args.limit)
    _print([_result_view(result, args.full) for result in results])


def cmd_bars(args: argparse.Namespace) -> None:
    _print(
        {
            "market": args.market,
            "timeframe": args.timeframe,
            "bars": count_bars(_paths(args), args.market, args.timeframe),
        }
    )


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--market", default="btcusd")
    parser.add_argument("--start", required=True, help="ISO-8601 start time")
    parser.add_argument("--end", required=True, help="ISO-8601 end time")
    parser.add_argument("--initial-balance", type=float, default=100000.0)
    parser.add_argument("--timeframe", choices=sorted(TIMEFRAME_SECONDS), default="1h")
    parser.add_argument("--param", action="append", help="strategy parameter, name=value (repeatable)")
    parser.add_argument("--full", action="store_true", help="print trades and equity curve too")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ln-backtest")
    parser.add_argument("--runtime-home", help="runtime directory; defaults to LN_BACKTEST_HOME or .lnbacktest")
    parser.add_argument("--source", choices=["synthetic", "duckdb"], default="duckdb")
    parser.add_argument("--seed", type=int, default=7, help="seed for --source synthetic")
    sub = parser.add_subparsers(required=True)

    import_cmd = sub.add_parser("import-bars")
    import_cmd.add_argument("path")
    import_cmd.add_argument("--market", help="market for every row; otherwise read from a market column")
    import_cmd.add_argument("--timeframe", choices=sorted(TIMEFRAME_SECONDS), default="1h")
    import_cmd.set_defaults(func=cmd_import)

    run_cmd = sub.add_parser("run")
    run_cmd.add_argument("--strategy-id", default="sma_strategy")
    _add_run_options(run_cmd)
    run_cmd.set_defaults(func=cmd_run)

    compare_cmd = sub.add_parser("compare")
    compare_cmd.add_argument("strategy_ids", nargs="+")
    compare_cmd.add_argument("--objective", default="sharpe_ratio")
    _add_run_options(compare_cmd)
    compare_cmd.set_defaults(func=cmd_compare)

    optimize_cmd = sub.add_parser("optimize")
    optimize_cmd.add_argument("--strategy-id", default="sma_strategy")
    optimize_cmd.add_argument("--range", action="append", required=True, help="name=min:max:step (repeatable)")
    optimize_cmd.add_argument("--objective", default="sharpe_ratio")
    _add_run_options(optimize_cmd)
    optimize_cmd.set_defaults(func=cmd_optimize)

    results_cmd = sub.add_parser("results")
    results_cmd.add_argument("--strategy-id")
    results_cmd.add_argument("--id", help="print one stored result by id")
    results_cmd.add_argument("--summary", action="store_true", help="list summaries only, newest first")
    results_cmd.add_argument("--limit", type=int, default=10)
    results_cmd.add_argument("--full", action="store_true")
    results_cmd.set_defaults(func=cmd_results)

    bars_cmd = sub.add_parser("bars", help="count stored bars for a market")
    bars_cmd.add_argument("--market", required=True)
    bars_cmd.add_argument("--timeframe", choices=sorted(TIMEFRAME_SECONDS))
    bars_cmd.set_defaults(func=cmd_bars)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    paths = _paths(args)
    with trace_scope():
        try:
            args.func(args)
        except BacktestError as exc:
            write_structured_log(paths, "cli.error", {"command": args.func.__name__, "error": str(exc)})
            print(f"error: {exc}", file=sys.stderr)
            return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
