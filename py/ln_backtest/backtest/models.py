from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Timeframe = Literal["1m", "5m", "15m", "1h", "4h", "1d"]
Side = Literal["b", "s"]

TIMEFRAME_SECONDS: dict[str, int] = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
}


def periods_per_year(timeframe: str) -> float | None:
    seconds = TIMEFRAME_SECONDS.get(timeframe)
    if seconds is None:
        return None
    return (365.0 * 24 * 60 * 60) / float(seconds)


@dataclass(frozen=True)
class Bar:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


class BacktestConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy_id: str = ""
    start_time: datetime
    end_time: datetime
    initial_balance: float = Field(gt=0)
    timeframe: Timeframe = "1h"
    markets: list[str] = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)

    @property
    def market(self) -> str:
        return self.markets[0]


@dataclass(frozen=True)
class Position:
    side: Side
    quantity: float
    entry_price: float
    entry_time: datetime

    @property
    def direction(self) -> float:
        return 1.0 if self.side == "b" else -1.0

    def unrealized_pnl(self, price: float) -> float:
        return self.direction * (price - self.entry_price) * self.quantity


@dataclass(frozen=True)
class Trade:
    id: str
    market: str
    side: Side
    entry_price: float
    exit_price: float
    quantity: float
    entry_time: datetime
    exit_time: datetime
    holding_time: float
    pnl: float
    pnl_percentage: float
    commission: float
    slippage: float
    reason: str

    @property
    def volume(self) -> float:
        return self.entry_price * self.quantity


@dataclass(frozen=True)
class EquityPoint:
    timestamp: datetime
    equity: float
    drawdown: float = 0.0
    drawdown_percentage: float = 0.0


@dataclass(frozen=True)
class SimulationOutput:
    trades: list[Trade]
    equity_curve: list[EquityPoint]
    warmup_period: int


@dataclass(frozen=True)
class BacktestMetrics:
    # performance
    total_return: float = 0.0
    annualized_return: float = 0.0
    volatility: float = 0.0
    annualized_volatility: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percentage: float = 0.0
    recovery_time: float = 0.0
    # trading
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_trade: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    # risk
    var_95: float = 0.0
    var_99: float = 0.0
    expected_shortfall: float = 0.0
    downside_deviation: float = 0.0
    upside_deviation: float = 0.0
    # holding time, hours
    average_holding_time: float = 0.0
    max_holding_time: float = 0.0
    min_holding_time: float = 0.0
    # volume, quote currency
    total_volume: float = 0.0
    average_volume: float = 0.0
    max_volume: float = 0.0
    min_volume: float = 0.0


@dataclass(frozen=True)
class BacktestSummary:
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    total_return: float
    total_return_percentage: float
    max_drawdown: float
    max_drawdown_percentage: float
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float
    profit_factor: float
    average_trade: float
    average_win: float
    average_loss: float
    largest_win: float
    largest_loss: float
    consecutive_wins: int
    consecutive_losses: int
    total_volume: float
    average_holding_time: float


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _decode_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def result_id_for(strategy_id: str, config: BacktestConfig) -> str:
    canonical = json.dumps(
        {"strategy_id": strategy_id, "config": config.model_dump(mode="json")},
        sort_keys=True,
        default=str,
    )
    return "backtest_" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:20]


@dataclass(frozen=True)
class BacktestResult:
    id: str
    strategy_id: str
    config: BacktestConfig
    summary: BacktestSummary
    trades: list[Trade]
    equity_curve: list[EquityPoint]
    metrics: BacktestMetrics
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "strategy_id": self.strategy_id,
            "config": self.config.model_dump(mode="json"),
            "summary": _encode(asdict(self.summary)),
            "trades": [_encode(asdict(trade)) for trade in self.trades],
            "equity_curve": [_encode(asdict(point)) for point in self.equity_curve],
            "metrics": _encode(asdict(self.metrics)),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BacktestResult":
        trades = []
        for row in payload.get("trades", []):
            trades.append(
                Trade(
                    **{
                        **row,
                        "entry_time": _decode_datetime(row["entry_time"]),
                        "exit_time": _decode_datetime(row["exit_time"]),
                    }
                )
            )
        equity_curve = [
            EquityPoint(**{**row, "timestamp": _decode_datetime(row["timestamp"])})
            for row in payload.get("equity_curve", [])
        ]
        metric_names = {item.name for item in fields(BacktestMetrics)}
        metrics = BacktestMetrics(**{k: v for k, v in payload.get("metrics", {}).items() if k in metric_names})
        return cls(
            id=str(payload["id"]),
            strategy_id=str(payload["strategy_id"]),
            config=BacktestConfig.model_validate(payload["config"]),
            summary=BacktestSummary(**payload["summary"]),
            trades=trades,
            equity_curve=equity_curve,
            metrics=metrics,
            created_at=_decode_datetime(payload["created_at"]),
        )


@dataclass(frozen=True)
class SkippedCombination:
    index: int
    parameters: dict[str, Any]
    reason: str


@dataclass(frozen=True)
class OptimizationResult:
    best_result: BacktestResult
    all_results: list[BacktestResult]
    status: Literal["completed", "partial"] = "completed"
    combinations_requested: int = 0
    skipped: list[SkippedCombination] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        best_index = next(
            index for index, result in enumerate(self.all_results) if result is self.best_result
        )
        return {
            "status": self.status,
            "combinations_requested": self.combinations_requested,
            "combinations_evaluated": len(self.all_results),
            "best_index": best_index,
            "best_result": self.best_result.to_dict(),
            "all_results": [result.to_dict() for result in self.all_results],
            "skipped": [asdict(item) for item in self.skipped],
        }
