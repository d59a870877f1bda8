from __future__ import annotations

import math
import time
from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

from ln_backtest.backtest.models import BacktestConfig, Bar, EquityPoint, Position, SimulationOutput, Trade
from ln_backtest.backtest.stats import ratio_or_zero, running_drawdowns
from ln_backtest.config import EngineSettings
from ln_backtest.errors import DataUnavailable, RunTimeout
from ln_backtest.strategy.models import BarWindow, Signal, Strategy

NO_DATA_MESSAGE = "No historical data available for the specified period"

REASON_SIGNAL = "Strategy signal"
REASON_STOP_LOSS = "Stop loss"
REASON_TAKE_PROFIT = "Take profit"
REASON_END = "End of backtest"


def _hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


class _Ledger:
    """Cash balance, the open position and closed trades for one simulation."""

    def __init__(self, market: str, balance: float, settings: EngineSettings) -> None:
        self.market = market
        self.balance = balance
        self.settings = settings
        self.position: Position | None = None
        self.trades: list[Trade] = []

    def open(self, side: str, bar: Bar) -> None:
        quantity = math.floor(self.balance * self.settings.allocation_fraction / bar.close) if bar.close > 0 else 0
        if quantity <= 0:
            return
        self.position = Position(side=side, quantity=float(quantity), entry_price=bar.close, entry_time=bar.timestamp)

    def close(self, bar: Bar, reason: str) -> None:
        position = self.position
        if position is None:
            return
        exit_price = bar.close
        notional = exit_price * position.quantity
        commission = notional * self.settings.commission_rate
        slippage = notional * self.settings.slippage_rate
        pnl = position.unrealized_pnl(exit_price) - commission - slippage
        self.balance += pnl
        self.trades.append(
            Trade(
                id=f"trade_{len(self.trades) + 1}",
                market=self.market,
                side=position.side,
                entry_price=position.entry_price,
                exit_price=exit_price,
                quantity=position.quantity,
                entry_time=position.entry_time,
                exit_time=bar.timestamp,
                holding_time=_hours_between(position.entry_time, bar.timestamp),
                pnl=pnl,
                pnl_percentage=ratio_or_zero(pnl, position.entry_price * position.quantity) * 100.0,
                commission=commission,
                slippage=slippage,
                reason=reason,
            )
        )
        self.position = None

    def equity(self, price: float) -> float:
        if self.position is None:
            return self.balance
        return self.balance + self.position.unrealized_pnl(price)


def _protective_exit(position: Position, price: float, parameters: Mapping[str, Any]) -> str | None:
    move = position.direction * (price - position.entry_price) / position.entry_price
    stop_loss = parameters.get("stopLoss")
    take_profit = parameters.get("takeProfit")
    if stop_loss is not None and float(stop_loss) > 0 and move <= -float(stop_loss):
        return REASON_STOP_LOSS
    if take_profit is not None and float(take_profit) > 0 and move >= float(take_profit):
        return REASON_TAKE_PROFIT
    return None


def _apply_signal(ledger: _Ledger, signal: Signal, bar: Bar, settings: EngineSettings) -> None:
    position = ledger.position
    if position is None:
        if signal == "buy":
            ledger.open("b", bar)
        elif signal == "sell" and settings.allow_short:
            ledger.open("s", bar)
        return
    if (position.side == "b" and signal == "sell") or (position.side == "s" and signal == "buy"):
        ledger.close(bar, REASON_SIGNAL)


def simulate(
    bars: Sequence[Bar],
    strategy: Strategy,
    config: BacktestConfig,
    settings: EngineSettings | None = None,
    parameters: Mapping[str, Any] | None = None,
    deadline: float | None = None,
) -> SimulationOutput:
    """Replay ``bars`` through ``strategy`` and return the trade ledger and equity curve.

    ``parameters`` must already be resolved against the strategy schema; when omitted
    they are resolved from ``config.parameters``. ``deadline`` is a ``time.monotonic()``
    value after which the run aborts with ``RunTimeout``.
    """
    settings = settings or EngineSettings()
    if not bars:
        raise DataUnavailable(NO_DATA_MESSAGE)
    if parameters is None:
        parameters = strategy.resolve_parameters(config.parameters)

    warmup = strategy.warmup_period(parameters)
    if warmup < 0:
        raise ValueError(f"strategy {strategy.id} reported a negative warmup period")
    if len(bars) < warmup + 1:
        raise DataUnavailable(
            f"Not enough historical data: strategy {strategy.id} needs at least {warmup + 1} bars, got {len(bars)}"
        )

    ledger = _Ledger(config.market, config.initial_balance, settings)
    raw_curve: list[EquityPoint] = []

    for idx in range(warmup, len(bars)):
        if deadline is not None and time.monotonic() > deadline:
            raise RunTimeout(f"backtest of {strategy.id} exceeded its deadline at bar {idx} of {len(bars)}")

        bar = bars[idx]
        if settings.protective_exits and ledger.position is not None:
            reason = _protective_exit(ledger.position, bar.close, parameters)
            if reason is not None:
                ledger.close(bar, reason)

        signal = strategy.evaluate(BarWindow(bars, idx + 1), parameters)
        _apply_signal(ledger, signal, bar, settings)

        if settings.close_at_end and idx == len(bars) - 1 and ledger.position is not None:
            if ledger.position.entry_time < bar.timestamp:
                ledger.close(bar, REASON_END)
            else:
                # opened on the final bar: nothing to realise
                ledger.position = None

        raw_curve.append(EquityPoint(timestamp=bar.timestamp, equity=ledger.equity(bar.close)))

    drawdowns = running_drawdowns([point.equity for point in raw_curve])
    equity_curve = [
        replace(point, drawdown=drawdown, drawdown_percentage=percentage)
        for point, (drawdown, percentage) in zip(raw_curve, drawdowns)
    ]
    return SimulationOutput(trades=ledger.trades, equity_curve=equity_curve, warmup_period=warmup)
