from __future__ import annotations


class BacktestError(ValueError):
    """Base class for every error raised by the backtesting engine."""


class ConfigError(BacktestError):
    pass


class DataUnavailable(BacktestError):
    pass


class StrategyNotFound(BacktestError):
    pass


class NoOptimizationResults(BacktestError):
    pass


class RunTimeout(BacktestError):
    pass


class ComputationDegenerate(BacktestError):
    """Numeric reduction hit a degenerate input; callers resolve it to 0."""
