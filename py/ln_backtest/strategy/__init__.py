from ln_backtest.strategy.models import BarWindow, ParameterSpec, Signal, Strategy
from ln_backtest.strategy.registry import StrategyRegistry, default_registry
from ln_backtest.strategy.sma import SMA_CROSSOVER, SMA_STRATEGY

__all__ = [
    "BarWindow",
    "ParameterSpec",
    "SMA_CROSSOVER",
    "SMA_STRATEGY",
    "Signal",
    "Strategy",
    "StrategyRegistry",
    "default_registry",
]
