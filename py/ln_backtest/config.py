from __future__ import annotations

import os
from dataclasses import dataclass, field

from ln_backtest.errors import ConfigError

ENV_PREFIX = "LN_BACKTEST_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _default_workers() -> int:
    return max(1, min(8, os.cpu_count() or 1))


@dataclass(frozen=True)
class EngineSettings:
    commission_rate: float = 0.001
    allocation_fraction: float = 0.95
    slippage_rate: float = 0.0
    allow_short: bool = False
    close_at_end: bool = False
    protective_exits: bool = False
    max_workers: int = field(default_factory=_default_workers)
    run_timeout_seconds: float | None = None
    optimization_budget_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.commission_rate < 0:
            raise ConfigError("commission_rate must be >= 0")
        if self.slippage_rate < 0:
            raise ConfigError("slippage_rate must be >= 0")
        if not 0 < self.allocation_fraction <= 1:
            raise ConfigError("allocation_fraction must be in (0, 1]")
        if self.max_workers <= 0:
            raise ConfigError("max_workers must be positive")
        if self.run_timeout_seconds is not None and self.run_timeout_seconds <= 0:
            raise ConfigError("run_timeout_seconds must be positive")
        if self.optimization_budget_seconds is not None and self.optimization_budget_seconds <= 0:
            raise ConfigError("optimization_budget_seconds must be positive")


def _raw_env(name: str) -> str:
    return os.environ.get(ENV_PREFIX + name, "").strip()


def _read_float_env(name: str, default: float | None) -> float | None:
    raw = _raw_env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"invalid {ENV_PREFIX}{name}: {raw}") from exc


def _read_int_env(name: str, default: int) -> int:
    raw = _raw_env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"invalid {ENV_PREFIX}{name}: {raw}") from exc


def _read_bool_env(name: str, default: bool) -> bool:
    raw = _raw_env(name).lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ConfigError(f"invalid {ENV_PREFIX}{name}: {raw}; expected true/false")


def settings_from_env() -> EngineSettings:
    defaults = EngineSettings()
    return EngineSettings(
        commission_rate=_read_float_env("COMMISSION_RATE", defaults.commission_rate),
        allocation_fraction=_read_float_env("ALLOCATION_FRACTION", defaults.allocation_fraction),
        slippage_rate=_read_float_env("SLIPPAGE_RATE", defaults.slippage_rate),
        allow_short=_read_bool_env("ALLOW_SHORT", defaults.allow_short),
        close_at_end=_read_bool_env("CLOSE_AT_END", defaults.close_at_end),
        protective_exits=_read_bool_env("PROTECTIVE_EXITS", defaults.protective_exits),
        max_workers=_read_int_env("MAX_WORKERS", defaults.max_workers),
        run_timeout_seconds=_read_float_env("RUN_TIMEOUT_SECONDS", None),
        optimization_budget_seconds=_read_float_env("OPTIMIZATION_BUDGET_SECONDS", None),
    )
