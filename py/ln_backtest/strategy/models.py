from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, overload

from ln_backtest.backtest.models import Bar
from ln_backtest.errors import ConfigError

Signal = Literal["buy", "sell", "hold"]
SIGNALS: tuple[Signal, ...] = ("buy", "sell", "hold")


class BarWindow(Sequence[Bar]):
    """Read-only prefix ``bars[0:end]`` that avoids copying the history on every bar."""

    __slots__ = ("_bars", "_end")

    def __init__(self, bars: Sequence[Bar], end: int) -> None:
        if end < 0 or end > len(bars):
            raise ValueError(f"window end {end} outside 0..{len(bars)}")
        self._bars = bars
        self._end = end

    def __len__(self) -> int:
        return self._end

    @overload
    def __getitem__(self, index: int) -> Bar: ...

    @overload
    def __getitem__(self, index: slice) -> list[Bar]: ...

    def __getitem__(self, index: int | slice) -> Bar | list[Bar]:
        if isinstance(index, slice):
            return [self._bars[i] for i in range(*index.indices(self._end))]
        if index < 0:
            index += self._end
        if index < 0 or index >= self._end:
            raise IndexError("bar window index out of range")
        return self._bars[index]

    @property
    def last(self) -> Bar:
        return self[-1]

    def closes(self, count: int) -> list[float]:
        """The last ``count`` closing prices, oldest first."""
        if count > self._end:
            raise ValueError(f"window holds {self._end} bars; {count} requested")
        return [self._bars[i].close for i in range(self._end - count, self._end)]


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    kind: Literal["int", "float"]
    default: float | int
    min_value: float | int | None = None
    description: str = ""

    def coerce(self, value: Any) -> float | int:
        try:
            as_float = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"parameter {self.name} must be numeric: {value!r}") from exc
        if self.kind == "int":
            if abs(as_float - round(as_float)) > 1e-9:
                raise ConfigError(f"parameter {self.name} must be integral: {value!r}")
            coerced: float | int = int(round(as_float))
        else:
            coerced = as_float
        if self.min_value is not None and coerced < self.min_value:
            raise ConfigError(f"parameter {self.name} must be >= {self.min_value}; got {value!r}")
        return coerced


Evaluator = Callable[[BarWindow, Mapping[str, Any]], Signal]
WarmupFn = Callable[[Mapping[str, Any]], int]
ParameterCheck = Callable[[Mapping[str, Any]], None]


@dataclass(frozen=True)
class Strategy:
    id: str
    name: str
    description: str
    evaluator: Evaluator
    warmup: WarmupFn
    parameter_schema: tuple[ParameterSpec, ...] = ()
    check_parameters: ParameterCheck | None = field(default=None, repr=False)

    @property
    def default_parameters(self) -> dict[str, Any]:
        return {spec.name: spec.default for spec in self.parameter_schema}

    def resolve_parameters(self, supplied: Mapping[str, Any] | None) -> dict[str, Any]:
        resolved = self.default_parameters
        resolved.update(dict(supplied or {}))
        for spec in self.parameter_schema:
            resolved[spec.name] = spec.coerce(resolved[spec.name])
        if self.check_parameters is not None:
            self.check_parameters(resolved)
        return resolved

    def warmup_period(self, parameters: Mapping[str, Any]) -> int:
        return int(self.warmup(parameters))

    def evaluate(self, window: BarWindow, parameters: Mapping[str, Any]) -> Signal:
        signal = self.evaluator(window, parameters)
        if signal not in SIGNALS:
            raise ValueError(f"strategy {self.id} returned unsupported signal: {signal!r}")
        return signal
