from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

HOME_ENV = "LN_BACKTEST_HOME"


@dataclass(frozen=True)
class RuntimePaths:
    root: Path = Path(".lnbacktest")

    @classmethod
    def from_env(cls) -> "RuntimePaths":
        return cls(root=Path(os.environ.get(HOME_ENV, ".lnbacktest")))

    @property
    def sqlite_path(self) -> Path:
        return self.root / "results.sqlite"

    @property
    def duckdb_path(self) -> Path:
        return self.root / "bars.duckdb"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
