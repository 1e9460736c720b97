"""Donchian 通道因子（向量化）。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from algo.factors.base import require_columns


@dataclass(frozen=True)
class DonchianFactor:
    """滚动 period 根的最高/最低价；`*_prior` 列为不含当前 bar 的通道（突破判断用）。"""

    period: int = 20
    out_col: str | None = None
    name: str = "donchian"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("Donchian period must be > 0")
        object.__setattr__(self, "params", {"period": self.period, "out_col": self.out_col})

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, ("high", "low"), "DonchianFactor")
        out = self.out_col or f"donchian_{self.period}"
        upper = df["high"].astype(float).rolling(self.period, min_periods=self.period).max()
        lower = df["low"].astype(float).rolling(self.period, min_periods=self.period).min()
        df[f"{out}_upper"] = upper
        df[f"{out}_lower"] = lower
        df[f"{out}_upper_prior"] = upper.shift(1)
        df[f"{out}_lower_prior"] = lower.shift(1)
        return df
