"""EMA 因子（向量化）。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from algo.factors.base import require_columns


def ema_series(prices: pd.Series, period: int) -> pd.Series:
    """首值为种子的 EMA，前 period-1 根为 NaN（与 `algo.indicators.ema.EMA.ready` 对齐）。"""
    return prices.astype(float).ewm(span=period, adjust=False, min_periods=period).mean()


@dataclass(frozen=True)
class EMAFactor:
    period: int = 10
    price_col: str = "close"
    out_col: str | None = None
    name: str = "ema"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("EMA period must be > 0")
        object.__setattr__(self, "params", {"period": self.period, "price_col": self.price_col})

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, (self.price_col,), "EMAFactor")
        df[self.out_col or f"ema_{self.period}"] = ema_series(df[self.price_col], self.period)
        return df
