"""ATR 因子（Wilder 平滑，向量化参考实现）。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from algo.factors.base import require_columns


def true_range_series(df: pd.DataFrame, high_col: str = "high", low_col: str = "low", close_col: str = "close") -> pd.Series:
    prev_close = df[close_col].shift(1)
    tr1 = df[high_col] - df[low_col]
    tr2 = (df[high_col] - prev_close).abs()
    tr3 = (df[low_col] - prev_close).abs()
    # 首行没有 prev_close：max 跳过 NaN，退化为 high - low
    return pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)


def wilder_smooth(values: np.ndarray, period: int) -> np.ndarray:
    """前 period 个值取均值作种子，之后 `s_t = s_{t-1} + (x_t - s_{t-1}) / period`。"""
    out = np.full(len(values), np.nan)
    if len(values) < period:
        return out
    out[period - 1] = float(np.sum(values[:period])) / period
    for i in range(period, len(values)):
        out[i] = out[i - 1] + (values[i] - out[i - 1]) / period
    return out


@dataclass(frozen=True)
class ATRFactor:
    """平均真实波幅（ATR，Wilder 版本）。"""

    period: int = 14
    high_col: str = "high"
    low_col: str = "low"
    close_col: str = "close"
    out_col: str | None = None
    name: str = "atr"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("ATR period must be > 0")
        object.__setattr__(
            self,
            "params",
            {
                "period": self.period,
                "high_col": self.high_col,
                "low_col": self.low_col,
                "close_col": self.close_col,
                "out_col": self.out_col,
            },
        )

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, (self.high_col, self.low_col, self.close_col), "ATRFactor")
        out = self.out_col or f"atr_{self.period}"
        tr = true_range_series(df, self.high_col, self.low_col, self.close_col).to_numpy(dtype=float)
        df[out] = wilder_smooth(tr, self.period)
        return df
