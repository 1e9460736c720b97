"""滚动 VWAP 因子（向量化）。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from algo.factors.base import require_columns


@dataclass(frozen=True)
class VWAPFactor:
    """`sum(typical * volume) / sum(volume)`，窗口成交量为 0 时取当根 typical price。"""

    window: int = 20
    out_col: str | None = None
    name: str = "vwap"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.window <= 0:
            raise ValueError("VWAP window must be > 0")
        object.__setattr__(self, "params", {"window": self.window, "out_col": self.out_col})

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, ("high", "low", "close", "volume"), "VWAPFactor")
        out = self.out_col or f"vwap_{self.window}"
        typical = (df["high"] + df["low"] + df["close"]).astype(float) / 3.0
        volume = df["volume"].astype(float)
        pv_sum = (typical * volume).rolling(self.window, min_periods=1).sum()
        v_sum = volume.rolling(self.window, min_periods=1).sum()
        df[out] = np.where(v_sum > 1e-12, pv_sum / v_sum.where(v_sum > 1e-12, 1.0), typical)
        return df
