"""ADX 因子（向量化参考实现）。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from algo.factors.base import require_columns


def _wilder_running_sum(values: np.ndarray, period: int) -> np.ndarray:
    out = np.full(len(values), np.nan)
    if len(values) < period:
        return out
    acc = 0.0
    for i in range(period):
        acc += values[i]
    out[period - 1] = acc
    for i in range(period, len(values)):
        out[i] = out[i - 1] - out[i - 1] / period + values[i]
    return out


@dataclass(frozen=True)
class ADXFactor:
    """平均趋向指数（Wilder DMI），输出 adx/+DI/-DI 三列。"""

    period: int = 14
    out_col: str | None = None
    name: str = "adx"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("ADX period must be > 0")
        object.__setattr__(self, "params", {"period": self.period, "out_col": self.out_col})

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns(df, ("high", "low", "close"), "ADXFactor")
        out = self.out_col or f"adx_{self.period}"
        p = self.period
        high = df["high"].to_numpy(dtype=float)
        low = df["low"].to_numpy(dtype=float)
        close = df["close"].to_numpy(dtype=float)
        n = len(df)

        adx = np.full(n, np.nan)
        pdi_col = np.full(n, np.nan)
        mdi_col = np.full(n, np.nan)
        if n >= 2:
            up = high[1:] - high[:-1]
            down = low[:-1] - low[1:]
            pdm = np.where((up > down) & (up > 0), up, 0.0)
            mdm = np.where((down > up) & (down > 0), down, 0.0)
            tr = np.maximum.reduce(
                [high[1:] - low[1:], np.abs(high[1:] - close[:-1]), np.abs(low[1:] - close[:-1])]
            )
            tr_s = _wilder_running_sum(tr, p)
            pdm_s = _wilder_running_sum(pdm, p)
            mdm_s = _wilder_running_sum(mdm, p)
            with np.errstate(divide="ignore", invalid="ignore"):
                pdi = np.where(tr_s > 0, 100.0 * pdm_s / tr_s, 0.0)
                mdi = np.where(tr_s > 0, 100.0 * mdm_s / tr_s, 0.0)
                di_sum = pdi + mdi
                dx = np.where(di_sum > 0, 100.0 * np.abs(pdi - mdi) / di_sum, 0.0)
            pdi = np.where(np.isnan(tr_s), np.nan, pdi)
            mdi = np.where(np.isnan(tr_s), np.nan, mdi)

            dx_valid = dx[p - 1:] if len(dx) >= p else np.array([])
            adx_tail = np.full(len(dx_valid), np.nan)
            if len(dx_valid) >= p:
                adx_tail[p - 1] = float(np.sum(dx_valid[:p])) / p
                for i in range(p, len(dx_valid)):
                    adx_tail[i] = (adx_tail[i - 1] * (p - 1) + dx_valid[i]) / p
            # dx 下标 j 对应原 df 第 j+1 行
            adx[p:p + len(adx_tail)] = adx_tail
            pdi_col[1:] = pdi
            mdi_col[1:] = mdi

        df[out] = adx
        df[f"{out}_plus_di"] = pdi_col
        df[f"{out}_minus_di"] = mdi_col
        return df
