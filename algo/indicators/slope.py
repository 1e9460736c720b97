"""EMA 斜率（线性回归 → 角度）。"""

from __future__ import annotations

import math
from typing import Sequence

from shared.config.schema import IndicatorConfig


def ema_slope_angle(values: Sequence[float]) -> float:
    """对窗口内 EMA 值（以首值归一化）做最小二乘回归，斜率换算为 %/bar 后取 atan（度）。

    窗口不足 2 个点或首值为 0 时返回 0.0。
    """
    n = len(values)
    if n < 2 or values[0] == 0:
        return 0.0
    base = values[0]
    mean_x = (n - 1) / 2.0
    mean_y = sum(v / base for v in values) / n
    cov = 0.0
    var = 0.0
    for i, v in enumerate(values):
        dx = i - mean_x
        cov += dx * (v / base - mean_y)
        var += dx * dx
    slope_pct = cov / var * 100.0
    return math.degrees(math.atan(slope_pct))


def select_slope_periods(atr_pct: float, cfg: IndicatorConfig) -> int:
    """高波动缩短斜率窗口、低波动拉长。"""
    if atr_pct > cfg.high_vol_atr_pct:
        return cfg.slope_periods_fast
    if atr_pct < cfg.low_vol_atr_pct:
        return cfg.slope_periods_slow
    return cfg.slope_periods
