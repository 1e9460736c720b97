"""向量化指标因子的公共约定。

每个因子对整段 OHLCV DataFrame 做一次全量计算，结果列与增量 `IndicatorEngine`
逐 bar 输出对齐（预热期为 NaN），用于 indicators.csv 导出与一致性校验。
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol

import pandas as pd


class Factor(Protocol):
    name: str
    params: Mapping[str, Any]

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        """在 df 上写入因子列并返回 df。"""
        ...


def require_columns(df: pd.DataFrame, columns: Iterable[str], factor: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{factor} requires columns: {missing}")
