"""回测产物导出：result.json + trades.csv + equity.csv (+ indicators.csv)。

JSON 中的非有限浮点（inf/nan，例如无亏损时的 profit_factor）写成字符串，
保证输出始终是合法 JSON。
"""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Iterable, Mapping

import pandas as pd

from algo.factors.registry import compute_indicator_frame
from shared.config.schema import IndicatorConfig
from shared.models.models import Bar, EquityPoint, Trade


def sanitize_for_json(obj: Any) -> Any:
    """递归把 inf/nan 转成字符串，tuple/set 转成 list。"""
    if isinstance(obj, float):
        if math.isfinite(obj):
            return obj
        if math.isnan(obj):
            return "nan"
        return "inf" if obj > 0 else "-inf"
    if isinstance(obj, Mapping):
        return {str(k): sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [sanitize_for_json(v) for v in obj]
    return obj


def write_result_json(path: str | Path, record: Mapping[str, Any]) -> Path:
    """写出 `{metrics, trades[], equity[], parameters}` 结构化结果。"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = sanitize_for_json(dict(record))
    path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2, default=str, allow_nan=False),
        encoding="utf-8",
    )
    return path


def export_trades_csv(trades: Iterable[Trade], path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = [t.to_dict() for t in trades]
    columns = [
        "id",
        "symbol",
        "side",
        "entry_price",
        "exit_price",
        "entry_time",
        "exit_time",
        "amount",
        "pnl",
        "commission",
        "position_id",
        "exit_reason",
    ]
    pd.DataFrame(rows, columns=columns).to_csv(path, index=False)
    return path


def export_equity_csv(equity: Iterable[EquityPoint], path: str | Path, initial_balance: float | None = None) -> Path:
    """权益曲线 CSV，列：timestamp, equity, drawdown, drawdown_pct。"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame([p.to_dict() for p in equity], columns=["timestamp", "equity"])
    if not df.empty:
        peak = df["equity"].cummax()
        if initial_balance is not None:
            peak = peak.clip(lower=float(initial_balance))
        df["drawdown"] = peak - df["equity"]
        df["drawdown_pct"] = (df["drawdown"] / peak).where(peak > 0, 0.0)
    else:
        df["drawdown"] = []
        df["drawdown_pct"] = []
    df.to_csv(path, index=False)
    return path


def export_indicators_csv(bars: Iterable[Bar], path: str | Path, cfg: IndicatorConfig | None = None) -> Path:
    """对整段 bar 做一次向量化指标重算并导出（用于人工核对增量引擎）。"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    compute_indicator_frame(bars, cfg).to_csv(path, index=False)
    return path


def export_backtest_artifacts(
    out_dir: str | Path,
    record: Mapping[str, Any],
    *,
    trades: Iterable[Trade],
    equity: Iterable[EquityPoint],
    initial_balance: float | None = None,
    bars: Iterable[Bar] | None = None,
    indicator_cfg: IndicatorConfig | None = None,
) -> dict[str, str]:
    """写出一次回测的全部产物，返回 {名称: 路径}。"""
    out = Path(out_dir)
    paths = {
        "result": str(write_result_json(out / "result.json", record)),
        "trades": str(export_trades_csv(trades, out / "trades.csv")),
        "equity": str(export_equity_csv(equity, out / "equity.csv", initial_balance)),
    }
    if bars is not None:
        paths["indicators"] = str(export_indicators_csv(bars, out / "indicators.csv", indicator_cfg))
    return paths
