"""因子注册表：字符串 -> 因子实现。

向量化因子与 `algo.indicators` 的增量实现使用同一套公式，
用于离线导出 indicators.csv 与增量实现的一致性校验。
"""

from __future__ import annotations

import inspect
from typing import Any, Iterable, Mapping

import pandas as pd

from algo.factors.adx import ADXFactor
from algo.factors.atr import ATRFactor
from algo.factors.base import Factor
from algo.factors.donchian import DonchianFactor
from algo.factors.ema import EMAFactor
from algo.factors.vwap import VWAPFactor
from shared.config.schema import IndicatorConfig

_REGISTRY: dict[str, type] = {}


def register_factor(name: str, cls: type) -> None:
    _REGISTRY[name] = cls


def get_factor_cls(name: str) -> type:
    if name not in _REGISTRY:
        raise ValueError(f"Unknown factor: {name}")
    return _REGISTRY[name]


def _filter_init_kwargs(cls: type, params: Mapping[str, Any]) -> dict[str, Any]:
    """过滤出 __init__ 支持的参数，避免配置里多字段导致报错。"""
    try:
        sig = inspect.signature(cls.__init__)
    except (TypeError, ValueError):
        return dict(params)

    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return dict(params)

    allowed = {name for name in sig.parameters.keys() if name != "self"}
    return {k: v for k, v in params.items() if k in allowed}


def build_factors(cfg: Any) -> list[Factor]:
    """从配置构建因子列表。

    支持形态：
    - factors: [{name/type: "ema", params: {...}}, ...]
    - factors: [{type: "ema", period: 10}, ...]  # params 直接平铺
    - 直接传入 list[dict]
    """
    if cfg is None:
        return []

    items = cfg
    if isinstance(cfg, dict):
        items = cfg.get("factors") or []
    if not isinstance(items, list):
        raise ValueError("factors config must be a list")

    factors: list[Factor] = []
    for item in items:
        if not isinstance(item, dict):
            raise ValueError("factor item must be a dict")
        name = str(item.get("name") or item.get("type") or "")
        reserved = {"name", "type", "params"}
        raw_params = item.get("params", None)
        if raw_params is None:
            params: dict[str, Any] = {k: v for k, v in item.items() if k not in reserved}
        else:
            if not isinstance(raw_params, dict):
                raise ValueError("factor params must be a dict")
            params = dict(raw_params)
            for k, v in item.items():
                if k in reserved or k in params:
                    continue
                params[k] = v
        if not name:
            raise ValueError("factor item missing name")
        cls = get_factor_cls(name)
        kwargs = _filter_init_kwargs(cls, params)
        try:
            factors.append(cls(**kwargs))
        except TypeError as exc:
            raise ValueError(f"Invalid params for factor '{name}': {params}") from exc
    return factors


def apply_factors(df: pd.DataFrame, factors: list[Factor]) -> pd.DataFrame:
    for f in factors:
        df = f.compute(df)
    return df


def default_factor_specs(cfg: IndicatorConfig) -> list[dict[str, Any]]:
    """与 IndicatorEngine 同参数的因子清单（列名固定，便于导出）。"""
    return [
        {"type": "ema", "period": cfg.ema_short, "out_col": "ema_short"},
        {"type": "ema", "period": cfg.ema_long, "out_col": "ema_long"},
        {"type": "atr", "period": cfg.atr_period, "out_col": "atr"},
        {"type": "adx", "period": cfg.adx_period, "out_col": "adx"},
        {"type": "donchian", "period": cfg.donchian_period, "out_col": "donchian"},
        {"type": "donchian", "period": cfg.range_period, "out_col": "range"},
        {"type": "vwap", "window": cfg.vwap_window, "out_col": "vwap"},
    ]


def bars_to_frame(bars: Iterable[Any]) -> pd.DataFrame:
    rows = [
        {
            "timestamp": b.timestamp,
            "open": b.open,
            "high": b.high,
            "low": b.low,
            "close": b.close,
            "volume": b.volume,
        }
        for b in bars
    ]
    return pd.DataFrame(rows, columns=["timestamp", "open", "high", "low", "close", "volume"])


def compute_indicator_frame(bars: Iterable[Any], cfg: IndicatorConfig | None = None) -> pd.DataFrame:
    """对整段 bar 序列做一次全量（非增量）指标计算。"""
    cfg = cfg or IndicatorConfig()
    df = bars_to_frame(bars)
    return apply_factors(df, build_factors(default_factor_specs(cfg)))


# 默认注册
register_factor("ema", EMAFactor)
register_factor("atr", ATRFactor)
register_factor("adx", ADXFactor)
register_factor("donchian", DonchianFactor)
register_factor("vwap", VWAPFactor)
