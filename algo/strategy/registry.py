"""策略注册表：字符串 -> Strategy 实现。"""

from __future__ import annotations

import inspect
from typing import Any, Mapping

from algo.strategy.base import Strategy
from algo.strategy.emergency import EmergencyStrategy
from algo.strategy.mean_revert import MeanRevertStrategy
from algo.strategy.trend_follow import TrendFollowStrategy

_REGISTRY: dict[str, type[Strategy]] = {}


def register_strategy(name: str, cls: type[Strategy]) -> None:
    _REGISTRY[name] = cls


def get_strategy_cls(name: str) -> type[Strategy]:
    if name not in _REGISTRY:
        raise ValueError(f"Unknown strategy: {name}")
    return _REGISTRY[name]


def _filter_init_kwargs(cls: type, params: Mapping[str, Any]) -> dict[str, Any]:
    """过滤出 __init__ 支持的参数，避免多余字段导致报错。"""
    try:
        sig = inspect.signature(cls.__init__)
    except (TypeError, ValueError):
        return dict(params)

    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return dict(params)

    allowed = {name for name in sig.parameters.keys() if name != "self"}
    return {k: v for k, v in params.items() if k in allowed}


def build_strategy(name: str, params: Mapping[str, Any] | None = None) -> Strategy:
    """按注册名构建策略实例。

    params 形如 `{"cfg": ...}` 时按类签名过滤；不同策略的配置块由调用方按名字放入
    `{"trend_follow": TrendFollowConfig, ...}`，这里会把同名块映射成 `cfg`。
    """
    cls = get_strategy_cls(name)
    params = dict(params or {})
    if name in params and "cfg" not in params:
        params["cfg"] = params[name]
    kwargs = _filter_init_kwargs(cls, params)
    strat = cls(**kwargs)
    # 稳定的策略标识（来自注册名），用于 client_order_id
    setattr(strat, "strategy_id", name)
    return strat


def available_strategies() -> list[str]:
    return sorted(_REGISTRY)


# 默认注册
register_strategy("trend_follow", TrendFollowStrategy)
register_strategy("mean_revert", MeanRevertStrategy)
register_strategy("emergency", EmergencyStrategy)
