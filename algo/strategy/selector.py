"""RegimeLabel → 策略的显式分派表。"""

from __future__ import annotations

from typing import Mapping

from algo.strategy.base import Strategy, StrategyContext
from algo.strategy.registry import build_strategy
from shared.config.schema import SelectorConfig
from shared.errors import DataInsufficientError
from shared.models.models import OrderIntent, RegimeLabel
from shared.utils.logging import setup_logger

# 每个标签对应的策略“角色”；弱趋势在运行时按 ADX 决定
_ROLE_TABLE: dict[RegimeLabel, str] = {
    RegimeLabel.STRONG_UPTREND: "trend",
    RegimeLabel.UPTREND: "trend",
    RegimeLabel.WEAK_UPTREND: "weak",
    RegimeLabel.RANGE: "range",
    RegimeLabel.WEAK_DOWNTREND: "weak",
    RegimeLabel.DOWNTREND: "trend",
    RegimeLabel.STRONG_DOWNTREND: "trend",
    RegimeLabel.EMERGENCY: "emergency",
}


def check_role_table(table: Mapping[RegimeLabel, str]) -> None:
    """分派表必须覆盖全部 regime 标签。"""
    missing = set(RegimeLabel) - set(table)
    if missing:
        raise RuntimeError(f"regime dispatch table is not exhaustive, missing {sorted(m.value for m in missing)}")


check_role_table(_ROLE_TABLE)


class StrategySelector:
    """按 regime 选择策略并执行。

    弱趋势（以及两类入场条件同时满足时）的取舍：ADX > adx_threshold 走趋势跟随，
    否则走均值回归。

    Parameters
    ----------
    strategies:
        角色名（trend/range/emergency）→ 策略实例。
    adx_threshold:
        弱趋势分流用的 ADX 阈值。
    """

    def __init__(self, strategies: Mapping[str, Strategy], adx_threshold: float = 25.0):
        missing = {"trend", "range", "emergency"} - set(strategies)
        if missing:
            raise ValueError(f"StrategySelector missing roles: {sorted(missing)}")
        self.strategies = dict(strategies)
        self.adx_threshold = float(adx_threshold)
        self.logger = setup_logger("strategy.selector")

    def role_for(self, regime: RegimeLabel, adx: float) -> str:
        role = _ROLE_TABLE[regime]
        if role == "weak":
            return "trend" if adx > self.adx_threshold else "range"
        return role

    def select(self, regime: RegimeLabel, adx: float) -> Strategy:
        return self.strategies[self.role_for(regime, adx)]

    def execute(self, ctx: StrategyContext) -> list[OrderIntent]:
        strategy = self.select(ctx.regime, ctx.snapshot.adx)
        try:
            return list(strategy.execute(ctx))
        except DataInsufficientError as exc:
            self.logger.debug(f"{ctx.symbol} {strategy.name} skipped: {exc}")
            return []


def build_selector(cfg: SelectorConfig | None, registry_kwargs: Mapping[str, object], adx_threshold: float) -> StrategySelector:
    cfg = cfg or SelectorConfig()
    strategies = {
        "trend": build_strategy(cfg.trend, registry_kwargs),
        "range": build_strategy(cfg.range, registry_kwargs),
        "emergency": build_strategy(cfg.emergency, registry_kwargs),
    }
    return StrategySelector(strategies, adx_threshold=adx_threshold)
