"""组合层风险：资金分配、相关性、组合风险报告与组合闸门。"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from statistics import pstdev
from typing import Iterable, Mapping, Sequence

import pandas as pd

from shared.config.schema import PortfolioConfig
from shared.errors import ConfigurationError, Rejected
from shared.models.models import OrderIntent, Side
from shared.utils.logging import setup_logger

_DAY_MS = 24 * 3600 * 1000

logger = setup_logger("portfolio")


# ----- 资金分配 -----
def equal_weights(symbols: Sequence[str]) -> dict[str, float]:
    if not symbols:
        return {}
    w = 1.0 / len(symbols)
    return {s: w for s in symbols}


def volatility_weights(symbols: Sequence[str], returns: Mapping[str, Sequence[float]]) -> dict[str, float]:
    """波动率倒数加权；任何品种波动率不可用时整体退回等权。"""
    inv: dict[str, float] = {}
    for s in symbols:
        series = list(returns.get(s) or [])
        vol = pstdev(series) if len(series) > 1 else 0.0
        if vol <= 0 or not math.isfinite(vol):
            logger.warning(f"Volatility for {s} unavailable, fall back to equal weights.")
            return equal_weights(symbols)
        inv[s] = 1.0 / vol
    total = sum(inv.values())
    return {s: v / total for s, v in inv.items()}


def custom_weights(symbols: Sequence[str], weights: Mapping[str, float]) -> dict[str, float]:
    missing = [s for s in symbols if s not in weights]
    if missing:
        raise ConfigurationError(f"portfolio.weights missing symbols: {missing}")
    raw = {s: float(weights[s]) for s in symbols}
    if any(v < 0 for v in raw.values()):
        raise ConfigurationError("portfolio.weights must be >= 0")
    total = sum(raw.values())
    if total <= 0:
        raise ConfigurationError("portfolio.weights must sum to a positive value")
    return {s: v / total for s, v in raw.items()}


def allocation_weights(
    symbols: Sequence[str],
    cfg: PortfolioConfig | None = None,
    *,
    returns: Mapping[str, Sequence[float]] | None = None,
) -> dict[str, float]:
    """按配置计算各品种资金权重（和为 1）。

    Parameters
    ----------
    symbols:
        品种列表（顺序即并列时的优先顺序）。
    cfg:
        组合配置，allocation ∈ {equal, volatility, custom}。
    returns:
        volatility 模式下各品种的收益率序列。
    """
    cfg = cfg or PortfolioConfig()
    if cfg.allocation == "custom":
        weights = custom_weights(symbols, cfg.weights)
    elif cfg.allocation == "volatility":
        weights = volatility_weights(symbols, returns or {})
    else:
        weights = equal_weights(symbols)
    if weights and not math.isclose(sum(weights.values()), 1.0, rel_tol=1e-9, abs_tol=1e-9):
        raise ConfigurationError(f"allocation weights must sum to 1.0, got {sum(weights.values())}")
    return weights


# ----- 相关性 -----
def daily_returns_frame(closes: Mapping[str, Iterable[tuple[int, float]]]) -> pd.DataFrame:
    """(timestamp_ms, close) 序列 → 按 UTC 日末收盘价计算的日收益率表（列为品种）。"""
    series = {}
    for symbol, points in closes.items():
        points = list(points)
        if not points:
            continue
        idx = pd.to_datetime([p[0] for p in points], unit="ms", utc=True)
        series[symbol] = pd.Series([p[1] for p in points], index=idx, dtype=float)
    if not series:
        return pd.DataFrame()
    frame = pd.DataFrame(series)
    daily = frame.resample("1D").last()
    return daily.pct_change(fill_method=None).iloc[1:]


def correlation_matrix(returns: pd.DataFrame, min_points: int = 3) -> dict[tuple[str, str], float]:
    """Pearson 相关系数；样本不足或方差为 0 的品种对不出现在结果里。"""
    if returns.empty or returns.shape[1] < 2:
        return {}
    corr = returns.corr(method="pearson", min_periods=min_points)
    out: dict[tuple[str, str], float] = {}
    cols = list(corr.columns)
    for i, a in enumerate(cols):
        for b in cols[i + 1:]:
            value = corr.at[a, b]
            if pd.notna(value):
                out[(a, b)] = float(value)
                out[(b, a)] = float(value)
    return out


class CorrelationTracker:
    """按模拟时间定期（默认 24h）重算相关矩阵，而不是每根 bar 重算。"""

    def __init__(self, cfg: PortfolioConfig | None = None):
        self.cfg = cfg or PortfolioConfig()
        self.interval_ms = int(self.cfg.correlation_interval_hours * 3600 * 1000)
        self.lookback_ms = int(self.cfg.correlation_lookback_days * _DAY_MS)
        self.history: dict[str, deque[tuple[int, float]]] = {}
        self.matrix: dict[tuple[str, str], float] = {}
        self.last_update: int | None = None
        self.updates = 0

    def observe(self, symbol: str, timestamp: int, close: float) -> None:
        points = self.history.setdefault(symbol, deque())
        points.append((int(timestamp), float(close)))
        cutoff = int(timestamp) - self.lookback_ms
        while points and points[0][0] < cutoff:
            points.popleft()

    def maybe_update(self, timestamp: int) -> bool:
        if self.last_update is not None and timestamp - self.last_update < self.interval_ms:
            return False
        self.matrix = correlation_matrix(daily_returns_frame(self.history), self.cfg.min_correlation_points)
        self.last_update = int(timestamp)
        self.updates += 1
        return True

    def correlation(self, a: str, b: str) -> float | None:
        return self.matrix.get((a, b))


# ----- 组合风险报告 -----
@dataclass
class PortfolioRiskReport:
    total_exposure: float
    equity: float
    var: float
    expected_shortfall: float
    concentration: float
    correlation_risk: float
    stress: dict[str, float] = field(default_factory=dict)
    high_correlation_pairs: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_exposure": self.total_exposure,
            "equity": self.equity,
            "var": self.var,
            "expected_shortfall": self.expected_shortfall,
            "concentration": self.concentration,
            "correlation_risk": self.correlation_risk,
            "stress": dict(self.stress),
            "high_correlation_pairs": list(self.high_correlation_pairs),
        }


class PortfolioRiskAnalyzer:
    """组合风险估计（参数化近似，不做历史模拟）。

    - VaR = min(Σ|exposure| * var_rate, equity * var_cap)；
    - Expected Shortfall = VaR * es_multiplier；
    - 集中度 = max(0, (最大敞口占比 - 0.5) * 2)；
    - 相关性风险 = mean(|ρ_ij| * w_i * w_j)；
    - 压力情景：market_crash = VaR * 2，liquidity_crisis = VaR * 1.5。
    """

    def __init__(self, cfg: PortfolioConfig | None = None):
        self.cfg = cfg or PortfolioConfig()

    def analyze(
        self,
        exposures: Mapping[str, float],
        equity: float,
        weights: Mapping[str, float],
        matrix: Mapping[tuple[str, str], float],
    ) -> PortfolioRiskReport:
        total = sum(abs(v) for v in exposures.values())
        var = min(total * self.cfg.var_rate, equity * self.cfg.var_cap) if equity > 0 else total * self.cfg.var_rate
        es = var * self.cfg.es_multiplier

        concentration = 0.0
        if total > 0:
            max_share = max(abs(v) for v in exposures.values()) / total
            concentration = max(0.0, (max_share - 0.5) * 2)

        symbols = sorted(weights)
        terms: list[float] = []
        pairs: list[dict] = []
        for i, a in enumerate(symbols):
            for b in symbols[i + 1:]:
                rho = matrix.get((a, b))
                if rho is None:
                    continue
                terms.append(abs(rho) * weights[a] * weights[b])
                if abs(rho) > self.cfg.correlation_limit:
                    pairs.append({"pair": [a, b], "correlation": rho})
        corr_risk = sum(terms) / len(terms) if terms else 0.0

        return PortfolioRiskReport(
            total_exposure=total,
            equity=equity,
            var=var,
            expected_shortfall=es,
            concentration=concentration,
            correlation_risk=corr_risk,
            stress={"market_crash": var * 2.0, "liquidity_crisis": var * 1.5},
            high_correlation_pairs=pairs,
        )


# ----- 组合闸门 -----
class PortfolioRiskGate:
    """多品种同步步进后的组合层过滤（同步屏障处调用）。

    1. 相关性抑制：相关系数 > correlation_limit 的品种对同时出现同方向开仓时，
       保留权重较高者（并列按品种顺序），丢弃另一方的同方向开仓；
    2. 敞口上限：组合持仓名义 + 新开仓名义 > max_portfolio_exposure * 组合权益时拒绝。

    减仓/止损调整意图不受影响。被过滤的意图记录在 `suppressed`。
    """

    def __init__(self, cfg: PortfolioConfig | None = None):
        self.cfg = cfg or PortfolioConfig()
        self.suppressed: list[Rejected] = []

    def filter(
        self,
        intents: Mapping[str, list[OrderIntent]],
        *,
        symbols: Sequence[str],
        weights: Mapping[str, float],
        matrix: Mapping[tuple[str, str], float],
        equity: float,
        exposure: float,
        prices: Mapping[str, float],
        timestamp: int | None = None,
    ) -> dict[str, list[OrderIntent]]:
        order = {s: i for i, s in enumerate(symbols)}
        ranked = sorted(intents, key=lambda s: (-weights.get(s, 0.0), order.get(s, len(order))))

        blocked: set[tuple[str, Side]] = set()
        for i, a in enumerate(ranked):
            for b in ranked[i + 1:]:
                rho = matrix.get((a, b))
                if rho is None or rho <= self.cfg.correlation_limit:
                    continue
                for side in _entry_sides(intents[a]) & _entry_sides(intents[b]):
                    if (a, side) in blocked:
                        continue
                    blocked.add((b, side))

        kept: dict[str, list[OrderIntent]] = {}
        limit = self.cfg.max_portfolio_exposure * equity
        projected = exposure
        for symbol in ranked:
            out: list[OrderIntent] = []
            for intent in intents[symbol]:
                if not intent.is_entry:
                    out.append(intent)
                    continue
                if (symbol, intent.side) in blocked:
                    self._suppress("correlation", intent, timestamp)
                    continue
                price = intent.price if intent.price is not None else prices.get(symbol, 0.0)
                notional = intent.amount * price
                if projected + notional > limit * (1 + 1e-9):
                    self._suppress("portfolio_exposure", intent, timestamp, projected=projected, limit=limit)
                    continue
                projected += notional
                out.append(intent)
            kept[symbol] = out
        return kept

    def _suppress(self, reason: str, intent: OrderIntent, timestamp: int | None, **details) -> None:
        self.suppressed.append(Rejected(reason=reason, intent=intent, timestamp=timestamp, details=details))
        logger.info(f"[PORTFOLIO] Suppress {intent.symbol} {intent.side.value} {intent.amount:.6f}: {reason}")


def _entry_sides(intents: Iterable[OrderIntent]) -> set[Side]:
    return {i.side for i in intents if i.is_entry}
