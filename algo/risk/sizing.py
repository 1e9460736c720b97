"""基于风险的仓位计算。

单位约定：
- stop_distance / cost_buffer 都是“每单位数量”的价格距离；
- amount = risk_amount / (stop_distance + cost_buffer)。
"""

from __future__ import annotations


def floored_stop_distance(price: float, raw_distance: float, min_stop_distance_pct: float = 0.01) -> float:
    """止损距离下限：不小于 price * min_stop_distance_pct。"""
    return max(float(raw_distance), float(price) * float(min_stop_distance_pct))


def atr_stop_distance(price: float, atr: float, atr_factor: float, min_stop_distance_pct: float = 0.01) -> float:
    return floored_stop_distance(price, atr * atr_factor, min_stop_distance_pct)


def cost_buffer(price: float, stop_distance: float, cost_rate: float) -> float:
    """一次开平的成本缓冲（每单位）。

    开仓按 price、止损平仓按 price ± stop_distance 各计一次滑点 + 手续费，
    取 `cost_rate * (2 * price + stop_distance)` 作为上界。
    """
    if cost_rate <= 0:
        return 0.0
    return float(cost_rate) * (2.0 * float(price) + float(stop_distance))


def risk_per_unit(price: float, stop_distance: float, cost_rate: float = 0.0) -> float:
    return float(stop_distance) + cost_buffer(price, stop_distance, cost_rate)


def risk_based_amount(
    risk_amount: float,
    price: float,
    stop_distance: float,
    *,
    cost_rate: float = 0.0,
    max_notional: float | None = None,
) -> float:
    """按风险预算计算下单数量。

    Parameters
    ----------
    risk_amount:
        本笔允许亏损的金额（balance * max_risk_per_trade）。
    price:
        预计成交价。
    stop_distance:
        入场价到止损价的距离（已含下限）。
    cost_rate:
        滑点 + 手续费费率，用于成本缓冲。
    max_notional:
        名义价值上限；None 表示不限。

    Returns
    -------
    float
        下单数量；输入无效时为 0.0。
    """
    if risk_amount <= 0 or price <= 0 or stop_distance <= 0:
        return 0.0
    amount = risk_amount / risk_per_unit(price, stop_distance, cost_rate)
    if max_notional is not None and max_notional >= 0:
        amount = min(amount, max_notional / price)
    return max(0.0, amount)


def unit_risk(price: float, stop_price: float | None, *, min_stop_distance_pct: float, cost_rate: float = 0.0) -> float:
    """单位数量在止损处的最大亏损（含成本缓冲）；无止损时按最小止损距离估计。"""
    raw = abs(price - stop_price) if stop_price is not None else 0.0
    dist = floored_stop_distance(price, raw, min_stop_distance_pct)
    return risk_per_unit(price, dist, cost_rate)


def position_open_risk(position, *, cost_rate: float = 0.0, min_stop_distance_pct: float = 0.01) -> float:
    """持仓在当前止损处的剩余风险（含已付开仓手续费与平仓成本，已锁盈时为 0）。"""
    if position.amount <= 0:
        return 0.0
    stop = position.stop_price
    if stop is None:
        stop = position.entry_price * (1 - position.side.sign * min_stop_distance_pct)
    loss = position.side.sign * (position.entry_price - stop) + cost_rate * stop
    return max(0.0, loss * position.amount + position.entry_commission)
