"""回测绩效指标计算。

输入统一为：
- equity：按时间升序的 EquityPoint（或 (timestamp, equity) 二元组）；
- trades：Trade 对象（或含 pnl 字段的 dict）。

年化：periods_per_year = bars_per_year / sample_interval，无风险利率为 0。
"""

from __future__ import annotations

import math
from statistics import mean, pstdev
from typing import Any, Iterable, Sequence

INF = float("inf")


def _equity_values(equity: Iterable[Any]) -> list[float]:
    values: list[float] = []
    for point in equity:
        if isinstance(point, tuple):
            values.append(float(point[1]))
        else:
            values.append(float(point.equity))
    return values


def _trade_pnl(trade: Any) -> float:
    if isinstance(trade, dict):
        return float(trade.get("pnl") or 0.0)
    return float(trade.pnl)


def period_returns(values: Sequence[float], initial_balance: float | None = None) -> list[float]:
    """相邻权益点的简单收益率；给出 initial_balance 时以它作为第 0 个点。"""
    series = list(values)
    if initial_balance is not None:
        series = [float(initial_balance)] + series
    out = []
    for prev, curr in zip(series, series[1:]):
        if prev > 0:
            out.append(curr / prev - 1)
    return out


def max_drawdown(values: Sequence[float], initial_balance: float | None = None) -> float:
    """最大回撤（峰谷比例，正数）。峰值以 initial_balance 起算。"""
    peak = float(initial_balance) if initial_balance is not None else (values[0] if values else 0.0)
    max_dd = 0.0
    for eq in values:
        peak = max(peak, eq)
        if peak > 0:
            max_dd = max(max_dd, (peak - eq) / peak)
    return max_dd


def sharpe_ratio(returns: Sequence[float], periods_per_year: float) -> float:
    if len(returns) < 2:
        return 0.0
    sigma = pstdev(returns)
    if sigma == 0:
        return 0.0
    return mean(returns) / sigma * math.sqrt(periods_per_year)


def sortino_ratio(returns: Sequence[float], periods_per_year: float) -> float:
    """下行偏差 `sqrt(sum(min(r, 0)^2) / N)`；没有下行波动时，均值为正返回 inf。"""
    if not returns:
        return 0.0
    mu = mean(returns)
    downside = math.sqrt(sum(min(r, 0.0) ** 2 for r in returns) / len(returns))
    if downside == 0:
        return INF if mu > 0 else 0.0
    return mu / downside * math.sqrt(periods_per_year)


def annualized_return(initial: float, final: float, periods: int, periods_per_year: float) -> float:
    if initial <= 0 or periods <= 0:
        return 0.0
    if final <= 0:
        return -1.0
    return (final / initial) ** (periods_per_year / periods) - 1


def calmar_ratio(annual: float, mdd: float) -> float:
    if mdd <= 0:
        return INF if annual > 0 else 0.0
    return annual / mdd


def max_consecutive(pnls: Iterable[float]) -> tuple[int, int]:
    """返回 (最长连胜, 最长连亏)；pnl 为 0 的交易打断两种连续。"""
    best_win = best_loss = cur_win = cur_loss = 0
    for pnl in pnls:
        if pnl > 0:
            cur_win += 1
            cur_loss = 0
        elif pnl < 0:
            cur_loss += 1
            cur_win = 0
        else:
            cur_win = cur_loss = 0
        best_win = max(best_win, cur_win)
        best_loss = max(best_loss, cur_loss)
    return best_win, best_loss


def compute_equity_metrics(
    equity: Iterable[Any],
    *,
    initial_balance: float,
    periods_per_year: float,
) -> dict:
    """计算权益曲线指标（总收益、年化、最大回撤、Sharpe、Sortino、Calmar）。"""
    values = _equity_values(equity)
    if not values:
        return {
            "initial_balance": initial_balance,
            "final_equity": initial_balance,
            "total_return": 0.0,
            "annualized_return": 0.0,
            "max_drawdown": 0.0,
            "sharpe": 0.0,
            "sortino": 0.0,
            "calmar": 0.0,
        }
    final = values[-1]
    returns = period_returns(values, initial_balance)
    mdd = max_drawdown(values, initial_balance)
    annual = annualized_return(initial_balance, final, len(returns), periods_per_year)
    return {
        "initial_balance": initial_balance,
        "final_equity": final,
        "total_return": final / initial_balance - 1 if initial_balance else 0.0,
        "annualized_return": annual,
        "max_drawdown": mdd,
        "sharpe": sharpe_ratio(returns, periods_per_year),
        "sortino": sortino_ratio(returns, periods_per_year),
        "calmar": calmar_ratio(annual, mdd),
    }


def compute_trade_metrics(trades: Iterable[Any]) -> dict:
    """计算交易维度指标（胜率、盈亏因子、连胜连亏等）。"""
    trades = list(trades)
    pnls = [_trade_pnl(t) for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    decided = len(wins) + len(losses)
    gross_profit = sum(wins)
    gross_loss = abs(sum(losses))
    profit_factor = (
        gross_profit / gross_loss if gross_loss > 0 else (INF if gross_profit > 0 else 0.0)
    )
    max_wins, max_losses = max_consecutive(pnls)
    stop_gaps = sum(
        1
        for t in trades
        if (t.get("exit_reason") if isinstance(t, dict) else getattr(t, "exit_reason", "")) == "stop_gap"
    )
    return {
        "total_trades": len(trades),
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": len(wins) / decided if decided else 0.0,
        "gross_profit": gross_profit,
        "gross_loss": gross_loss,
        "profit_factor": profit_factor,
        "avg_win": mean(wins) if wins else 0.0,
        "avg_loss": -mean(losses) if losses else 0.0,
        "largest_loss": -min(losses) if losses else 0.0,
        "expectancy": mean(pnls) if pnls else 0.0,
        "max_consecutive_wins": max_wins,
        "max_consecutive_losses": max_losses,
        "stop_gap_trades": stop_gaps,
    }


def compute_metrics(
    equity: Iterable[Any],
    trades: Iterable[Any] | None = None,
    *,
    initial_balance: float,
    bars_per_year: float,
    sample_interval: int = 1,
) -> dict:
    """合并权益与交易指标。

    Parameters
    ----------
    equity:
        权益曲线（每 sample_interval 根 bar 一个点）。
    trades:
        已平仓交易。
    initial_balance:
        初始资金（回撤峰值与收益率的基准）。
    bars_per_year:
        `365 * 24 / timeframe_hours`。
    sample_interval:
        权益采样间隔（bar 数）。
    """
    periods_per_year = bars_per_year / max(1, int(sample_interval))
    eq_metrics = compute_equity_metrics(equity, initial_balance=initial_balance, periods_per_year=periods_per_year)
    trade_metrics = compute_trade_metrics(trades or [])
    return {**eq_metrics, **trade_metrics}
