"""区间网格（均值回归）策略。

- 区间：Donchian(range_period) 以中线为中心按 range_multiplier 收窄；
- 网格数：`ceil(区间宽度% / (ATR% * grid_atr_multiplier))`，夹在 [min_levels, max_levels]；
- 挂单：价格下方的网格挂买、上方挂卖，均为 maker-only 限价单（按 min_spread_pct 让价），
  可拆成 iceberg 子单；
- 逃逸：价格越过区间边界 ± escape_threshold 时，市价平掉逆向持仓；
- 偏仓对冲：|多-空| / 库存容量（position_cap * balance / price）> imbalance_threshold 时，
  按偏差的 hedge_ratio 挂 reduce-only 限价单削减重的一侧；
- 仓位上限：持仓 + 挂单名义价值 ≥ position_cap * balance 时不再新增挂单。
"""

from __future__ import annotations

import math

from algo.risk.sizing import position_open_risk, unit_risk
from algo.strategy.base import Strategy, StrategyContext
from shared.config.schema import MeanRevertConfig
from shared.models.models import OrderIntent, OrderType, PositionSide, Side


def narrowed_range(upper: float, lower: float, multiplier: float) -> tuple[float, float]:
    """以通道中线为中心，把宽度收窄为原来的 multiplier 倍。"""
    mid = (upper + lower) / 2.0
    half = (upper - lower) / 2.0 * multiplier
    return mid + half, mid - half


def grid_level_count(range_width_pct: float, atr_pct: float, cfg: MeanRevertConfig) -> int:
    step_pct = atr_pct * cfg.grid_atr_multiplier
    if step_pct <= 0 or range_width_pct <= 0:
        return cfg.min_levels
    levels = math.ceil(range_width_pct / step_pct)
    return max(cfg.min_levels, min(cfg.max_levels, levels))


def grid_levels(high: float, low: float, levels: int) -> list[float]:
    step = (high - low) / (levels + 1)
    return [low + step * i for i in range(1, levels + 1)]


def maker_price(side: Side, price: float, spread_pct: float) -> float:
    """买单压低、卖单抬高，保证挂单不会立即成交。"""
    if side is Side.BUY:
        return price * (1 - spread_pct / 100.0)
    return price * (1 + spread_pct / 100.0)


class MeanRevertStrategy(Strategy):
    """区间网格策略。

    Parameters
    ----------
    cfg:
        策略参数。
    """

    name = "mean_revert"

    def __init__(self, cfg: MeanRevertConfig | None = None):
        self.cfg = cfg or MeanRevertConfig()

    def execute(self, ctx: StrategyContext) -> list[OrderIntent]:
        snap = ctx.snapshot
        snap.require_ready(self.name, snap.bars_seen + 1)
        if snap.range_upper is None or snap.range_lower is None:
            return []

        cfg = self.cfg
        price = ctx.price
        range_high, range_low = narrowed_range(snap.range_upper, snap.range_lower, cfg.range_multiplier)
        width = range_high - range_low
        if width <= 0 or price <= 0:
            return []
        levels = grid_levels(range_high, range_low, grid_level_count(width / price * 100.0, snap.atr_pct, cfg))

        intents: list[OrderIntent] = []
        long_pos = ctx.position(PositionSide.LONG)
        short_pos = ctx.position(PositionSide.SHORT)
        long_amount = long_pos.amount if long_pos else 0.0
        short_amount = short_pos.amount if short_pos else 0.0

        # 逃逸：越界即市价平掉逆向持仓，本根不再挂新单
        upper_escape = range_high * (1 + cfg.escape_threshold)
        lower_escape = range_low * (1 - cfg.escape_threshold)
        if price > upper_escape and short_amount > 0:
            return [self._close(ctx, PositionSide.SHORT, short_amount, "escape")]
        if price < lower_escape and long_amount > 0:
            return [self._close(ctx, PositionSide.LONG, long_amount, "escape")]
        if price > upper_escape or price < lower_escape:
            return []

        hedge = self._hedge(ctx, long_amount, short_amount)
        if hedge is not None:
            intents.append(hedge)

        cap_value = ctx.balance * cfg.position_cap
        used_value = (long_amount + short_amount) * price + _pending_entry_notional(ctx)
        available = cap_value - used_value
        if available <= 0:
            return intents

        budgets = {
            Side.BUY: self._risk_budget(ctx, PositionSide.LONG),
            Side.SELL: self._risk_budget(ctx, PositionSide.SHORT),
        }
        stops = {Side.BUY: lower_escape, Side.SELL: upper_escape}
        base_size = available / len(levels) / price

        candidates: list[tuple[Side, int, float, float]] = []
        for i, level in enumerate(levels):
            position = (level - range_low) / width
            if level < price:
                weight = (1 - position) * 1.5 if cfg.level_weighting else 1.0
                candidates.append((Side.BUY, i, level, weight))
            elif level > price:
                weight = position * 1.5 if cfg.level_weighting else 1.0
                candidates.append((Side.SELL, i, level, weight))
        # 离现价近的网格优先占用风险预算
        candidates.sort(key=lambda c: abs(c[2] - price))

        pending = _pending_grid_keys(ctx)
        remaining_value = available
        for side, index, level, weight in candidates:
            if (side, index) in pending:
                continue
            amount = base_size * weight
            amount = min(amount, remaining_value / level)
            limit = maker_price(side, level, cfg.min_spread_pct)
            per_unit = unit_risk(
                limit,
                stops[side],
                min_stop_distance_pct=ctx.min_stop_distance_pct,
                cost_rate=ctx.cost_rate,
            )
            amount = min(amount, budgets[side] / per_unit)
            if amount <= 1e-12:
                continue
            budgets[side] -= amount * per_unit
            remaining_value -= amount * level
            intents.extend(self._iceberg(ctx, side, level, amount, stops[side], index))

        near = self._near_bound(ctx, range_high, range_low, base_size, stops, budgets)
        if near is not None:
            intents.append(near)
        return intents

    # ----- 组件 -----
    def _risk_budget(self, ctx: StrategyContext, side: PositionSide) -> float:
        pos = ctx.position(side)
        used = 0.0
        if pos is not None:
            used += position_open_risk(
                pos, cost_rate=ctx.cost_rate, min_stop_distance_pct=ctx.min_stop_distance_pct
            )
        for order in ctx.open_orders:
            intent = order.intent
            if order.symbol != ctx.symbol or not intent.is_entry or intent.side is not side.opening_side:
                continue
            ref = intent.price if intent.price is not None else ctx.price
            used += order.remaining * unit_risk(
                ref,
                intent.stop_price,
                min_stop_distance_pct=ctx.min_stop_distance_pct,
                cost_rate=ctx.cost_rate,
            )
        return max(0.0, ctx.risk_amount - used)

    def _iceberg(
        self, ctx: StrategyContext, side: Side, level: float, amount: float, stop: float, index: int
    ) -> list[OrderIntent]:
        chunks = self.cfg.iceberg_chunks
        chunk = amount / chunks
        out: list[OrderIntent] = []
        for i in range(chunks):
            size = amount - chunk * (chunks - 1) if i == chunks - 1 else chunk
            spread = self.cfg.min_spread_pct + i * self.cfg.iceberg_spread_step_pct
            out.append(
                OrderIntent(
                    symbol=ctx.symbol,
                    side=side,
                    type=OrderType.LIMIT,
                    amount=size,
                    price=maker_price(side, level, spread),
                    stop_price=stop,
                    metadata={
                        "reason": "grid",
                        "strategy": self.name,
                        "grid_level": index,
                        "chunk": i,
                        "post_only": True,
                    },
                )
            )
        return out

    def _hedge(self, ctx: StrategyContext, long_amount: float, short_amount: float) -> OrderIntent | None:
        # 持仓按净额记账，多空不会同时存在；偏差以网格库存容量（position_cap 对应的数量）为分母
        capacity = ctx.balance * self.cfg.position_cap / ctx.price
        if capacity <= 0 or long_amount == short_amount:
            return None
        delta = (long_amount - short_amount) / capacity
        if abs(delta) <= self.cfg.imbalance_threshold:
            return None
        if ctx.orders_with_reason("hedge"):
            return None
        heavy = PositionSide.LONG if delta > 0 else PositionSide.SHORT
        side = heavy.closing_side
        amount = abs(long_amount - short_amount) * self.cfg.hedge_ratio
        return OrderIntent(
            symbol=ctx.symbol,
            side=side,
            type=OrderType.LIMIT,
            amount=amount,
            price=maker_price(side, ctx.price, self.cfg.hedge_spread_pct),
            metadata={
                "reason": "hedge",
                "strategy": self.name,
                "reduce_only": True,
                "position_side": heavy.value,
                "imbalance": delta,
                "post_only": True,
            },
        )

    def _near_bound(
        self,
        ctx: StrategyContext,
        range_high: float,
        range_low: float,
        base_size: float,
        stops: dict[Side, float],
        budgets: dict[Side, float],
    ) -> OrderIntent | None:
        price = ctx.price
        near = self.cfg.near_bound_pct
        if range_high * (1 - near) <= price <= range_high:
            side, anchor = Side.SELL, range_high
        elif range_low <= price <= range_low * (1 + near):
            side, anchor = Side.BUY, range_low
        else:
            return None
        if ctx.orders_with_reason("near_bound"):
            return None
        limit = maker_price(side, anchor, self.cfg.hedge_spread_pct)
        per_unit = unit_risk(
            limit, stops[side], min_stop_distance_pct=ctx.min_stop_distance_pct, cost_rate=ctx.cost_rate
        )
        amount = min(base_size * 1.5, budgets[side] / per_unit)
        if amount <= 1e-12:
            return None
        budgets[side] -= amount * per_unit
        return OrderIntent(
            symbol=ctx.symbol,
            side=side,
            type=OrderType.LIMIT,
            amount=amount,
            price=limit,
            stop_price=stops[side],
            metadata={"reason": "near_bound", "strategy": self.name, "post_only": True},
        )

    def _close(self, ctx: StrategyContext, side: PositionSide, amount: float, reason: str) -> OrderIntent:
        return OrderIntent(
            symbol=ctx.symbol,
            side=side.closing_side,
            type=OrderType.MARKET,
            amount=amount,
            metadata={
                "reason": reason,
                "strategy": self.name,
                "reduce_only": True,
                "position_side": side.value,
            },
        )


def _pending_entry_notional(ctx: StrategyContext) -> float:
    total = 0.0
    for order in ctx.open_orders:
        if order.symbol == ctx.symbol and order.intent.is_entry:
            total += order.remaining * (order.intent.price or ctx.price)
    return total


def _pending_grid_keys(ctx: StrategyContext) -> set[tuple[Side, int]]:
    keys: set[tuple[Side, int]] = set()
    for order in ctx.open_orders:
        if order.symbol == ctx.symbol and order.intent.reason == "grid":
            keys.add((order.side, int(order.intent.metadata.get("grid_level", -1))))
    return keys
