"""趋势跟随策略：Donchian 突破 + ADX 确认 / SAR 翻转入场，追踪止损与金字塔加仓。"""

from __future__ import annotations

from dataclasses import replace

from algo.risk.sizing import (
    atr_stop_distance,
    position_open_risk,
    risk_based_amount,
    unit_risk,
)
from algo.strategy.base import Strategy, StrategyContext
from shared.config.schema import TrendFollowConfig
from shared.models.models import OrderIntent, OrderType, Position, PositionSide


class TrendFollowStrategy(Strategy):
    """趋势跟随。

    入场：
    - 做多：`prev_close <= prior_upper < close` 且 ADX > adx_threshold，或 SAR 翻转为上升；
    - 做空对称；多头趋势里不开空，空头趋势里不开多。

    持仓管理（只朝有利方向移动止损）：
    - 浮盈 ≥ breakeven_r * R：止损移到开仓价；
    - 浮盈 ≥ lock_r * R：锁定 lock_fraction 的浮盈；
    - 浮盈为正时按 `price ∓ ATR * trailing_stop_factor` 追踪；
    - SAR 反向翻转：市价平仓；
    - 每 pyramid_step_r * R 的有利波动加一次 0.5R 风险的仓位，最多 max_pyramids 次，
      且整体持仓在止损处的亏损不超过单笔风险上限。

    Parameters
    ----------
    cfg:
        策略参数。
    """

    name = "trend_follow"

    def __init__(self, cfg: TrendFollowConfig | None = None):
        self.cfg = cfg or TrendFollowConfig()

    def execute(self, ctx: StrategyContext) -> list[OrderIntent]:
        snap = ctx.snapshot
        snap.require_ready(self.name, snap.bars_seen + 1)

        intents: list[OrderIntent] = []
        long_pos = ctx.position(PositionSide.LONG)
        short_pos = ctx.position(PositionSide.SHORT)

        for pos in (long_pos, short_pos):
            if pos is not None and pos.amount > 0:
                intents.extend(self._manage(ctx, pos))

        if long_pos is None and not ctx.regime.is_downtrend and self._long_signal(ctx):
            intent = self._entry(ctx, PositionSide.LONG)
            if intent is not None:
                intents.append(intent)
        elif short_pos is None and not ctx.regime.is_uptrend and self._short_signal(ctx):
            intent = self._entry(ctx, PositionSide.SHORT)
            if intent is not None:
                intents.append(intent)
        return intents

    # ----- 信号 -----
    def _long_signal(self, ctx: StrategyContext) -> str | None:
        snap = ctx.snapshot
        if (
            snap.prior_upper is not None
            and snap.prev_close is not None
            and snap.prev_close <= snap.prior_upper < snap.close
            and snap.adx > self.cfg.adx_threshold
        ):
            return "donchian_breakout"
        if self.cfg.use_sar_entry and snap.sar_flipped and snap.sar_uptrend:
            return "sar_flip"
        return None

    def _short_signal(self, ctx: StrategyContext) -> str | None:
        snap = ctx.snapshot
        if (
            snap.prior_lower is not None
            and snap.prev_close is not None
            and snap.prev_close >= snap.prior_lower > snap.close
            and snap.adx > self.cfg.adx_threshold
        ):
            return "donchian_breakout"
        if self.cfg.use_sar_entry and snap.sar_flipped and snap.sar_uptrend is False:
            return "sar_flip"
        return None

    # ----- 入场 -----
    def _entry(self, ctx: StrategyContext, side: PositionSide) -> OrderIntent | None:
        price = ctx.price
        signal = self._long_signal(ctx) if side is PositionSide.LONG else self._short_signal(ctx)
        stop_dist = atr_stop_distance(
            price, ctx.snapshot.atr, self.cfg.initial_stop_atr_factor, ctx.min_stop_distance_pct
        )
        amount = risk_based_amount(
            ctx.risk_amount,
            price,
            stop_dist,
            cost_rate=ctx.cost_rate,
            max_notional=ctx.balance * self.cfg.max_notional_fraction,
        )
        if amount <= 0:
            return None
        stop = price - side.sign * stop_dist
        return OrderIntent(
            symbol=ctx.symbol,
            side=side.opening_side,
            type=OrderType.MARKET,
            amount=amount,
            stop_price=stop,
            metadata={
                "reason": "entry",
                "strategy": self.name,
                "signal": signal,
                "initial_risk": stop_dist,
                "atr": ctx.snapshot.atr,
                "adx": ctx.snapshot.adx,
            },
        )

    # ----- 持仓管理 -----
    def _manage(self, ctx: StrategyContext, pos: Position) -> list[OrderIntent]:
        snap = ctx.snapshot
        price = ctx.price
        sign = pos.side.sign

        # SAR 反转：整仓市价平
        if self.cfg.sar_exit and snap.sar_flipped and snap.sar_uptrend is not None:
            if (pos.side is PositionSide.LONG) != snap.sar_uptrend:
                return [
                    OrderIntent(
                        symbol=ctx.symbol,
                        side=pos.side.closing_side,
                        type=OrderType.MARKET,
                        amount=pos.amount,
                        metadata={
                            "reason": "sar_exit",
                            "strategy": self.name,
                            "reduce_only": True,
                            "position_side": pos.side.value,
                        },
                    )
                ]

        intents: list[OrderIntent] = []
        r_unit = _initial_risk(pos, snap.atr * self.cfg.initial_stop_atr_factor)
        profit = sign * (price - pos.entry_price)
        current = pos.stop_price
        new_stop = current

        if profit > 0 and r_unit > 0:
            candidates: list[float] = []
            if profit >= self.cfg.breakeven_r * r_unit:
                candidates.append(pos.entry_price)
            if profit >= self.cfg.lock_r * r_unit:
                candidates.append(pos.entry_price + sign * profit * self.cfg.lock_fraction)
            candidates.append(price - sign * snap.atr * self.cfg.trailing_stop_factor)
            for c in candidates:
                if new_stop is None or sign * (c - new_stop) > 0:
                    new_stop = c

        # 止损不能越过当前价
        if new_stop is not None and sign * (price - new_stop) <= 0:
            new_stop = current
        if new_stop is not None and new_stop != current:
            intents.append(
                OrderIntent(
                    symbol=ctx.symbol,
                    side=pos.side.closing_side,
                    type=OrderType.STOP,
                    amount=pos.amount,
                    stop_price=new_stop,
                    metadata={
                        "reason": "trailing_stop",
                        "strategy": self.name,
                        "action": "update_stop",
                        "position_side": pos.side.value,
                    },
                )
            )

        add = self._pyramid(ctx, pos, r_unit, new_stop)
        if add is not None:
            intents.append(add)
        return intents

    def _pyramid(
        self, ctx: StrategyContext, pos: Position, r_unit: float, stop: float | None
    ) -> OrderIntent | None:
        cfg = self.cfg
        adds = int(pos.metadata.get("adds", 0))
        if adds >= cfg.max_pyramids or stop is None or r_unit <= 0:
            return None
        if pos.metadata.get("strategy") not in (None, self.name):
            return None
        price = ctx.price
        sign = pos.side.sign
        anchor = float(pos.metadata.get("anchor_price", pos.entry_price))
        target = anchor + sign * (adds + 1) * cfg.pyramid_step_r * r_unit
        if sign * (price - target) < 0:
            return None
        if sign * (price - stop) <= 0:
            return None

        per_unit = unit_risk(
            price, stop, min_stop_distance_pct=ctx.min_stop_distance_pct, cost_rate=ctx.cost_rate
        )
        # 整体持仓在新止损处的剩余风险
        existing = position_open_risk(
            replace(pos, stop_price=stop),
            cost_rate=ctx.cost_rate,
            min_stop_distance_pct=ctx.min_stop_distance_pct,
        )
        budget = min(ctx.risk_amount * cfg.pyramid_risk_fraction, ctx.risk_amount - existing)
        if budget <= 0:
            return None
        amount = budget / per_unit
        max_notional = ctx.balance * ctx.max_position_pct - pos.notional(price)
        amount = min(amount, max(0.0, max_notional) / price)
        if amount <= 0:
            return None
        return OrderIntent(
            symbol=ctx.symbol,
            side=pos.side.opening_side,
            type=OrderType.MARKET,
            amount=amount,
            stop_price=stop,
            metadata={"reason": "pyramid", "strategy": self.name, "pyramid_level": adds + 1},
        )


def _initial_risk(pos: Position, fallback: float) -> float:
    raw = pos.metadata.get("initial_risk")
    if raw:
        return float(raw)
    if pos.stop_price is not None:
        return abs(pos.entry_price - pos.stop_price)
    return fallback
