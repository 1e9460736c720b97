"""风险管理：下单意图进入 OMS 前的闸门。"""

from __future__ import annotations

from dataclasses import replace
from datetime import date

from algo.risk.sizing import position_open_risk, unit_risk
from shared.config.schema import RiskConfig
from shared.errors import Rejected
from shared.models.models import (
    AccountState,
    Order,
    OrderIntent,
    OrderType,
    Position,
    PositionSide,
    ms_to_datetime,
)
from shared.utils.logging import setup_logger

# 浮点比较余量（相对）
_TOLERANCE = 1e-9


class RiskManager:
    """风险管理器。

    `approve(intent, state)` 的检查顺序：
    (a) 单笔风险：同方向持仓剩余风险 + 同方向挂单风险 + 本单数量 * 单位风险 ≤ balance * max_risk_per_trade；
    (b) 日内亏损：day_start_equity - equity ≥ max_daily_loss * day_start_equity 后，
        到下一个 UTC 日之前拒绝所有新开仓；
    (c) 仓位上限：持仓名义 + 同方向挂单名义 + 本单名义 ≤ max_position_pct * balance；
    (d) 黑天鹅：bar 间跳空 ≥ black_swan_gap 时，开仓意图被强制改写为减仓意图。

    减仓（reduce_only）与止损调整不受 (a)(c) 约束。所有拒单都会记录在
    `rejections` 并写日志，不会静默丢弃。

    Parameters
    ----------
    cfg:
        风控配置。
    cost_rate:
        滑点 + 手续费费率，用于单位风险的成本缓冲。
    suppress_warnings:
        是否抑制 warning 日志（回测常用）。
    """

    def __init__(self, cfg: RiskConfig | None = None, *, cost_rate: float = 0.0, suppress_warnings: bool = False):
        self.cfg = cfg or RiskConfig()
        self.cost_rate = float(cost_rate)
        self.logger = setup_logger("risk")
        self.suppress_warnings = suppress_warnings

        self.rejections: list[Rejected] = []
        self.conversions: list[dict] = []
        self.daily_pnl = 0.0

        # 日损风控状态
        self._daily_blocked = False
        self._blocked_day: date | None = None
        self._daily_block_logged = False

    # ----- 日内状态 -----
    def set_daily_pnl(self, pnl: float, day_start_equity: float, ts: int | None = None) -> None:
        """设置当日 PnL（金额），达到日损上限即封锁新开仓。

        Parameters
        ----------
        pnl:
            当日权益变化，亏损为负。
        day_start_equity:
            当日起始权益。
        ts:
            当前时间戳（毫秒），用于记录封锁所属的 UTC 日。
        """
        self.daily_pnl = pnl
        limit = self.cfg.max_daily_loss * day_start_equity
        if -pnl >= limit and not self._daily_blocked:
            self._daily_blocked = True
            self._blocked_day = ms_to_datetime(ts).date() if ts is not None else None
            if not self._daily_block_logged and not self.suppress_warnings:
                self.logger.warning(
                    f"Daily loss limit reached ({pnl:.2f} <= -{limit:.2f}), block new entries until next UTC day."
                )
            self._daily_block_logged = True

    def reset_daily_state(self, log: bool = True) -> None:
        """跨日重置风控状态。"""
        self.daily_pnl = 0.0
        self._daily_blocked = False
        self._blocked_day = None
        self._daily_block_logged = False
        if log and not self.suppress_warnings:
            self.logger.info("[RISK] Daily state reset.")

    @property
    def daily_blocked(self) -> bool:
        return self._daily_blocked

    def _sync_day(self, state: AccountState) -> None:
        day = ms_to_datetime(state.timestamp).date()
        if self._daily_blocked and self._blocked_day is not None and day != self._blocked_day:
            self.reset_daily_state(log=False)
        self.set_daily_pnl(state.daily_pnl, state.day_start_equity, state.timestamp)

    # ----- 闸门 -----
    def approve(self, intent: OrderIntent, state: AccountState) -> OrderIntent | Rejected:
        """单个意图审批；黑天鹅下开仓意图改写为对应持仓的减仓意图。"""
        self._sync_day(state)
        return self._approve_one(intent, state, pending=list(state.open_orders), stop_overrides={})

    def approve_all(self, intents: list[OrderIntent], state: AccountState) -> list[OrderIntent]:
        """批量审批：已批准的意图计入后续意图的挂单风险。

        黑天鹅触发时，开仓意图全部丢弃，并为每个尚未被策略减仓的持仓补一个减仓意图。
        """
        self._sync_day(state)
        if self._is_black_swan(state):
            return self._black_swan(intents, state)

        approved: list[OrderIntent] = []
        pending: list = list(state.open_orders)
        stop_overrides: dict[tuple[str, PositionSide], float] = {}
        for intent in intents:
            result = self._approve_one(intent, state, pending=pending, stop_overrides=stop_overrides)
            if isinstance(result, Rejected):
                continue
            approved.append(result)
            if result.is_stop_update and result.position_side is not None and result.stop_price is not None:
                stop_overrides[(result.symbol, result.position_side)] = result.stop_price
            elif result.is_entry and result.type is not OrderType.MARKET:
                pending.append(result)
            elif result.is_entry:
                # 市价单当根成交，按新增持仓计入
                pending.append(result)
        return approved

    def _approve_one(
        self,
        intent: OrderIntent,
        state: AccountState,
        *,
        pending: list,
        stop_overrides: dict[tuple[str, PositionSide], float],
    ) -> OrderIntent | Rejected:
        if intent.amount <= 0:
            return self._reject("invalid_amount", intent, state)
        if not intent.is_entry:
            return intent

        if self._is_black_swan(state):
            pos = self._first_position(state, intent.symbol)
            if pos is None:
                return self._reject("black_swan", intent, state, gap=state.gap_pct)
            reduction = self._reduction(pos, "black_swan")
            self._record_conversion(intent, reduction, state)
            return reduction

        if not state.trading_enabled:
            return self._reject("kill_switch", intent, state)

        # (a) 单笔风险
        side = PositionSide.from_order_side(intent.side)
        ref_price = intent.price if intent.type is OrderType.LIMIT and intent.price else state.price
        per_unit = unit_risk(
            ref_price,
            intent.stop_price,
            min_stop_distance_pct=self.cfg.min_stop_distance_pct,
            cost_rate=self._cost_rate(),
        )
        existing = self._side_risk(state, intent.symbol, side, pending, stop_overrides)
        limit = state.balance * self.cfg.max_risk_per_trade
        risk = existing + intent.amount * per_unit
        if risk > limit * (1 + _TOLERANCE) + 1e-12:
            return self._reject(
                "max_risk_per_trade", intent, state, risk=risk, existing=existing, limit=limit
            )

        # (b) 日内亏损
        if self._daily_blocked:
            return self._reject("max_daily_loss", intent, state, daily_pnl=self.daily_pnl)

        # (c) 仓位上限
        exposure = state.exposure()
        pending_notional = sum(
            _remaining(o) * (_intent_of(o).price or state.price)
            for o in pending
            if _intent_of(o).symbol == intent.symbol
            and _intent_of(o).is_entry
            and _intent_of(o).side is intent.side
        )
        notional = intent.amount * ref_price
        ceiling = state.balance * self.cfg.max_position_pct
        if exposure + pending_notional + notional > ceiling * (1 + _TOLERANCE) + 1e-12:
            return self._reject(
                "max_position_pct",
                intent,
                state,
                exposure=exposure,
                pending=pending_notional,
                notional=notional,
                ceiling=ceiling,
            )
        return intent

    # ----- 黑天鹅 -----
    def _is_black_swan(self, state: AccountState) -> bool:
        return state.gap_pct >= self.cfg.black_swan_gap

    def _black_swan(self, intents: list[OrderIntent], state: AccountState) -> list[OrderIntent]:
        out: list[OrderIntent] = []
        reduced: set[tuple[str, PositionSide]] = set()
        entries: list[OrderIntent] = []
        for intent in intents:
            if intent.is_entry:
                entries.append(intent)
                continue
            out.append(intent)
            if intent.reduce_only and intent.position_side is not None:
                reduced.add((intent.symbol, intent.position_side))

        for pos in state.positions:
            if pos.amount <= 0 or (pos.symbol, pos.side) in reduced:
                continue
            out.append(self._reduction(pos, "black_swan"))
            reduced.add((pos.symbol, pos.side))

        for intent in entries:
            self._record_conversion(intent, None, state)
        if not self.suppress_warnings:
            self.logger.warning(
                f"[RISK] Black swan gap {state.gap_pct:.2%} >= {self.cfg.black_swan_gap:.2%}: "
                f"{len(entries)} entries converted, {len(state.positions)} positions reduced."
            )
        return out

    def _reduction(self, pos: Position, reason: str) -> OrderIntent:
        return OrderIntent(
            symbol=pos.symbol,
            side=pos.side.closing_side,
            type=OrderType.MARKET,
            amount=pos.amount * self.cfg.black_swan_reduction,
            metadata={
                "reason": reason,
                "strategy": "risk",
                "reduce_only": True,
                "position_side": pos.side.value,
            },
        )

    def _record_conversion(self, intent: OrderIntent, reduction: OrderIntent | None, state: AccountState) -> None:
        self.conversions.append(
            {
                "timestamp": state.timestamp,
                "symbol": intent.symbol,
                "side": intent.side.value,
                "amount": intent.amount,
                "reason": "black_swan",
                "reduction_amount": reduction.amount if reduction is not None else None,
            }
        )

    # ----- 工具 -----
    def _cost_rate(self) -> float:
        return self.cost_rate if self.cfg.include_cost_buffer else 0.0

    def _side_risk(
        self,
        state: AccountState,
        symbol: str,
        side: PositionSide,
        pending: list,
        stop_overrides: dict[tuple[str, PositionSide], float],
    ) -> float:
        total = 0.0
        for pos in state.positions:
            if pos.symbol != symbol or pos.side is not side:
                continue
            override = stop_overrides.get((symbol, side))
            if override is not None:
                pos = replace(pos, stop_price=override)
            total += position_open_risk(
                pos, cost_rate=self._cost_rate(), min_stop_distance_pct=self.cfg.min_stop_distance_pct
            )
        for item in pending:
            intent = _intent_of(item)
            if intent.symbol != symbol or not intent.is_entry or intent.side is not side.opening_side:
                continue
            ref = intent.price if intent.type is OrderType.LIMIT and intent.price else state.price
            total += _remaining(item) * unit_risk(
                ref,
                intent.stop_price,
                min_stop_distance_pct=self.cfg.min_stop_distance_pct,
                cost_rate=self._cost_rate(),
            )
        return total

    @staticmethod
    def _first_position(state: AccountState, symbol: str) -> Position | None:
        for pos in state.positions:
            if pos.symbol == symbol and pos.amount > 0:
                return pos
        return None

    def _reject(self, reason: str, intent: OrderIntent, state: AccountState, **details) -> Rejected:
        rejected = Rejected(reason=reason, intent=intent, timestamp=state.timestamp, details=details)
        self.rejections.append(rejected)
        if not self.suppress_warnings:
            self.logger.info(
                f"[RISK] Reject {intent.symbol} {intent.side.value} {intent.amount:.6f} "
                f"({intent.reason or intent.type.value}): {reason}"
            )
        return rejected


def _intent_of(item) -> OrderIntent:
    return item.intent if isinstance(item, Order) else item


def _remaining(item) -> float:
    return item.remaining if isinstance(item, Order) else item.amount
