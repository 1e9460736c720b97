"""订单与持仓生命周期管理（OMS，单 symbol）。

订单：PENDING → FILLED / PARTIALLY_FILLED / CANCELLED / REJECTED
持仓：OPEN →（加仓/部分平仓）OPEN → CLOSED

约定：
- 同一 symbol 同一方向只有一个 Position；非 reduce-only 的反向成交先冲抵反向持仓，
  剩余部分再开新仓（净额模式）；
- 每次（部分）平仓生成一条 Trade，id 由 fill_id + position_id 决定，全局唯一；
- 同一 fill_id 只记账一次（重放幂等）；
- reduce-only 成交量超过持仓视为状态不一致，抛出 FillSimulationError。
"""

from __future__ import annotations

from dataclasses import replace

from broker.abstract_broker import Broker, BrokerMode
from broker.execution.simulator import BacktestFillSimulator, FillEvent
from shared.errors import FillSimulationError
from shared.models.models import (
    AccountState,
    Bar,
    Order,
    OrderIntent,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    PositionStatus,
    Trade,
)
from shared.utils.client_order_id import make_client_order_id, make_trade_id
from shared.utils.logging import setup_logger

_EPS = 1e-12
_REL_TOL = 1e-9


class OrderManagementSystem(Broker):
    """回测 OMS：撮合、记账、生成 Trade。

    Parameters
    ----------
    symbol:
        品种。
    initial_balance:
        初始资金。
    simulator:
        撮合模拟器（滑点/手续费）。
    order_ttl_bars:
        挂单存活 bar 数，超过即撤单；0 表示不限。
    strategy_id:
        生成 client_order_id 的默认策略标识。
    """

    mode = BrokerMode.BACKTEST

    def __init__(
        self,
        symbol: str,
        *,
        initial_balance: float,
        simulator: BacktestFillSimulator | None = None,
        order_ttl_bars: int = 24,
        strategy_id: str = "regime",
        suppress_logs: bool = False,
    ):
        self.symbol = symbol
        self.initial_balance = float(initial_balance)
        self.simulator = simulator or BacktestFillSimulator(commission_rate=0.0)
        self.order_ttl_bars = int(order_ttl_bars)
        self.strategy_id = strategy_id
        self.logger = setup_logger("oms")
        self.suppress_logs = suppress_logs

        self.realized_pnl = 0.0
        self.commissions = 0.0
        self.last_price: float | None = None
        self.bar_index = -1

        self.orders: dict[str, Order] = {}
        self.positions: dict[PositionSide, Position] = {}
        self.closed_positions: list[Position] = []
        self.trades: list[Trade] = []

        self._seen_client_order_ids: set[str] = set()
        self._processed_fill_ids: set[str] = set()
        self._trade_ids: set[str] = set()
        self._signal_seq = 0
        self._position_seq = 0
        self._stop_seq = 0

    # ----- 账户视图 -----
    @property
    def balance(self) -> float:
        """已实现余额 = 初始资金 + 已实现盈亏 - 手续费。"""
        return self.initial_balance + self.realized_pnl - self.commissions

    def unrealized_pnl(self, price: float | None = None) -> float:
        px = price if price is not None else self.last_price
        if px is None:
            return 0.0
        return sum(p.unrealized_pnl(px) for p in self.positions.values())

    def equity(self, price: float | None = None) -> float:
        return self.balance + self.unrealized_pnl(price)

    def exposure(self, price: float | None = None) -> float:
        px = price if price is not None else self.last_price
        return sum(p.notional(px) for p in self.positions.values())

    def open_orders(self) -> list[Order]:
        return [replace(o) for o in self.orders.values() if o.is_open]

    def open_positions(self) -> list[Position]:
        return [p.snapshot() for p in self.positions.values()]

    def account_state(
        self,
        bar: Bar,
        *,
        prev_close: float | None,
        day_start_equity: float,
        trading_enabled: bool = True,
    ) -> AccountState:
        return AccountState(
            balance=self.balance,
            equity=self.equity(bar.close),
            day_start_equity=day_start_equity,
            price=bar.close,
            timestamp=bar.timestamp,
            prev_close=prev_close,
            positions=tuple(self.open_positions()),
            open_orders=tuple(self.open_orders()),
            trading_enabled=trading_enabled,
        )

    # ----- 下单/撤单 -----
    def submit(self, intent: OrderIntent, bar: Bar) -> Order | None:
        """提交意图：止损调整直接作用于持仓；市价单当根成交；限价/止损单挂单等待后续 bar。"""
        if intent.symbol != self.symbol:
            raise FillSimulationError(f"OMS for {self.symbol} got intent for {intent.symbol}")
        self.last_price = bar.close

        if intent.is_stop_update:
            self._update_stop(intent)
            return None

        self._signal_seq += 1
        cid = intent.client_order_id or make_client_order_id(
            strategy_id=str(intent.metadata.get("strategy") or self.strategy_id),
            symbol=intent.symbol,
            side=intent.side.value,
            intent_ts=bar.timestamp,
            signal_seq=self._signal_seq,
            reason=intent.reason,
        )
        if cid in self._seen_client_order_ids:
            self.logger.info(f"Duplicate client_order_id {cid}, skip.")
            return self.orders.get(cid)
        self._seen_client_order_ids.add(cid)

        intent = intent if intent.client_order_id else intent.with_client_order_id(cid)
        order = Order(id=cid, intent=intent, created_at=bar.timestamp, created_bar=self.bar_index)
        self.orders[cid] = order

        if intent.amount <= 0:
            order.status = OrderStatus.REJECTED
            order.reject_reason = "invalid_amount"
            return order

        if intent.reduce_only:
            pos = self._reduce_target(intent)
            if pos is None:
                order.status = OrderStatus.REJECTED
                order.reject_reason = "no_position"
                self.logger.info(f"Reject reduce-only {cid}: no {intent.position_side} position.")
                return order

        if intent.type is OrderType.MARKET:
            fill = self.simulator.fill_market(order, bar, self._next_fill_id(order))
            self.apply_fill(fill)
        return order

    def cancel(self, order_id: str, reason: str = "cancelled") -> bool:
        order = self.orders.get(order_id)
        if order is None or not order.is_open:
            return False
        order.status = OrderStatus.CANCELLED
        order.reject_reason = reason
        return True

    def cancel_where(self, predicate, reason: str) -> int:
        n = 0
        for order in list(self.orders.values()):
            if order.is_open and predicate(order):
                n += int(self.cancel(order.id, reason))
        return n

    # ----- 每根 bar 的撮合 -----
    def process_bar(self, bar: Bar) -> list[FillEvent]:
        """在策略决策前推进一根 bar：挂单过期 → 保护性止损 → 挂单撮合 → 新建持仓的盘中止损。"""
        self.bar_index += 1
        self.last_price = bar.close
        fills: list[FillEvent] = []

        if self.order_ttl_bars > 0:
            expired = self.cancel_where(
                lambda o: self.bar_index - o.created_bar >= self.order_ttl_bars, reason="ttl"
            )
            if expired and not self.suppress_logs:
                self.logger.debug(f"{self.symbol} cancelled {expired} expired orders.")

        fills.extend(self._check_stops(bar))

        resting = sorted(
            (o for o in self.orders.values() if o.is_open and o.created_bar < self.bar_index),
            key=lambda o: (o.created_bar, o.created_at),
        )
        opened = False
        for order in resting:
            if not order.is_open:
                continue
            if order.intent.reduce_only:
                pos = self._reduce_target(order.intent)
                if pos is None:
                    self.cancel(order.id, "position_closed")
                    continue
                if order.remaining > pos.amount * (1 + _REL_TOL) + _EPS:
                    self.cancel(order.id, "position_reduced")
                    continue
            fill = self.simulator.fill_resting(order, bar, self._next_fill_id(order))
            if fill is None:
                continue
            self.apply_fill(fill)
            fills.append(fill)
            opened = opened or not order.intent.reduce_only

        # 挂单在本根 bar 内新开/加仓的持仓，同一根 bar 触及止损也要止损
        if opened:
            fills.extend(self._check_stops(bar, intrabar=True))
        return fills

    def _check_stops(self, bar: Bar, intrabar: bool = False) -> list[FillEvent]:
        fills: list[FillEvent] = []
        for side in (PositionSide.LONG, PositionSide.SHORT):
            pos = self.positions.get(side)
            if pos is None or pos.stop_price is None:
                continue
            self._stop_seq += 1
            fill = self.simulator.protective_stop(
                side,
                pos.amount,
                pos.stop_price,
                bar,
                fill_id=f"{pos.id}-s{self._stop_seq}",
                order_id=f"{pos.id}-stop",
                symbol=self.symbol,
                intrabar=intrabar,
            )
            if fill is None:
                continue
            reason = "stop_gap" if fill.gap else "stop"
            intent = OrderIntent(
                symbol=self.symbol,
                side=side.closing_side,
                type=OrderType.STOP,
                amount=pos.amount,
                stop_price=pos.stop_price,
                metadata={"reason": reason, "reduce_only": True, "position_side": side.value},
            )
            fill = replace(fill, intent=intent)
            self.apply_fill(fill)
            fills.append(fill)
            if fill.gap and not self.suppress_logs:
                self.logger.warning(
                    f"{self.symbol} stop gap: stop={intent.stop_price:.6f} open={bar.open:.6f} fill={fill.price:.6f}"
                )
        return fills

    # ----- 记账 -----
    def apply_fill(self, fill: FillEvent) -> list[Trade]:
        """把一笔成交记入订单/持仓/Trade。

        同一 fill_id 重复处理直接返回 []（幂等）。

        Raises
        ------
        FillSimulationError
            reduce-only 成交量超过持仓，或 Trade id 冲突。
        """
        if fill.fill_id in self._processed_fill_ids:
            self.logger.debug(f"Fill {fill.fill_id} already processed, skip.")
            return []
        if fill.amount <= 0:
            raise FillSimulationError(f"Fill {fill.fill_id} has non-positive amount {fill.amount}")

        order = self.orders.get(fill.order_id)
        intent = fill.intent or (order.intent if order is not None else None)
        if intent is None:
            raise FillSimulationError(f"Fill {fill.fill_id} has no matching order {fill.order_id}")

        self._processed_fill_ids.add(fill.fill_id)
        self.commissions += fill.commission

        trades: list[Trade] = []
        opening_side = PositionSide.from_order_side(fill.side)
        closing_target = _opposite(opening_side)

        if intent.reduce_only:
            target = intent.position_side or closing_target
            pos = self.positions.get(target)
            if pos is None:
                raise FillSimulationError(f"Reduce-only fill {fill.fill_id} without {target.value} position")
            amount = fill.amount
            if amount > pos.amount * (1 + _REL_TOL) + _EPS:
                raise FillSimulationError(
                    f"Reduce-only fill {fill.fill_id} amount {amount} exceeds position {pos.amount}"
                )
            amount = min(amount, pos.amount)
            trades.append(self._close_portion(pos, amount, fill, fill.commission, intent.reason or "reduce"))
        else:
            remaining = fill.amount
            opposite = self.positions.get(closing_target)
            if opposite is not None:
                close_amt = min(remaining, opposite.amount)
                commission = fill.commission * close_amt / fill.amount
                trades.append(self._close_portion(opposite, close_amt, fill, commission, intent.reason or "offset"))
                remaining -= close_amt
            if remaining > _EPS * max(1.0, fill.amount):
                commission = fill.commission * remaining / fill.amount
                self._open_or_add(opening_side, remaining, fill, commission, intent)

        if order is not None:
            prev = order.filled_amount
            order.filled_amount = prev + fill.amount
            order.avg_fill_price = (order.avg_fill_price * prev + fill.price * fill.amount) / order.filled_amount
            order.fill_count += 1
            order.updated_at = fill.timestamp
            if order.remaining <= _EPS * max(1.0, order.amount):
                order.status = OrderStatus.FILLED
            else:
                order.status = OrderStatus.PARTIALLY_FILLED
        return trades

    def close_all(self, bar: Bar, reason: str = "end_of_backtest") -> list[Trade]:
        """撤掉全部挂单，并按 bar 收盘价（含滑点）市价平掉所有持仓。"""
        self.cancel_where(lambda o: True, reason=reason)
        trades: list[Trade] = []
        for side in (PositionSide.LONG, PositionSide.SHORT):
            pos = self.positions.get(side)
            if pos is None:
                continue
            intent = OrderIntent(
                symbol=self.symbol,
                side=side.closing_side,
                type=OrderType.MARKET,
                amount=pos.amount,
                metadata={"reason": reason, "reduce_only": True, "position_side": side.value},
            )
            price = self.simulator.slippage.apply(price=bar.close, side=intent.side)
            fill = FillEvent(
                fill_id=f"{pos.id}-{reason}-{bar.timestamp}",
                order_id=f"{pos.id}-{reason}",
                symbol=self.symbol,
                side=intent.side,
                amount=pos.amount,
                price=price,
                commission=self.simulator.commission(pos.amount * price),
                timestamp=bar.timestamp,
                intent=intent,
            )
            trades.extend(self.apply_fill(fill))
        self.last_price = bar.close
        return trades

    # ----- 内部 -----
    def _next_fill_id(self, order: Order) -> str:
        return f"{order.id}-f{order.fill_count + 1}"

    def _reduce_target(self, intent: OrderIntent) -> Position | None:
        target = intent.position_side or _opposite(PositionSide.from_order_side(intent.side))
        return self.positions.get(target)

    def _update_stop(self, intent: OrderIntent) -> None:
        side = intent.position_side or _opposite(PositionSide.from_order_side(intent.side))
        pos = self.positions.get(side)
        if pos is None or intent.stop_price is None:
            return
        pos.stop_price = float(intent.stop_price)
        pos.metadata["stop_reason"] = intent.reason

    def _open_or_add(
        self, side: PositionSide, amount: float, fill: FillEvent, commission: float, intent: OrderIntent
    ) -> Position:
        pos = self.positions.get(side)
        if pos is None:
            self._position_seq += 1
            pos = Position(
                id=f"pos_{self.symbol}_{self._position_seq}",
                symbol=self.symbol,
                side=side,
                amount=amount,
                entry_price=fill.price,
                opened_at=fill.timestamp,
                stop_price=intent.stop_price,
                original_amount=amount,
                entry_commission=commission,
                metadata={
                    "strategy": intent.metadata.get("strategy"),
                    "entry_reason": intent.reason,
                    "anchor_price": fill.price,
                    "adds": 0,
                },
            )
            if intent.metadata.get("initial_risk") is not None:
                pos.metadata["initial_risk"] = float(intent.metadata["initial_risk"])
            self.positions[side] = pos
            if not self.suppress_logs:
                self.logger.debug(f"Open {pos.id} {side.value} {amount:.6f} @ {fill.price:.6f}")
            return pos

        total = pos.amount + amount
        pos.entry_price = (pos.entry_price * pos.amount + fill.price * amount) / total
        pos.amount = total
        pos.original_amount += amount
        pos.entry_commission += commission
        if intent.stop_price is not None:
            if pos.stop_price is None or side.sign * (intent.stop_price - pos.stop_price) > 0:
                pos.stop_price = float(intent.stop_price)
        if intent.reason == "pyramid":
            pos.metadata["adds"] = int(pos.metadata.get("adds", 0)) + 1
        return pos

    def _close_portion(
        self, pos: Position, amount: float, fill: FillEvent, exit_commission: float, reason: str
    ) -> Trade:
        trade_id = make_trade_id(fill_id=fill.fill_id, position_id=pos.id)
        if trade_id in self._trade_ids:
            raise FillSimulationError(f"Duplicate trade id {trade_id}")
        self._trade_ids.add(trade_id)

        share = amount / pos.amount if pos.amount > 0 else 1.0
        entry_commission = pos.entry_commission * share
        gross = pos.side.sign * (fill.price - pos.entry_price) * amount
        self.realized_pnl += gross

        trade = Trade(
            id=trade_id,
            symbol=pos.symbol,
            side=pos.side,
            entry_price=pos.entry_price,
            exit_price=fill.price,
            entry_time=pos.opened_at,
            exit_time=fill.timestamp,
            amount=amount,
            pnl=gross - entry_commission - exit_commission,
            commission=entry_commission + exit_commission,
            position_id=pos.id,
            fill_id=fill.fill_id,
            exit_reason=reason,
        )
        self.trades.append(trade)

        pos.entry_commission -= entry_commission
        pos.amount -= amount
        if pos.amount <= _EPS * max(1.0, pos.original_amount):
            pos.amount = 0.0
            pos.status = PositionStatus.CLOSED
            self.positions.pop(pos.side, None)
            self.closed_positions.append(pos)
            self.cancel_where(
                lambda o: o.intent.reduce_only and self._reduce_target(o.intent) is None,
                reason="position_closed",
            )
        return trade


def _opposite(side: PositionSide) -> PositionSide:
    return PositionSide.SHORT if side is PositionSide.LONG else PositionSide.LONG
