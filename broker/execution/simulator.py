"""回测撮合模拟器。

职责：给定订单与当前 bar，判断是否成交、成交价与成交量，产出 FillEvent；
不修改订单/持仓（由 OMS 负责）。

撮合规则：
- 市价单：当根收盘价 ± 滑点，taker 手续费；
- 限价单：bar 的 high/low 区间穿过限价即按限价成交（maker，无滑点）；
- 止损单 / 保护性止损：价格穿过 stop 后按市价处理；开盘即跳空越过 stop 时按开盘价成交并标记 gap。
"""

from __future__ import annotations

from dataclasses import dataclass

from broker.execution.slippage_models import FractionSlippageModel, SlippageModel
from shared.models.models import Bar, Order, OrderIntent, OrderType, PositionSide, Side


@dataclass(frozen=True)
class FillEvent:
    """一次成交（不可变）。fill_id 全局唯一，重放同一 FillEvent 不会重复记账。"""

    fill_id: str
    order_id: str
    symbol: str
    side: Side
    amount: float
    price: float
    commission: float
    timestamp: int
    liquidity: str = "taker"
    gap: bool = False
    intent: OrderIntent | None = None

    @property
    def notional(self) -> float:
        return self.amount * self.price


class BacktestFillSimulator:
    """按 bar 撮合。

    Parameters
    ----------
    commission_rate:
        taker 手续费率。
    slippage:
        滑点模型（默认无滑点）。
    maker_commission_rate:
        maker 手续费率；None 时与 taker 相同。
    max_volume_participation:
        挂单单根 bar 最多成交 bar.volume * ratio；None 表示不限。
    """

    def __init__(
        self,
        *,
        commission_rate: float,
        slippage: SlippageModel | None = None,
        maker_commission_rate: float | None = None,
        max_volume_participation: float | None = None,
    ):
        self.commission_rate = float(commission_rate)
        self.maker_commission_rate = (
            float(maker_commission_rate) if maker_commission_rate is not None else self.commission_rate
        )
        self.slippage = slippage or FractionSlippageModel(0.0)
        self.max_volume_participation = max_volume_participation

    def commission(self, notional: float, *, maker: bool = False) -> float:
        rate = self.maker_commission_rate if maker else self.commission_rate
        return abs(notional) * rate

    def fill_market(self, order: Order, bar: Bar, fill_id: str, amount: float | None = None) -> FillEvent:
        qty = order.remaining if amount is None else float(amount)
        price = self.slippage.apply(price=bar.close, side=order.side)
        return FillEvent(
            fill_id=fill_id,
            order_id=order.id,
            symbol=order.symbol,
            side=order.side,
            amount=qty,
            price=price,
            commission=self.commission(qty * price),
            timestamp=bar.timestamp,
            liquidity="taker",
        )

    def fill_resting(self, order: Order, bar: Bar, fill_id: str) -> FillEvent | None:
        """挂单（LIMIT/STOP）在本根 bar 上的成交；未触发返回 None。"""
        if order.type is OrderType.LIMIT:
            limit = order.intent.price
            if limit is None:
                return None
            crossed = bar.low <= limit if order.side is Side.BUY else bar.high >= limit
            if not crossed:
                return None
            qty = self._participation_cap(order.remaining, bar)
            if qty <= 0:
                return None
            return FillEvent(
                fill_id=fill_id,
                order_id=order.id,
                symbol=order.symbol,
                side=order.side,
                amount=qty,
                price=float(limit),
                commission=self.commission(qty * limit, maker=True),
                timestamp=bar.timestamp,
                liquidity="maker",
            )

        if order.type is OrderType.STOP:
            stop = order.intent.stop_price
            if stop is None:
                return None
            triggered = self.stop_price_for(order.side, stop, bar)
            if triggered is None:
                return None
            price, gap = triggered
            qty = order.remaining
            return FillEvent(
                fill_id=fill_id,
                order_id=order.id,
                symbol=order.symbol,
                side=order.side,
                amount=qty,
                price=price,
                commission=self.commission(qty * price),
                timestamp=bar.timestamp,
                liquidity="taker",
                gap=gap,
            )
        return None

    def stop_price_for(self, side: Side, stop: float, bar: Bar) -> tuple[float, bool] | None:
        """止损触发价：卖出止损 `min(stop, open)`，买入止损 `max(stop, open)`，再叠加滑点。"""
        if side is Side.SELL:
            if bar.low > stop:
                return None
            gap = bar.open < stop
            raw = min(stop, bar.open)
        else:
            if bar.high < stop:
                return None
            gap = bar.open > stop
            raw = max(stop, bar.open)
        return self.slippage.apply(price=raw, side=side), gap

    def protective_stop(
        self,
        position_side: PositionSide,
        amount: float,
        stop: float,
        bar: Bar,
        *,
        fill_id: str,
        order_id: str,
        symbol: str,
        intrabar: bool = False,
    ) -> FillEvent | None:
        """持仓保护性止损。

        intrabar=True 表示持仓是本根 bar 内由挂单成交建立的：开盘价与它无关，
        只要 bar 区间触及 stop 就按 stop 成交，不标记 gap。
        """
        side = position_side.closing_side
        if intrabar:
            crossed = bar.low <= stop if side is Side.SELL else bar.high >= stop
            if not crossed:
                return None
            price, gap = self.slippage.apply(price=stop, side=side), False
        else:
            triggered = self.stop_price_for(side, stop, bar)
            if triggered is None:
                return None
            price, gap = triggered
        return FillEvent(
            fill_id=fill_id,
            order_id=order_id,
            symbol=symbol,
            side=side,
            amount=amount,
            price=price,
            commission=self.commission(amount * price),
            timestamp=bar.timestamp,
            liquidity="taker",
            gap=gap,
        )

    def _participation_cap(self, qty: float, bar: Bar) -> float:
        ratio = self.max_volume_participation
        if ratio is None or bar.volume <= 0:
            return qty
        return min(qty, bar.volume * ratio)
