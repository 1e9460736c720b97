"""策略协议与策略输入上下文。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from algo.indicators.engine import IndicatorSnapshot
from shared.models.models import Bar, Order, OrderIntent, Position, PositionSide, RegimeLabel


@dataclass(frozen=True)
class StrategyContext:
    """策略一次决策所需的只读输入。

    positions / open_orders 是 OMS 的快照，策略修改它们不会影响 OMS。
    """

    symbol: str
    bar: Bar
    snapshot: IndicatorSnapshot
    regime: RegimeLabel
    balance: float
    equity: float
    positions: tuple[Position, ...] = ()
    open_orders: tuple[Order, ...] = ()
    cost_rate: float = 0.0
    max_risk_per_trade: float = 0.01
    min_stop_distance_pct: float = 0.01
    max_position_pct: float = 0.35
    extra: dict = field(default_factory=dict)

    @property
    def price(self) -> float:
        return self.bar.close

    def position(self, side: PositionSide) -> Position | None:
        for pos in self.positions:
            if pos.symbol == self.symbol and pos.side is side:
                return pos
        return None

    def orders_with_reason(self, *reasons: str) -> list[Order]:
        return [o for o in self.open_orders if o.symbol == self.symbol and o.intent.reason in reasons]

    @property
    def risk_amount(self) -> float:
        return self.balance * self.max_risk_per_trade


class Strategy(ABC):
    """策略基类：输入上下文，输出 0~N 个下单意图，不改动任何外部状态。"""

    name: str = "strategy"

    @abstractmethod
    def execute(self, ctx: StrategyContext) -> list[OrderIntent]:
        ...
