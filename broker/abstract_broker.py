"""Broker 抽象接口与运行模式定义。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from shared.models.models import Bar, Order, OrderIntent, Position


class BrokerMode(Enum):
    """Broker 运行模式枚举。"""

    BACKTEST = "backtest"
    LIVE = "live"
    LIVE_TESTNET = "live-testnet"


class Broker(ABC):
    """交易执行抽象层。

    子类维护本地订单/持仓视图，并把 OrderIntent 变成订单。
    """

    mode: BrokerMode

    @abstractmethod
    def submit(self, intent: OrderIntent, bar: Bar) -> Order | None:
        """提交下单意图；止损调整等不产生订单的意图返回 None。"""

    @abstractmethod
    def cancel(self, order_id: str, reason: str = "cancelled") -> bool:
        """撤单；订单不存在或已终结返回 False。"""

    @abstractmethod
    def open_orders(self) -> list[Order]:
        """当前未终结订单（快照）。"""

    @abstractmethod
    def open_positions(self) -> list[Position]:
        """当前持仓（快照）。"""
