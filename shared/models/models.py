"""核心数据结构：Bar/OrderIntent/Order/Position/Trade/EquityPoint。

约定：
- 时间戳统一为 UTC epoch 毫秒（int）；
- Bar/OrderIntent/Trade/EquityPoint 不可变；Order/Position 由 OMS 独占并原地更新，
  对外（策略/风控）只暴露快照。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_order_side(cls, side: Side) -> "PositionSide":
        return cls.LONG if side is Side.BUY else cls.SHORT

    @property
    def opening_side(self) -> Side:
        return Side.BUY if self is PositionSide.LONG else Side.SELL

    @property
    def closing_side(self) -> Side:
        return self.opening_side.opposite

    @property
    def sign(self) -> int:
        return 1 if self is PositionSide.LONG else -1


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED)


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class RegimeLabel(str, Enum):
    """市场状态标签。"""

    STRONG_UPTREND = "strong_uptrend"
    UPTREND = "uptrend"
    WEAK_UPTREND = "weak_uptrend"
    RANGE = "range"
    WEAK_DOWNTREND = "weak_downtrend"
    DOWNTREND = "downtrend"
    STRONG_DOWNTREND = "strong_downtrend"
    EMERGENCY = "emergency"

    @property
    def is_uptrend(self) -> bool:
        return self in (RegimeLabel.STRONG_UPTREND, RegimeLabel.UPTREND, RegimeLabel.WEAK_UPTREND)

    @property
    def is_downtrend(self) -> bool:
        return self in (RegimeLabel.STRONG_DOWNTREND, RegimeLabel.DOWNTREND, RegimeLabel.WEAK_DOWNTREND)

    @property
    def is_weak(self) -> bool:
        return self in (RegimeLabel.WEAK_UPTREND, RegimeLabel.WEAK_DOWNTREND)


def ms_to_datetime(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(int(ts_ms) / 1000, tz=timezone.utc)


def datetime_to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


@dataclass(frozen=True)
class Bar:
    """K 线（不可变）。high ≥ max(open, close)，low ≤ min(open, close)。"""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    symbol: str = ""

    def __post_init__(self):
        if self.high < max(self.open, self.close) or self.low > min(self.open, self.close):
            raise ValueError(
                f"Invalid bar OHLC at {self.timestamp}: "
                f"o={self.open} h={self.high} l={self.low} c={self.close}"
            )
        if self.volume < 0:
            raise ValueError(f"Invalid bar volume at {self.timestamp}: {self.volume}")

    @property
    def dt(self) -> datetime:
        return ms_to_datetime(self.timestamp)

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0


@dataclass(frozen=True)
class OrderIntent:
    """策略输出的下单意图（不可变）。

    metadata 常用键：
    - reason：意图来源（entry/pyramid/grid/hedge/escape/emergency/update_stop ...）
    - reduce_only / position_side：只减仓，并指明减哪一侧
    - action="update_stop"：调整持仓保护性止损（type 为 STOP）
    """

    symbol: str
    side: Side
    type: OrderType
    amount: float
    price: float | None = None
    stop_price: float | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    client_order_id: str | None = None

    @property
    def reason(self) -> str:
        return str(self.metadata.get("reason", ""))

    @property
    def reduce_only(self) -> bool:
        return bool(self.metadata.get("reduce_only", False))

    @property
    def position_side(self) -> PositionSide | None:
        raw = self.metadata.get("position_side")
        return PositionSide(raw) if raw else None

    @property
    def is_stop_update(self) -> bool:
        return self.metadata.get("action") == "update_stop"

    @property
    def is_entry(self) -> bool:
        return not self.reduce_only and not self.is_stop_update

    def with_amount(self, amount: float) -> "OrderIntent":
        return replace(self, amount=float(amount))

    def with_client_order_id(self, client_order_id: str) -> "OrderIntent":
        return replace(self, client_order_id=client_order_id)


@dataclass
class Order:
    """OMS 内部订单（PENDING → FILLED/PARTIALLY_FILLED/CANCELLED/REJECTED）。"""

    id: str
    intent: OrderIntent
    created_at: int
    status: OrderStatus = OrderStatus.PENDING
    filled_amount: float = 0.0
    avg_fill_price: float = 0.0
    updated_at: int | None = None
    created_bar: int = 0
    fill_count: int = 0
    reject_reason: str | None = None

    @property
    def symbol(self) -> str:
        return self.intent.symbol

    @property
    def side(self) -> Side:
        return self.intent.side

    @property
    def type(self) -> OrderType:
        return self.intent.type

    @property
    def amount(self) -> float:
        return self.intent.amount

    @property
    def remaining(self) -> float:
        return max(0.0, self.intent.amount - self.filled_amount)

    @property
    def is_open(self) -> bool:
        return self.status in (OrderStatus.PENDING, OrderStatus.PARTIALLY_FILLED)


@dataclass
class Position:
    """持仓（同一 symbol 同一方向只有一个 Position，加仓即调整数量与均价）。"""

    id: str
    symbol: str
    side: PositionSide
    amount: float
    entry_price: float
    opened_at: int
    stop_price: float | None = None
    original_amount: float = 0.0
    entry_commission: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    metadata: dict[str, Any] = field(default_factory=dict)

    def unrealized_pnl(self, price: float) -> float:
        return self.side.sign * (price - self.entry_price) * self.amount

    def notional(self, price: float | None = None) -> float:
        return abs(self.amount * (price if price is not None else self.entry_price))

    def open_risk(self) -> float:
        """按当前止损计算的剩余风险（止损已锁定利润时为负）。"""
        if self.stop_price is None:
            return float("inf")
        return self.side.sign * (self.entry_price - self.stop_price) * self.amount

    def snapshot(self) -> "Position":
        return replace(self, metadata=dict(self.metadata))


@dataclass(frozen=True)
class Trade:
    """平仓记录（不可变，追加写入 trade ledger）。"""

    id: str
    symbol: str
    side: PositionSide
    entry_price: float
    exit_price: float
    entry_time: int
    exit_time: int
    amount: float
    pnl: float
    commission: float = 0.0
    position_id: str = ""
    fill_id: str = ""
    exit_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "entry_time": self.entry_time,
            "exit_time": self.exit_time,
            "amount": self.amount,
            "pnl": self.pnl,
            "commission": self.commission,
            "position_id": self.position_id,
            "exit_reason": self.exit_reason,
        }


@dataclass(frozen=True)
class EquityPoint:
    timestamp: int
    equity: float

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "equity": self.equity}


@dataclass(frozen=True)
class AccountState:
    """风控/策略看到的账户快照（只读）。"""

    balance: float
    equity: float
    day_start_equity: float
    price: float
    timestamp: int
    prev_close: float | None = None
    positions: tuple[Position, ...] = ()
    open_orders: tuple[Order, ...] = ()
    trading_enabled: bool = True

    @property
    def daily_pnl(self) -> float:
        return self.equity - self.day_start_equity

    @property
    def gap_pct(self) -> float:
        if not self.prev_close:
            return 0.0
        return abs(self.price - self.prev_close) / self.prev_close

    def positions_for(self, symbol: str) -> list[Position]:
        return [p for p in self.positions if p.symbol == symbol]

    def exposure(self, price: float | None = None) -> float:
        return sum(p.notional(price if price is not None else self.price) for p in self.positions)
