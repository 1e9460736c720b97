"""实盘 broker（交易所适配器 + 有界退避重试 + 轮询对账）。

说明：
- 交易所被视为 at-least-once、最终一致的外部服务：下单不假设同步确认，
  通过 `reconcile()` 轮询未完成订单同步状态；
- 同一意图在重试之间复用 client_order_id，重发前先查未完成订单，避免重复下单；
- 重试耗尽后抛出 ExternalServiceError，并只暂停该 symbol 的交易（不会让进程崩溃）。
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

import ccxt
import requests

from broker.abstract_broker import Broker, BrokerMode
from shared.config.schema import ExchangeConfig
from shared.errors import ExternalServiceError
from shared.models.models import Bar, Order, OrderIntent, OrderStatus, OrderType, Position, PositionSide
from shared.utils.client_order_id import make_client_order_id
from shared.utils.kill_switch import kill_switch_active
from shared.utils.logging import setup_logger

DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0, 8.0, 16.0)
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    ccxt.NetworkError,
    requests.RequestException,
    ConnectionError,
    TimeoutError,
)

logger = setup_logger("exchange")


@dataclass(frozen=True)
class OrderAck:
    """交易所下单回执。"""

    order_id: str
    client_order_id: str | None
    status: str = "open"
    raw: dict[str, Any] = field(default_factory=dict)


class ExchangeAdapter(Protocol):
    """交易所适配器协议（实盘专用）。"""

    def place_order(self, intent: OrderIntent) -> OrderAck:
        ...

    def fetch_open_orders(self, symbol: str) -> list[dict[str, Any]]:
        ...

    def cancel_order(self, order_id: str, symbol: str) -> None:
        ...


class CcxtExchangeAdapter:
    """基于 ccxt 统一接口的适配器。"""

    def __init__(self, cfg: ExchangeConfig | None = None, exchange: Any | None = None):
        self.cfg = cfg or ExchangeConfig()
        if exchange is None:
            exchange_cls = getattr(ccxt, self.cfg.name, None)
            if exchange_cls is None:
                raise ValueError(f"Unknown ccxt exchange: {self.cfg.name}")
            exchange = exchange_cls(
                {
                    "apiKey": self.cfg.api_key,
                    "secret": self.cfg.api_secret,
                    "enableRateLimit": True,
                }
            )
            if self.cfg.sandbox:
                exchange.set_sandbox_mode(True)
        self.exchange = exchange

    def place_order(self, intent: OrderIntent) -> OrderAck:
        params: dict[str, Any] = {}
        if intent.client_order_id:
            params["clientOrderId"] = intent.client_order_id
        if intent.metadata.get("post_only"):
            params["postOnly"] = True
        if intent.reduce_only:
            params["reduceOnly"] = True
        if intent.type is OrderType.STOP and intent.stop_price is not None:
            params["stopPrice"] = intent.stop_price
        order_type = "limit" if intent.type is OrderType.LIMIT else "market"
        raw = self.exchange.create_order(
            intent.symbol,
            order_type,
            intent.side.value,
            intent.amount,
            intent.price if intent.type is OrderType.LIMIT else None,
            params,
        )
        return OrderAck(
            order_id=str(raw.get("id")),
            client_order_id=raw.get("clientOrderId") or intent.client_order_id,
            status=str(raw.get("status") or "open"),
            raw=dict(raw),
        )

    def fetch_open_orders(self, symbol: str) -> list[dict[str, Any]]:
        return list(self.exchange.fetch_open_orders(symbol))

    def cancel_order(self, order_id: str, symbol: str) -> None:
        self.exchange.cancel_order(order_id, symbol)


def call_with_retry(
    fn: Callable[[int], Any],
    *,
    attempts: int = 5,
    delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    sleep: Callable[[float], None] = time.sleep,
    service: str = "exchange",
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
) -> Any:
    """有界退避重试。

    Parameters
    ----------
    fn:
        被调用的函数，参数为当前尝试序号（从 1 开始）。
    attempts:
        最大尝试次数。
    delays:
        第 i 次失败后的等待秒数；次数超过列表长度时沿用最后一个值。
    sleep:
        等待函数（测试中可注入）。
    service:
        错误信息中的服务名。
    retry_on:
        可重试的异常类型；其它异常立即包装为 ExternalServiceError。

    Raises
    ------
    ExternalServiceError
        重试耗尽或遇到不可重试的异常。
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn(attempt)
        except retry_on as exc:
            if attempt >= attempts:
                raise ExternalServiceError(service, str(exc), attempts=attempt) from exc
            delay = delays[min(attempt - 1, len(delays) - 1)] if delays else 0.0
            logger.warning(f"{service} error: {exc} (attempt {attempt}/{attempts}, retry in {delay:.1f}s)")
            sleep(delay)
        except ExternalServiceError:
            raise
        except ccxt.BaseError as exc:
            raise ExternalServiceError(service, str(exc), attempts=attempt) from exc
    raise ExternalServiceError(service, "no attempt made", attempts=0)


class LiveBroker(Broker):
    """实盘 broker。

    Parameters
    ----------
    adapter:
        交易所适配器。
    retry_attempts / retry_delays / sleep:
        重试策略（sleep 可注入）。
    kill_switch_path:
        存在即阻止新开仓的标记文件。
    testnet:
        连接交易所测试网（ExchangeConfig.sandbox），mode 标记为 LIVE_TESTNET。
    """

    mode = BrokerMode.LIVE

    def __init__(
        self,
        adapter: ExchangeAdapter,
        *,
        retry_attempts: int = 5,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        sleep: Callable[[float], None] = time.sleep,
        strategy_id: str = "regime",
        kill_switch_path: str | None = None,
        testnet: bool = False,
    ):
        self.adapter = adapter
        self.mode = BrokerMode.LIVE_TESTNET if testnet else BrokerMode.LIVE
        self.retry_attempts = int(retry_attempts)
        self.retry_delays = tuple(retry_delays)
        self.sleep = sleep
        self.strategy_id = strategy_id
        self.kill_switch_path = kill_switch_path

        self.orders: dict[str, Order] = {}
        self.exchange_ids: dict[str, str] = {}
        self.stop_prices: dict[tuple[str, PositionSide], float] = {}
        self.halted_symbols: dict[str, str] = {}
        self._seen_client_order_ids: set[str] = set()
        self._signal_seq = 0

    # ----- Broker 接口 -----
    def submit(self, intent: OrderIntent, bar: Bar) -> Order | None:
        if intent.is_stop_update:
            side = intent.position_side or PositionSide.from_order_side(intent.side.opposite)
            if intent.stop_price is not None:
                self.stop_prices[(intent.symbol, side)] = float(intent.stop_price)
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
            logger.info(f"Duplicate client_order_id {cid}, skip.")
            return self.orders.get(cid)
        self._seen_client_order_ids.add(cid)

        intent = intent if intent.client_order_id else intent.with_client_order_id(cid)
        order = Order(id=cid, intent=intent, created_at=bar.timestamp)
        self.orders[cid] = order

        if intent.symbol in self.halted_symbols:
            return self._reject(order, "symbol_halted")
        if intent.is_entry and self.kill_switch_path and kill_switch_active(self.kill_switch_path):
            return self._reject(order, "kill_switch")

        def _send(attempt: int) -> OrderAck:
            if attempt > 1:
                # 上一次可能已到达交易所：先查未完成订单，命中则不再重发
                existing = self._find_open(intent.symbol, cid)
                if existing is not None:
                    return OrderAck(
                        order_id=str(existing.get("id")),
                        client_order_id=cid,
                        status=str(existing.get("status") or "open"),
                        raw=dict(existing),
                    )
            return self.adapter.place_order(intent)

        try:
            ack = call_with_retry(
                _send,
                attempts=self.retry_attempts,
                delays=self.retry_delays,
                sleep=self.sleep,
                service=f"exchange.place_order[{intent.symbol}]",
            )
        except ExternalServiceError as exc:
            self.halt(intent.symbol, str(exc))
            return self._reject(order, "exchange_error")

        self.exchange_ids[cid] = ack.order_id
        if ack.status in ("closed", "filled"):
            order.status = OrderStatus.FILLED
            order.filled_amount = intent.amount
            order.avg_fill_price = float(ack.raw.get("average") or ack.raw.get("price") or intent.price or bar.close)
        order.updated_at = bar.timestamp
        logger.info(f"Order placed {cid} {intent.symbol} {intent.side.value} {intent.amount:.6f} -> {ack.order_id}")
        return order

    def cancel(self, order_id: str, reason: str = "cancelled") -> bool:
        order = self.orders.get(order_id)
        if order is None or not order.is_open:
            return False
        exchange_id = self.exchange_ids.get(order_id, order_id)
        try:
            call_with_retry(
                lambda _attempt: self.adapter.cancel_order(exchange_id, order.symbol),
                attempts=self.retry_attempts,
                delays=self.retry_delays,
                sleep=self.sleep,
                service=f"exchange.cancel_order[{order.symbol}]",
            )
        except ExternalServiceError as exc:
            self.halt(order.symbol, str(exc))
            return False
        order.status = OrderStatus.CANCELLED
        order.reject_reason = reason
        return True

    def open_orders(self) -> list[Order]:
        return [o for o in self.orders.values() if o.is_open]

    def open_positions(self) -> list[Position]:
        # 实盘持仓以交易所为准，本地不推算
        return []

    # ----- 对账 / 暂停 -----
    def reconcile(self, symbol: str) -> dict[str, Any]:
        """轮询交易所未完成订单并同步本地状态。

        本地仍为 open、但交易所已不在未完成列表中的订单视为已成交（FILLED）；
        交易所存在、本地没有记录的订单列为 unknown 供人工处理。
        """
        try:
            remote = call_with_retry(
                lambda _attempt: self.adapter.fetch_open_orders(symbol),
                attempts=self.retry_attempts,
                delays=self.retry_delays,
                sleep=self.sleep,
                service=f"exchange.fetch_open_orders[{symbol}]",
            )
        except ExternalServiceError as exc:
            self.halt(symbol, str(exc))
            return {"symbol": symbol, "ok": False, "error": str(exc)}

        remote_ids = {str(o.get("clientOrderId") or o.get("id")) for o in remote}
        local_exchange_ids = {v: k for k, v in self.exchange_ids.items()}
        closed: list[str] = []
        for order in self.open_orders():
            if order.symbol != symbol:
                continue
            exchange_id = self.exchange_ids.get(order.id)
            if order.id in remote_ids or (exchange_id is not None and exchange_id in remote_ids):
                continue
            order.status = OrderStatus.FILLED
            order.filled_amount = order.amount
            closed.append(order.id)

        unknown = [
            rid for rid in remote_ids if rid not in self.orders and rid not in local_exchange_ids
        ]
        if unknown:
            logger.warning(f"Unknown open orders on exchange for {symbol}: {unknown}")
        return {"symbol": symbol, "ok": True, "closed": closed, "unknown": unknown, "open": len(remote_ids)}

    def halt(self, symbol: str, reason: str) -> None:
        if symbol not in self.halted_symbols:
            logger.error(f"Trading halted for {symbol}: {reason}")
        self.halted_symbols[symbol] = reason

    def resume(self, symbol: str) -> None:
        if self.halted_symbols.pop(symbol, None) is not None:
            logger.info(f"Trading resumed for {symbol}")

    def is_halted(self, symbol: str) -> bool:
        return symbol in self.halted_symbols

    # ----- 内部 -----
    def _find_open(self, symbol: str, cid: str) -> dict[str, Any] | None:
        for o in self.adapter.fetch_open_orders(symbol):
            if str(o.get("clientOrderId") or "") == cid:
                return o
        return None

    def _reject(self, order: Order, reason: str) -> Order:
        order.status = OrderStatus.REJECTED
        order.reject_reason = reason
        logger.info(f"Order {order.id} rejected: {reason}")
        return order
