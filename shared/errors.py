"""交易核心的异常分类。

约定：
- DataInsufficientError：预热期数据不足，调用方应就地降级（返回中性值），而不是中断流程；
- ConfigurationError：启动期致命错误，风险关键参数绝不静默使用默认值；
- OrderRejectedError：风控拒单，本地记录原因后丢弃意图；
- FillSimulationError：订单/持仓状态不一致，对该 symbol 的本次运行是致命的；
- ExternalServiceError：交易所等外部服务失败，有限次退避重试后对该 symbol 暂停交易。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class TradingError(Exception):
    """所有交易核心异常的基类。"""


class DataInsufficientError(TradingError):
    def __init__(self, required: int, available: int, what: str = "indicator"):
        self.required = int(required)
        self.available = int(available)
        self.what = what
        super().__init__(f"{what} needs {self.required} bars, got {self.available}")


class ConfigurationError(TradingError, ValueError):
    """配置缺失或非法（兼容 ValueError，便于沿用配置层的既有捕获逻辑）。"""


class OrderRejectedError(TradingError):
    def __init__(self, reason: str, intent: Any = None):
        self.reason = reason
        self.intent = intent
        super().__init__(f"Order rejected: {reason}")

    @classmethod
    def from_rejection(cls, rejection: "Rejected") -> "OrderRejectedError":
        return cls(rejection.reason, rejection.intent)


class FillSimulationError(TradingError):
    """撮合/持仓状态不一致（例如 reduce-only 平仓量超过持仓）。"""


class ExternalServiceError(TradingError):
    def __init__(self, service: str, message: str, attempts: int = 1):
        self.service = service
        self.attempts = int(attempts)
        super().__init__(f"{service} failed after {self.attempts} attempt(s): {message}")


class DataLoadError(TradingError):
    """历史数据无法加载（文件缺失、格式错误、时间戳乱序等）。"""


class BacktestCancelledError(TradingError):
    """回测在批次边界被协作式取消；部分结果已丢弃。"""


@dataclass(frozen=True)
class Rejected:
    """风控拒单结果（不抛异常，由调用方记录/上报）。"""

    reason: str
    intent: Any
    timestamp: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        intent = self.intent
        return {
            "reason": self.reason,
            "timestamp": self.timestamp,
            "symbol": getattr(intent, "symbol", None),
            "side": getattr(getattr(intent, "side", None), "value", None),
            "amount": getattr(intent, "amount", None),
            "details": dict(self.details),
        }
