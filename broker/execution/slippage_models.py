"""滑点模型。"""

from __future__ import annotations

from abc import ABC, abstractmethod

from shared.models.models import Side


class SlippageModel(ABC):
    @abstractmethod
    def apply(self, *, price: float, side: Side) -> float:
        raise NotImplementedError


class FractionSlippageModel(SlippageModel):
    """按比例施加滑点（0.001 = 0.1%）。买单抬高、卖单压低。"""

    def __init__(self, rate: float = 0.0):
        if rate < 0:
            raise ValueError("slippage rate must be >= 0")
        self.rate = float(rate)

    def apply(self, *, price: float, side: Side) -> float:
        if self.rate == 0.0:
            return float(price)
        if side is Side.BUY:
            return float(price) * (1 + self.rate)
        return float(price) * (1 - self.rate)
