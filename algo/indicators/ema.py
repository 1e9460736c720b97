"""增量 EMA。"""

from __future__ import annotations


class EMA:
    """指数移动平均：`ema_t = ema_{t-1} + k * (close_t - ema_{t-1})`，k = 2/(period+1)。

    以首个价格作为种子（与 pandas `ewm(span, adjust=False)` 一致），
    累计 period 根之后才视为 ready。
    """

    def __init__(self, period: int):
        if period <= 0:
            raise ValueError("EMA period must be > 0")
        self.period = int(period)
        self.k = 2.0 / (self.period + 1)
        self.value: float | None = None
        self.count = 0

    def update(self, price: float) -> float:
        price = float(price)
        if self.value is None:
            self.value = price
        else:
            self.value += self.k * (price - self.value)
        self.count += 1
        return self.value

    @property
    def ready(self) -> bool:
        return self.count >= self.period
