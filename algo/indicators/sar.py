"""增量 Parabolic SAR（状态机）。"""

from __future__ import annotations


class ParabolicSAR:
    """抛物线转向指标。

    状态：趋势方向、加速因子 af、极值点 ep、当前 sar。
    - 第 2 根 bar 初始化：收盘上涨视为上升趋势，sar 取前一根低点（下降趋势取高点）；
    - 每根 bar：`sar = sar + af * (ep - sar)`，并且不得穿越前两根 bar 的低点/高点；
    - 价格穿越 sar 即翻转：sar 置为原 ep，ep 置为当前极值，af 复位为 start；
    - 创新高/新低时 ep 更新，af 按 increment 递增至 maximum 封顶。

    每个 symbol 持有自己的实例，避免跨品种状态串扰。
    """

    def __init__(self, start: float = 0.02, increment: float = 0.02, maximum: float = 0.2):
        self.start = float(start)
        self.increment = float(increment)
        self.maximum = float(maximum)

        self.sar: float | None = None
        self.is_uptrend: bool | None = None
        self.af = self.start
        self.ep: float | None = None
        self.flipped = False
        self.count = 0
        self._prev: tuple[float, float] | None = None
        self._prev2: tuple[float, float] | None = None
        self._prev_close: float | None = None

    def update(self, high: float, low: float, close: float) -> float | None:
        self.flipped = False
        self.count += 1
        high = float(high)
        low = float(low)

        if self._prev is None:
            self._prev = (high, low)
            self._prev_close = float(close)
            return None

        if self.sar is None:
            prev_high, prev_low = self._prev
            self.is_uptrend = self._prev_close is not None and close > self._prev_close
            if self.is_uptrend:
                self.ep = max(prev_high, high)
                self.sar = prev_low
            else:
                self.ep = min(prev_low, low)
                self.sar = prev_high
            self.af = self.start
            self._shift(high, low, close)
            return self.sar

        prev_high, prev_low = self._prev
        prev2_high, prev2_low = self._prev2 or self._prev
        if self.ep is None:
            raise RuntimeError("ParabolicSAR state is inconsistent: sar set without extreme point")
        sar = self.sar + self.af * (self.ep - self.sar)

        if self.is_uptrend:
            sar = min(sar, prev_low, prev2_low)
            if low < sar:
                self.is_uptrend = False
                sar = self.ep
                self.ep = low
                self.af = self.start
                self.flipped = True
            elif high > self.ep:
                self.ep = high
                self.af = min(self.af + self.increment, self.maximum)
        else:
            sar = max(sar, prev_high, prev2_high)
            if high > sar:
                self.is_uptrend = True
                sar = self.ep
                self.ep = high
                self.af = self.start
                self.flipped = True
            elif low < self.ep:
                self.ep = low
                self.af = min(self.af + self.increment, self.maximum)

        self.sar = sar
        self._shift(high, low, close)
        return sar

    def _shift(self, high: float, low: float, close: float) -> None:
        self._prev2 = self._prev
        self._prev = (high, low)
        self._prev_close = float(close)

    @property
    def ready(self) -> bool:
        return self.sar is not None
