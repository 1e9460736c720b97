"""增量 ATR（Wilder 平滑）与兜底策略。"""

from __future__ import annotations


def true_range(high: float, low: float, prev_close: float | None) -> float:
    if prev_close is None:
        return high - low
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def apply_atr_fallback(
    atr: float,
    close: float,
    *,
    min_atr_value: float = 0.0001,
    default_atr_percentage: float = 0.02,
) -> float:
    """ATR 兜底：ATR 为 0 或低于 `close * min_atr_value` 时，返回 `close * default_atr_percentage`。

    Notes
    -----
    这是有意的近似，用来避免下游按止损距离做仓位计算时除零；
    两个阈值都是经验值，换市场应重新校准。
    """
    if atr <= 0 or atr < close * min_atr_value:
        return close * default_atr_percentage
    return atr


class WilderATR:
    """Wilder ATR：前 period 根 TR 取均值作为种子，之后
    `atr_t = atr_{t-1} + (tr_t - atr_{t-1}) / period`。

    预热期内 `value` 为 0.0（降级值），由调用方决定是否走兜底。
    """

    def __init__(self, period: int):
        if period <= 0:
            raise ValueError("ATR period must be > 0")
        self.period = int(period)
        self.value = 0.0
        self.count = 0
        self.last_tr = 0.0
        self._prev_close: float | None = None
        self._seed_sum = 0.0

    def update(self, high: float, low: float, close: float) -> float:
        tr = true_range(high, low, self._prev_close)
        self._prev_close = float(close)
        self.last_tr = tr
        self.count += 1
        if self.count < self.period:
            self._seed_sum += tr
            return self.value
        if self.count == self.period:
            self._seed_sum += tr
            self.value = self._seed_sum / self.period
        else:
            self.value += (tr - self.value) / self.period
        return self.value

    @property
    def ready(self) -> bool:
        return self.count >= self.period
