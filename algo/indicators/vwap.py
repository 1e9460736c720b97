"""滚动窗口 VWAP。"""

from __future__ import annotations

from collections import deque


class RollingVWAP:
    """`sum(typical * volume) / sum(volume)`，typical = (high + low + close) / 3。

    窗口内成交量为 0 时退化为当前 typical price。
    """

    def __init__(self, window: int):
        if window <= 0:
            raise ValueError("VWAP window must be > 0")
        self.window = int(window)
        self.value: float | None = None
        self._items: deque[tuple[float, float]] = deque()
        self._pv_sum = 0.0
        self._v_sum = 0.0

    def update(self, high: float, low: float, close: float, volume: float) -> float:
        typical = (high + low + close) / 3.0
        pv = typical * volume
        self._items.append((pv, float(volume)))
        self._pv_sum += pv
        self._v_sum += volume
        if len(self._items) > self.window:
            old_pv, old_v = self._items.popleft()
            self._pv_sum -= old_pv
            self._v_sum -= old_v
        self.value = self._pv_sum / self._v_sum if self._v_sum > 1e-12 else typical
        return self.value

    @property
    def ready(self) -> bool:
        return len(self._items) >= self.window
