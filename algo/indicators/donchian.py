"""增量 Donchian 通道（单调队列，摊还 O(1)）。"""

from __future__ import annotations

from collections import deque


class DonchianChannel:
    """滚动 period 根的最高价/最低价。

    `prior_upper/prior_lower` 为不含当前 bar 的前 period 根通道，用于突破判断。
    """

    def __init__(self, period: int):
        if period <= 0:
            raise ValueError("Donchian period must be > 0")
        self.period = int(period)
        self.upper: float | None = None
        self.lower: float | None = None
        self.prior_upper: float | None = None
        self.prior_lower: float | None = None
        self.count = 0
        self._highs: deque[tuple[int, float]] = deque()
        self._lows: deque[tuple[int, float]] = deque()

    def update(self, high: float, low: float) -> tuple[float, float]:
        if self.ready:
            self.prior_upper, self.prior_lower = self.upper, self.lower
        i = self.count
        cutoff = i - self.period

        while self._highs and self._highs[-1][1] <= high:
            self._highs.pop()
        self._highs.append((i, float(high)))
        while self._highs[0][0] <= cutoff:
            self._highs.popleft()

        while self._lows and self._lows[-1][1] >= low:
            self._lows.pop()
        self._lows.append((i, float(low)))
        while self._lows[0][0] <= cutoff:
            self._lows.popleft()

        self.count += 1
        self.upper = self._highs[0][1]
        self.lower = self._lows[0][1]
        return self.upper, self.lower

    @property
    def ready(self) -> bool:
        return self.count >= self.period

    @property
    def prior_ready(self) -> bool:
        return self.prior_upper is not None

    @property
    def middle(self) -> float | None:
        if self.upper is None or self.lower is None:
            return None
        return (self.upper + self.lower) / 2.0
