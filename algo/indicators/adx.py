"""增量 ADX（Wilder DMI）。"""

from __future__ import annotations


class ADX:
    """平均趋向指数。

    - +DM/-DM/TR 先累计 period 根，再按 Wilder 方式平滑（S = S - S/period + x）；
    - DX = 100 * |+DI - -DI| / (+DI + -DI)；
    - ADX 以前 period 个 DX 的均值为种子，之后 `(adx * (period-1) + dx) / period`。

    数据不足时返回 0.0 而不是抛错；完整预热约需 2 * period 根 bar。
    """

    def __init__(self, period: int):
        if period <= 0:
            raise ValueError("ADX period must be > 0")
        self.period = int(period)
        self.value = 0.0
        self.plus_di = 0.0
        self.minus_di = 0.0
        self._prev: tuple[float, float, float] | None = None
        self._tr_s = 0.0
        self._pdm_s = 0.0
        self._mdm_s = 0.0
        self._dm_count = 0
        self._dx_sum = 0.0
        self._dx_count = 0

    def update(self, high: float, low: float, close: float) -> float:
        if self._prev is None:
            self._prev = (float(high), float(low), float(close))
            return self.value

        prev_high, prev_low, prev_close = self._prev
        self._prev = (float(high), float(low), float(close))

        up_move = high - prev_high
        down_move = prev_low - low
        pdm = up_move if (up_move > down_move and up_move > 0) else 0.0
        mdm = down_move if (down_move > up_move and down_move > 0) else 0.0
        tr = max(high - low, abs(high - prev_close), abs(low - prev_close))

        p = self.period
        self._dm_count += 1
        if self._dm_count <= p:
            self._tr_s += tr
            self._pdm_s += pdm
            self._mdm_s += mdm
            if self._dm_count < p:
                return self.value
        else:
            self._tr_s = self._tr_s - self._tr_s / p + tr
            self._pdm_s = self._pdm_s - self._pdm_s / p + pdm
            self._mdm_s = self._mdm_s - self._mdm_s / p + mdm

        if self._tr_s > 0:
            self.plus_di = 100.0 * self._pdm_s / self._tr_s
            self.minus_di = 100.0 * self._mdm_s / self._tr_s
        else:
            self.plus_di = self.minus_di = 0.0
        di_sum = self.plus_di + self.minus_di
        dx = 100.0 * abs(self.plus_di - self.minus_di) / di_sum if di_sum > 0 else 0.0

        self._dx_count += 1
        if self._dx_count < p:
            self._dx_sum += dx
            return self.value
        if self._dx_count == p:
            self._dx_sum += dx
            self.value = self._dx_sum / p
        else:
            self.value = (self.value * (p - 1) + dx) / p
        return self.value

    @property
    def ready(self) -> bool:
        return self._dx_count >= self.period
