"""指标引擎：每个 symbol 一份 IndicatorState，每根 bar 增量更新一次。

约束：
- update 对每根 bar 只做 O(1)（斜率窗口是固定上限的小窗口）；
- 预热期内返回降级快照（ready=False，ADX=0 等），分类器据此判为 RANGE；
- 除显式 recalibrate 外从不重置状态。
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from algo.indicators.adx import ADX
from algo.indicators.atr import WilderATR, apply_atr_fallback
from algo.indicators.donchian import DonchianChannel
from algo.indicators.ema import EMA
from algo.indicators.sar import ParabolicSAR
from algo.indicators.slope import ema_slope_angle, select_slope_periods
from algo.indicators.vwap import RollingVWAP
from shared.config.schema import IndicatorConfig
from shared.errors import DataInsufficientError
from shared.models.models import Bar


@dataclass(frozen=True)
class IndicatorSnapshot:
    """某根 bar 上的全部指标输出（不可变）。"""

    timestamp: int
    close: float
    prev_close: float | None
    gap_pct: float
    ema_short: float
    ema_long: float
    slope_short: float
    slope_long: float
    slope_periods: int
    atr: float
    raw_atr: float
    atr_pct: float
    adx: float
    plus_di: float
    minus_di: float
    sar: float | None
    sar_uptrend: bool | None
    sar_flipped: bool
    donchian_upper: float | None
    donchian_lower: float | None
    prior_upper: float | None
    prior_lower: float | None
    range_upper: float | None
    range_lower: float | None
    vwap: float | None
    bars_seen: int
    ready: bool
    range_ready: bool

    def require_ready(self, what: str, required: int) -> None:
        """数据不足时抛出 DataInsufficientError（由调用方就地降级）。"""
        if not self.ready:
            raise DataInsufficientError(required, self.bars_seen, what)


@dataclass
class IndicatorState:
    """单个 symbol 的可变指标累加器。"""

    ema_short: EMA
    ema_long: EMA
    atr: WilderATR
    adx: ADX
    sar: ParabolicSAR
    donchian: DonchianChannel
    range_channel: DonchianChannel
    vwap: RollingVWAP
    short_history: deque = field(default_factory=deque)
    long_history: deque = field(default_factory=deque)
    last_timestamp: int | None = None
    prev_close: float | None = None
    bars_seen: int = 0

    @classmethod
    def create(cls, cfg: IndicatorConfig) -> "IndicatorState":
        max_slope = max(cfg.slope_periods, cfg.slope_periods_fast, cfg.slope_periods_slow) * 2
        return cls(
            ema_short=EMA(cfg.ema_short),
            ema_long=EMA(cfg.ema_long),
            atr=WilderATR(cfg.atr_period),
            adx=ADX(cfg.adx_period),
            sar=ParabolicSAR(cfg.sar_start, cfg.sar_increment, cfg.sar_max),
            donchian=DonchianChannel(cfg.donchian_period),
            range_channel=DonchianChannel(cfg.range_period),
            vwap=RollingVWAP(cfg.vwap_window),
            short_history=deque(maxlen=max_slope),
            long_history=deque(maxlen=max_slope),
        )


class IndicatorEngine:
    """`update(bar) -> IndicatorSnapshot`。"""

    def __init__(self, cfg: IndicatorConfig | None = None, symbol: str = ""):
        self.cfg = cfg or IndicatorConfig()
        self.symbol = symbol
        self.state = IndicatorState.create(self.cfg)

    @property
    def warmup_bars(self) -> int:
        return self.cfg.warmup_bars

    def update(self, bar: Bar) -> IndicatorSnapshot:
        st = self.state
        if st.last_timestamp is not None and bar.timestamp <= st.last_timestamp:
            raise ValueError(
                f"Bars must be strictly increasing: {bar.timestamp} <= {st.last_timestamp} ({self.symbol})"
            )

        prev_close = st.prev_close
        ema_s = st.ema_short.update(bar.close)
        ema_l = st.ema_long.update(bar.close)
        raw_atr = st.atr.update(bar.high, bar.low, bar.close)
        adx = st.adx.update(bar.high, bar.low, bar.close)
        sar = st.sar.update(bar.high, bar.low, bar.close)
        st.donchian.update(bar.high, bar.low)
        st.range_channel.update(bar.high, bar.low)
        vwap = st.vwap.update(bar.high, bar.low, bar.close, bar.volume)
        st.short_history.append(ema_s)
        st.long_history.append(ema_l)

        st.bars_seen += 1
        st.last_timestamp = bar.timestamp
        st.prev_close = bar.close

        atr = apply_atr_fallback(
            raw_atr,
            bar.close,
            min_atr_value=self.cfg.min_atr_value,
            default_atr_percentage=self.cfg.default_atr_percentage,
        )
        atr_pct = atr / bar.close * 100.0 if bar.close else 0.0
        periods = select_slope_periods(atr_pct, self.cfg)
        slope_short = ema_slope_angle(_tail(st.short_history, periods))
        slope_long = ema_slope_angle(_tail(st.long_history, periods * 2))
        gap_pct = (bar.close - prev_close) / prev_close if prev_close else 0.0
        ready = st.bars_seen >= self.cfg.warmup_bars and st.adx.ready and st.donchian.prior_ready

        return IndicatorSnapshot(
            timestamp=bar.timestamp,
            close=bar.close,
            prev_close=prev_close,
            gap_pct=gap_pct,
            ema_short=ema_s,
            ema_long=ema_l,
            slope_short=slope_short,
            slope_long=slope_long,
            slope_periods=periods,
            atr=atr,
            raw_atr=raw_atr,
            atr_pct=atr_pct,
            adx=adx,
            plus_di=st.adx.plus_di,
            minus_di=st.adx.minus_di,
            sar=sar,
            sar_uptrend=st.sar.is_uptrend,
            sar_flipped=st.sar.flipped,
            donchian_upper=st.donchian.upper,
            donchian_lower=st.donchian.lower,
            prior_upper=st.donchian.prior_upper,
            prior_lower=st.donchian.prior_lower,
            range_upper=st.range_channel.upper if st.range_channel.ready else None,
            range_lower=st.range_channel.lower if st.range_channel.ready else None,
            vwap=vwap,
            bars_seen=st.bars_seen,
            ready=ready,
            range_ready=st.range_channel.ready,
        )

    def recalibrate(self, bars: Iterable[Bar]) -> IndicatorSnapshot | None:
        """显式重新校准：丢弃全部状态并按顺序重放 bars。"""
        self.state = IndicatorState.create(self.cfg)
        snap = None
        for bar in bars:
            snap = self.update(bar)
        return snap


def _tail(values: deque, n: int) -> list[float]:
    if len(values) < n:
        return []
    return list(values)[-n:]
