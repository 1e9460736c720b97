"""测试用的合成 K 线与小参数配置。"""

from __future__ import annotations

import math
from datetime import datetime, timezone

import numpy as np

from shared.config.schema import IndicatorConfig, MainConfig
from shared.models.models import Bar

HOUR_MS = 3600 * 1000
DAY_MS = 24 * HOUR_MS
# 2024-01-01 00:00:00 UTC
START_MS = int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)


def make_bar(i: int, close: float, *, open_: float | None = None, spread: float = 0.002,
             volume: float = 10.0, symbol: str = "TEST", start_ms: int = START_MS) -> Bar:
    o = close if open_ is None else open_
    return Bar(
        timestamp=start_ms + i * HOUR_MS,
        open=o,
        high=max(o, close) * (1 + spread),
        low=min(o, close) * (1 - spread),
        close=close,
        volume=volume,
        symbol=symbol,
    )


def bars_from_closes(closes, *, spread: float = 0.002, symbol: str = "TEST", start_ms: int = START_MS) -> list[Bar]:
    """开盘价取上一根收盘价（首根取自身），高低点按 spread 外扩。"""
    bars = []
    prev = None
    for i, c in enumerate(closes):
        bars.append(make_bar(i, c, open_=prev, spread=spread, symbol=symbol, start_ms=start_ms))
        prev = c
    return bars


def trend_closes(n: int, start: float = 100.0, step: float = 0.005) -> list[float]:
    return [start * (1 + step) ** i for i in range(n)]


def oscillating_closes(n: int, center: float = 100.0, amplitude: float = 0.02, period: int = 20,
                       offset: int = 0) -> list[float]:
    return [center * (1 + amplitude * math.sin(2 * math.pi * (i + offset) / period)) for i in range(n)]


def small_indicator_cfg(**overrides) -> IndicatorConfig:
    """预热期约 14 根的小周期指标参数。"""
    params = dict(
        ema_short=5,
        ema_long=12,
        atr_period=5,
        adx_period=5,
        donchian_period=10,
        range_period=10,
        vwap_window=10,
        warmup_margin=2,
    )
    params.update(overrides)
    return IndicatorConfig(**params)


def small_cfg(**backtest) -> MainConfig:
    cfg = MainConfig()
    cfg.indicators = small_indicator_cfg()
    bt = cfg.backtest.model_dump()
    bt.update({"kill_switch_path": None, "quiet": True})
    bt.update(backtest)
    cfg.backtest = type(cfg.backtest).model_validate(bt)
    return cfg


def random_walk_bars(n: int, *, seed: int = 7, vol: float = 0.01, segment: int = 150,
                     drifts=(0.003, 0.0, -0.003, 0.0), symbol: str = "TEST", start: float = 100.0) -> list[Bar]:
    """分段漂移的随机游走：趋势段与震荡段交替出现。"""
    rng = np.random.RandomState(seed)
    bars = []
    close = start
    for i in range(n):
        drift = drifts[(i // segment) % len(drifts)]
        open_ = close
        close = open_ * (1 + drift + rng.normal(0, vol))
        wick = abs(rng.normal(0, vol / 2))
        bars.append(
            Bar(
                timestamp=START_MS + i * HOUR_MS,
                open=open_,
                high=max(open_, close) * (1 + wick),
                low=min(open_, close) * (1 - wick),
                close=close,
                volume=float(rng.uniform(5, 50)),
                symbol=symbol,
            )
        )
    return bars
