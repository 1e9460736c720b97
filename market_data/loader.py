"""历史数据加载与下载。

CSV 约定（每个 symbol/周期一个文件，`{data_dir}/{symbol}_{interval}.csv`）：
- 必需列：open, high, low, close；可选 volume（缺省 0）；
- 时间列：`timestamp`（epoch 毫秒，K 线开盘时间），或 `start_ts`/`end_ts`（ISO 字符串或毫秒），
  后者以 start_ts 作为 bar 时间戳；
- 读取后按时间升序排列，时间戳重复或 OHLC 不合法直接报 DataLoadError。

核心不做缺口插值：缺失的 bar 就是缺失。需要时可通过 Binance REST 补齐（requests）。
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pandas as pd
import requests

from shared.errors import DataLoadError
from shared.models.models import Bar, datetime_to_ms
from shared.utils.logging import setup_logger

BINANCE_KLINES_URL = "https://api.binance.com/api/v3/klines"
CSV_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]

logger = setup_logger("data")


def parse_iso(val: str) -> datetime:
    """解析 ISO 时间字符串为 UTC datetime（无时区按 UTC）。"""
    try:
        dt = datetime.fromisoformat(val.replace("Z", "+00:00"))
    except ValueError as exc:
        raise DataLoadError(f"Invalid date: {val}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def date_range_ms(start_date: str | None, end_date: str | None) -> tuple[int | None, int | None]:
    """[start, end) 毫秒区间；只给日期的 end_date 包含当天整天。"""
    start_ms = datetime_to_ms(parse_iso(start_date)) if start_date else None
    end_ms = None
    if end_date:
        end_dt = parse_iso(end_date)
        if len(end_date.strip()) == 10:
            end_dt += timedelta(days=1)
        end_ms = datetime_to_ms(end_dt)
    if start_ms is not None and end_ms is not None and end_ms <= start_ms:
        raise DataLoadError(f"end_date {end_date} must be after start_date {start_date}")
    return start_ms, end_ms


def timeframe_to_interval(hours: float) -> str:
    """小时数 → Binance 周期字符串（0.25 → 15m，4 → 4h，24 → 1d）。"""
    minutes = hours * 60
    if minutes <= 0 or abs(minutes - round(minutes)) > 1e-9:
        raise DataLoadError(f"Unsupported timeframe: {hours}h")
    minutes = int(round(minutes))
    if minutes < 60:
        return f"{minutes}m"
    if minutes % (24 * 60) == 0:
        return f"{minutes // (24 * 60)}d"
    if minutes % 60 == 0:
        return f"{minutes // 60}h"
    raise DataLoadError(f"Unsupported timeframe: {hours}h")


def _to_ms(series: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(series):
        values = series.astype("int64")
        # 秒级时间戳
        if not values.empty and values.max() < 1e12:
            values = values * 1000
        return values
    parsed = pd.to_datetime(series, utc=True)
    return ((parsed - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(milliseconds=1)).astype("int64")


def frame_to_bars(df: pd.DataFrame, symbol: str) -> list[Bar]:
    """DataFrame → Bar 列表（升序、时间戳唯一、OHLC 合法）。"""
    if df.empty:
        return []
    missing = {"open", "high", "low", "close"} - set(df.columns)
    if missing:
        raise DataLoadError(f"{symbol}: missing columns {sorted(missing)}")
    ts_col = "timestamp" if "timestamp" in df.columns else "start_ts" if "start_ts" in df.columns else None
    if ts_col is None:
        raise DataLoadError(f"{symbol}: missing timestamp column (timestamp or start_ts)")

    try:
        frame = pd.DataFrame(
            {
                "timestamp": _to_ms(df[ts_col]),
                "open": df["open"].astype(float),
                "high": df["high"].astype(float),
                "low": df["low"].astype(float),
                "close": df["close"].astype(float),
                "volume": df["volume"].fillna(0).astype(float) if "volume" in df.columns else 0.0,
            }
        ).sort_values("timestamp", kind="mergesort")
    except (ValueError, TypeError) as exc:
        raise DataLoadError(f"{symbol}: malformed bar data: {exc}") from exc
    dup = frame["timestamp"].duplicated()
    if dup.any():
        first = int(frame.loc[dup, "timestamp"].iloc[0])
        raise DataLoadError(f"{symbol}: duplicate bar timestamp {first}")

    bars: list[Bar] = []
    for row in frame.itertuples(index=False):
        # NaN 与任何值比较都为 False，Bar 自身的 OHLC 校验拦不住
        if not all(math.isfinite(v) for v in (row.open, row.high, row.low, row.close, row.volume)):
            raise DataLoadError(f"{symbol}: non-finite OHLCV at {int(row.timestamp)}")
        try:
            bars.append(
                Bar(
                    timestamp=int(row.timestamp),
                    open=row.open,
                    high=row.high,
                    low=row.low,
                    close=row.close,
                    volume=row.volume,
                    symbol=symbol,
                )
            )
        except ValueError as exc:
            raise DataLoadError(f"{symbol}: {exc}") from exc
    return bars


class HistoricalDataLoader:
    """历史 K 线数据管理器（只读访问，可被多个 symbol worker 并发读取）。"""

    def __init__(self, data_dir: str = "dataset/history", session: requests.Session | None = None):
        self.data_dir = Path(data_dir)
        self.session = session

    def klines_path(self, symbol: str, interval: str) -> Path:
        return self.data_dir / f"{symbol}_{interval}.csv"

    def load_bars(
        self,
        symbol: str,
        timeframe_hours: float,
        start_date: str | None = None,
        end_date: str | None = None,
        *,
        auto_download: bool = False,
    ) -> List[Bar]:
        """读取 [start_date, end_date] 区间内的 bar，升序。

        Raises
        ------
        DataLoadError
            文件不存在（且未开启自动下载）、格式错误或区间内无数据。
        """
        interval = timeframe_to_interval(timeframe_hours)
        start_ms, end_ms = date_range_ms(start_date, end_date)
        path = self.klines_path(symbol, interval)
        if auto_download and not path.exists():
            if start_ms is None or end_ms is None:
                raise DataLoadError("auto_download requires start_date and end_date")
            self.download_binance_klines(symbol, interval, start_ms, end_ms, path)
        if not path.exists():
            raise DataLoadError(f"Kline file not found: {path}")

        try:
            df = pd.read_csv(path)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
            raise DataLoadError(f"Failed to read {path}: {exc}") from exc

        bars = frame_to_bars(df, symbol)
        if start_ms is not None:
            bars = [b for b in bars if b.timestamp >= start_ms]
        if end_ms is not None:
            bars = [b for b in bars if b.timestamp < end_ms]
        if not bars:
            raise DataLoadError(f"No bars for {symbol} {interval} in [{start_date}, {end_date}]")
        logger.info(f"Loaded {len(bars)} bars for {symbol} {interval} from {path}")
        return bars

    def download_binance_klines(self, symbol: str, interval: str, start_ms: int, end_ms: int, dest_path: Path) -> int:
        """从 Binance REST 分页拉取 K 线并写入 CSV，返回写入行数。"""
        getter = self.session.get if self.session is not None else requests.get
        rows: list[list[float]] = []
        cur = int(start_ms)
        while cur < end_ms:
            params = {
                "symbol": symbol,
                "interval": interval,
                "startTime": cur,
                "endTime": int(end_ms) - 1,
                "limit": 1000,
            }
            try:
                resp = getter(BINANCE_KLINES_URL, params=params, timeout=10)
                resp.raise_for_status()
            except requests.RequestException as exc:
                raise DataLoadError(f"Kline download failed for {symbol} {interval}: {exc}") from exc
            data = resp.json()
            if not data:
                break
            for item in data:
                rows.append([int(item[0]), float(item[1]), float(item[2]), float(item[3]), float(item[4]), float(item[5])])
            cur = int(data[-1][6]) + 1

        df = pd.DataFrame(rows, columns=CSV_COLUMNS).drop_duplicates("timestamp").sort_values("timestamp")
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(dest_path, index=False)
        logger.info(f"Downloaded {len(df)} klines for {symbol} {interval} -> {dest_path}")
        return len(df)


def load_bars(
    symbol: str,
    timeframe_hours: float,
    start_date: str | None = None,
    end_date: str | None = None,
    *,
    data_dir: str = "dataset/history",
    auto_download: bool = False,
) -> List[Bar]:
    """便捷函数：按默认数据目录构造 loader 并读取 bar。"""
    loader = HistoricalDataLoader(data_dir)
    return loader.load_bars(symbol, timeframe_hours, start_date, end_date, auto_download=auto_download)
