from pathlib import Path

import pandas as pd
import pytest
import requests

from market_data.loader import (
    HistoricalDataLoader,
    date_range_ms,
    frame_to_bars,
    load_bars,
    timeframe_to_interval,
)
from shared.errors import DataLoadError
from helpers import DAY_MS, HOUR_MS, START_MS


def _frame(n: int, start: int = START_MS, step: int = HOUR_MS) -> pd.DataFrame:
    rows = []
    for i in range(n):
        c = 100.0 + i
        rows.append({"timestamp": start + i * step, "open": c - 0.5, "high": c + 1, "low": c - 1, "close": c, "volume": 5.0})
    return pd.DataFrame(rows)


def test_timeframe_to_interval():
    assert timeframe_to_interval(0.25) == "15m"
    assert timeframe_to_interval(1) == "1h"
    assert timeframe_to_interval(4) == "4h"
    assert timeframe_to_interval(24) == "1d"
    with pytest.raises(DataLoadError):
        timeframe_to_interval(0)
    with pytest.raises(DataLoadError):
        timeframe_to_interval(1.01)


def test_date_range_ms():
    start, end = date_range_ms("2024-01-01", "2024-01-02")
    assert start == START_MS
    # 只给日期的结束日包含当天整天
    assert end == START_MS + 2 * DAY_MS
    _, end = date_range_ms(None, "2024-01-02T12:00:00Z")
    assert end == START_MS + DAY_MS + 12 * HOUR_MS
    with pytest.raises(DataLoadError):
        date_range_ms("2024-01-02", "2024-01-01T00:00:00")
    with pytest.raises(DataLoadError):
        date_range_ms("yesterday", None)


def test_frame_to_bars_sorts_and_validates():
    df = _frame(5).iloc[::-1].reset_index(drop=True)
    bars = frame_to_bars(df, "BTCUSDT")
    assert [b.timestamp for b in bars] == [START_MS + i * HOUR_MS for i in range(5)]
    assert bars[0].symbol == "BTCUSDT"

    dup = pd.concat([_frame(3), _frame(1)], ignore_index=True)
    with pytest.raises(DataLoadError) as exc:
        frame_to_bars(dup, "BTCUSDT")
    assert "duplicate" in str(exc.value)

    bad = _frame(2)
    bad.loc[1, "high"] = 50.0
    with pytest.raises(DataLoadError):
        frame_to_bars(bad, "BTCUSDT")

    with pytest.raises(DataLoadError):
        frame_to_bars(_frame(2).drop(columns=["close"]), "BTCUSDT")


def test_frame_to_bars_rejects_malformed_rows():
    missing_close = _frame(2)
    missing_close["close"] = [101.0, None]
    with pytest.raises(DataLoadError) as exc:
        frame_to_bars(missing_close, "BTCUSDT")
    assert "non-finite" in str(exc.value)

    text_open = _frame(2).astype({"open": object})
    text_open.loc[0, "open"] = "abc"
    with pytest.raises(DataLoadError):
        frame_to_bars(text_open, "BTCUSDT")

    bad_ts = _frame(2).astype({"timestamp": object})
    bad_ts.loc[1, "timestamp"] = "not a date"
    with pytest.raises(DataLoadError):
        frame_to_bars(bad_ts, "BTCUSDT")


def test_load_bars_rejects_blank_cells(tmp_path: Path):
    (tmp_path / "BTCUSDT_1h.csv").write_text(
        f"timestamp,open,high,low,close,volume\n{START_MS},100,101,99,100,1\n{START_MS + HOUR_MS},100,101,99,,1\n"
    )
    with pytest.raises(DataLoadError):
        HistoricalDataLoader(str(tmp_path)).load_bars("BTCUSDT", 1.0)


def test_frame_to_bars_accepts_start_ts_and_seconds():
    df = _frame(3).rename(columns={"timestamp": "start_ts"})
    df["start_ts"] = pd.to_datetime(df["start_ts"], unit="ms", utc=True).astype(str)
    assert frame_to_bars(df, "X")[1].timestamp == START_MS + HOUR_MS

    secs = _frame(2).drop(columns=["volume"])
    secs["timestamp"] = secs["timestamp"] // 1000
    bars = frame_to_bars(secs, "X")
    assert bars[1].timestamp == START_MS + HOUR_MS
    assert bars[0].volume == 0.0


def test_load_bars_from_csv(tmp_path: Path):
    _frame(72).to_csv(tmp_path / "BTCUSDT_1h.csv", index=False)
    loader = HistoricalDataLoader(str(tmp_path))
    bars = loader.load_bars("BTCUSDT", 1.0, "2024-01-02", "2024-01-02")
    assert len(bars) == 24
    assert bars[0].timestamp == START_MS + DAY_MS
    assert len(load_bars("BTCUSDT", 1.0, data_dir=str(tmp_path))) == 72

    with pytest.raises(DataLoadError):
        loader.load_bars("BTCUSDT", 1.0, "2025-01-01", "2025-01-02")
    with pytest.raises(DataLoadError) as exc:
        loader.load_bars("ETHUSDT", 1.0)
    assert "not found" in str(exc.value)


class _Response:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self.payload


class _FakeSession:
    """按 startTime 返回分页 K 线（每页最多 limit 根）。"""

    def __init__(self, total: int, page: int = 10, fail: bool = False):
        self.total = total
        self.page = page
        self.fail = fail
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append(dict(params))
        if self.fail:
            raise requests.ConnectionError("boom")
        start = int(params["startTime"])
        idx = max(0, (start - START_MS + HOUR_MS - 1) // HOUR_MS)
        rows = []
        for i in range(idx, min(self.total, idx + self.page)):
            ts = START_MS + i * HOUR_MS
            c = 100.0 + i
            rows.append([ts, str(c), str(c + 1), str(c - 1), str(c), "3.0", ts + HOUR_MS - 1])
        return _Response(rows)


def test_auto_download_writes_csv(tmp_path: Path):
    session = _FakeSession(total=24, page=10)
    loader = HistoricalDataLoader(str(tmp_path / "history"), session=session)
    bars = loader.load_bars("BTCUSDT", 1.0, "2024-01-01", "2024-01-01", auto_download=True)
    assert len(bars) == 24
    assert len(session.calls) == 3
    assert (tmp_path / "history" / "BTCUSDT_1h.csv").exists()
    assert session.calls[0]["interval"] == "1h"

    # 第二次直接读文件
    loader.load_bars("BTCUSDT", 1.0, "2024-01-01", "2024-01-01", auto_download=True)
    assert len(session.calls) == 3


def test_download_failure_is_data_load_error(tmp_path: Path):
    loader = HistoricalDataLoader(str(tmp_path), session=_FakeSession(total=5, fail=True))
    with pytest.raises(DataLoadError):
        loader.load_bars("BTCUSDT", 1.0, "2024-01-01", "2024-01-01", auto_download=True)
    with pytest.raises(DataLoadError):
        loader.load_bars("BTCUSDT", 1.0, auto_download=True)
