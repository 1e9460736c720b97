"""行情数据模块（market_data）。

该包提供历史 K 线的加载与下载（CSV + Binance REST 补齐）。
"""

from market_data.loader import HistoricalDataLoader, load_bars

__all__ = [
    "HistoricalDataLoader",
    "load_bars",
]
