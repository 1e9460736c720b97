import logging
import sys
from pathlib import Path

import pytest

# 项目根目录加入 sys.path，测试内直接以顶层包名导入
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _restore_log_levels():
    """CLI 的 --quiet 会改全局 logger 级别，每个用例结束后恢复。"""
    names = ("backtest", "oms", "risk", "regime", "portfolio", "data", "strategy.selector", "exchange")
    levels = {n: logging.getLogger(n).level for n in names}
    yield
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)
