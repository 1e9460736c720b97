"""紧急停止开关（flag 文件）。

文件存在即视为开关打开：不再接受新开仓，只允许减仓/止损类意图。
"""

from __future__ import annotations

from pathlib import Path


def kill_switch_active(path: str | Path | None) -> bool:
    if not path:
        return False
    return Path(path).exists()
