"""引擎基类。

单品种回测与多品种组合回测共用同一出口：`run() -> EngineResult`，
CLI 只依赖这一接口，不关心内部如何推进 bar。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    """引擎运行结果。

    summary 为可直接打印/序列化的摘要；artifacts 为已写出的产物路径（未导出时为 None）。
    """

    summary: dict[str, Any]
    artifacts: dict[str, str] | None = None

    @property
    def metrics(self) -> dict[str, Any]:
        return dict(self.summary.get("metrics") or {})


class BaseEngine(ABC):
    @abstractmethod
    def run(self) -> EngineResult:
        raise NotImplementedError
