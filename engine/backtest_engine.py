"""单品种回测引擎（BacktestEngine）。

流程：配置 → 数据 → 逐 bar（指标/regime/策略/风控/撮合）→ 强制平仓 → 指标/产物。

- bar 按批推进（默认每批 5000 根），批边界检查协作式取消与 kill switch；
- 可选每 N 根 bar 手动 gc；
- 取消时抛出 BacktestCancelledError，已算出的部分结果全部丢弃，不写任何产物。
"""

from __future__ import annotations

import gc
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from analysis.metrics.metrics import compute_metrics
from engine.artifacts import export_backtest_artifacts
from engine.base_engine import BaseEngine, EngineResult
from engine.symbol_engine import SymbolEngine
from market_data.loader import HistoricalDataLoader
from shared.config.config_loader import load_config
from shared.config.schema import MainConfig
from shared.errors import BacktestCancelledError, DataLoadError
from shared.models.models import Bar, EquityPoint, Trade
from shared.utils.kill_switch import kill_switch_active
from shared.utils.logging import setup_logger


class CancellationToken:
    """协作式取消标记（线程安全）。"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class BacktestResult:
    """一次完整回测的结果（只在回测走完后构造）。"""

    symbol: str
    metrics: dict[str, Any]
    trades: list[Trade]
    equity: list[EquityPoint]
    parameters: dict[str, Any]
    rejections: list[dict[str, Any]] = field(default_factory=list)
    regimes: dict[str, int] = field(default_factory=dict)
    n_bars: int = 0

    def to_dict(self) -> dict[str, Any]:
        """结果记录：`{metrics, trades[], equity[], parameters}` + 诊断字段。"""
        return {
            "symbol": self.symbol,
            "metrics": dict(self.metrics),
            "trades": [t.to_dict() for t in self.trades],
            "equity": [p.to_dict() for p in self.equity],
            "parameters": dict(self.parameters),
            "rejections": list(self.rejections),
            "regimes": dict(self.regimes),
            "n_bars": self.n_bars,
        }

    def summary(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "n_bars": self.n_bars,
            "metrics": dict(self.metrics),
            "rejections": len(self.rejections),
            "regimes": dict(self.regimes),
        }


def run_parameters(cfg: MainConfig) -> dict[str, Any]:
    """结果中记录的运行参数（完整配置快照）。"""
    return cfg.model_dump(mode="json", exclude={"exchange": {"api_key", "api_secret"}})


class BacktestEngine(BaseEngine):
    """单品种回测引擎。

    Parameters
    ----------
    cfg:
        已加载的配置；为 None 时从 cfg_path 读取。
    cfg_path:
        配置文件路径。
    bars:
        直接给定的 bar 序列（测试/组合调用）；为 None 时通过 HistoricalDataLoader 加载。
    artifacts_dir:
        产物输出目录；None 表示不写文件。
    cancel_token:
        协作式取消标记。
    """

    def __init__(
        self,
        *,
        cfg: MainConfig | None = None,
        cfg_path: str | None = None,
        symbol: str | None = None,
        bars: Sequence[Bar] | None = None,
        artifacts_dir: str | Path | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self._cfg_obj = cfg
        self._cfg_path = cfg_path
        self._symbol = symbol
        self._bars = bars
        self._artifacts_dir = artifacts_dir
        self.cancel_token = cancel_token or CancellationToken()
        self.logger = setup_logger("backtest")

        self.engine: SymbolEngine | None = None
        self.result: BacktestResult | None = None

    def run(self) -> EngineResult:
        cfg = self._load_cfg()
        symbol = self._symbol or cfg.backtest.symbol
        bars = list(self._bars) if self._bars is not None else self._load_bars(cfg, symbol)

        result = self.run_bars(bars, symbol=symbol, cfg=cfg)
        artifacts = None
        if self._artifacts_dir is not None:
            artifacts = export_backtest_artifacts(
                self._artifacts_dir,
                result.to_dict(),
                trades=result.trades,
                equity=result.equity,
                initial_balance=cfg.backtest.initial_balance,
                bars=bars if cfg.backtest.export_indicators else None,
                indicator_cfg=cfg.indicators,
            )
        self.logger.info(f"Backtest summary: {result.summary()}")
        return EngineResult(summary=result.summary(), artifacts=artifacts)

    def run_bars(self, bars: Sequence[Bar], *, symbol: str, cfg: MainConfig | None = None) -> BacktestResult:
        """对给定 bar 序列跑完整回测。

        Raises
        ------
        DataLoadError
            bar 序列为空。
        BacktestCancelledError
            批边界检测到取消。
        FillSimulationError
            订单/持仓状态不一致（该品种本次回测终止）。
        """
        cfg = cfg or self._load_cfg()
        bt = cfg.backtest
        if not bars:
            raise DataLoadError(f"No bars to backtest for {symbol}")

        engine = SymbolEngine(symbol, cfg)
        self.engine = engine
        gc_interval = int(bt.gc_interval or 0)

        for start in range(0, len(bars), bt.batch_size):
            self._check_cancelled(symbol, start)
            engine.trading_enabled = not kill_switch_active(bt.kill_switch_path)
            for bar in bars[start:start + bt.batch_size]:
                engine.step(bar)
                if gc_interval and engine.bars_processed % gc_interval == 0:
                    gc.collect()
        self._check_cancelled(symbol, len(bars))

        engine.finish(flatten=bt.flatten_on_end)
        metrics = compute_metrics(
            engine.equity_curve,
            engine.trades,
            initial_balance=engine.initial_balance,
            bars_per_year=bt.bars_per_year,
            sample_interval=engine.sample_interval,
        )
        metrics["strategy_switches"] = engine.strategy_switches
        metrics["risk_rejections"] = len(engine.risk.rejections)
        metrics["black_swan_conversions"] = len(engine.risk.conversions)

        self.result = BacktestResult(
            symbol=symbol,
            metrics=metrics,
            trades=list(engine.trades),
            equity=list(engine.equity_curve),
            parameters=run_parameters(cfg),
            rejections=[r.to_dict() for r in engine.risk.rejections],
            regimes={k: v for k, v in engine.regime_counts.items() if v},
            n_bars=len(bars),
        )
        return self.result

    def _check_cancelled(self, symbol: str, processed: int) -> None:
        if self.cancel_token.cancelled:
            self.logger.warning(f"Backtest {symbol} cancelled after {processed} bars, partial results discarded.")
            self.engine = None
            raise BacktestCancelledError(f"backtest {symbol} cancelled after {processed} bars")

    def _load_cfg(self) -> MainConfig:
        if self._cfg_obj is None:
            self._cfg_obj = load_config(self._cfg_path)
        return self._cfg_obj

    @staticmethod
    def _load_bars(cfg: MainConfig, symbol: str) -> list[Bar]:
        bt = cfg.backtest
        loader = HistoricalDataLoader(bt.data_dir)
        return loader.load_bars(
            symbol,
            bt.timeframe_hours,
            bt.start_date,
            bt.end_date,
            auto_download=bt.auto_download,
        )
