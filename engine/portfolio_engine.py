"""多品种组合回测（MultiSymbolOrchestrator）。

每个 symbol 一个独立的 SymbolEngine（状态完全隔离）。按时间戳同步步进：

1. 本时间戳有 bar 的品种各自 `prepare(bar)`（可用线程池并行）；
2. 同步屏障：记录收盘价 → 按间隔重算相关矩阵 → 组合风控闸门过滤意图；
3. 各品种 `commit`，组合权益 = Σ 各品种权益。

某品种出现 FillSimulationError 时只终止该品种，其余品种继续。
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Mapping, Sequence

from algo.risk.portfolio import (
    CorrelationTracker,
    PortfolioRiskAnalyzer,
    PortfolioRiskGate,
    PortfolioRiskReport,
    allocation_weights,
)
from analysis.metrics.metrics import compute_metrics
from engine.artifacts import export_backtest_artifacts
from engine.backtest_engine import CancellationToken, run_parameters
from engine.base_engine import BaseEngine, EngineResult
from engine.symbol_engine import SymbolEngine
from market_data.loader import HistoricalDataLoader
from shared.config.schema import MainConfig
from shared.errors import BacktestCancelledError, ConfigurationError, DataLoadError, FillSimulationError
from shared.models.models import Bar, EquityPoint, OrderIntent, Trade
from shared.utils.kill_switch import kill_switch_active
from shared.utils.logging import setup_logger


def _close_returns(bars: Sequence[Bar]) -> list[float]:
    closes = [b.close for b in bars]
    return [c / p - 1 for p, c in zip(closes, closes[1:]) if p > 0]


class MultiSymbolOrchestrator(BaseEngine):
    """多品种编排器。

    Parameters
    ----------
    cfg:
        总配置；`backtest.symbols` 为空时使用 symbols 参数。
    symbols:
        品种列表，顺序即权重并列时的优先顺序。
    bars_by_symbol:
        直接给定的 bar（测试用）；为 None 时按配置加载。
    workers:
        prepare 阶段的线程数；None 取 `portfolio.workers`。
    """

    def __init__(
        self,
        cfg: MainConfig,
        *,
        symbols: Sequence[str] | None = None,
        bars_by_symbol: Mapping[str, Sequence[Bar]] | None = None,
        artifacts_dir: str | Path | None = None,
        cancel_token: CancellationToken | None = None,
        workers: int | None = None,
    ):
        self.cfg = cfg
        self.symbols = list(symbols or cfg.backtest.symbols or [cfg.backtest.symbol])
        if len(set(self.symbols)) != len(self.symbols):
            raise ConfigurationError(f"Duplicate symbols: {self.symbols}")
        self._bars = bars_by_symbol
        self._artifacts_dir = artifacts_dir
        self.cancel_token = cancel_token or CancellationToken()
        self.workers = int(workers if workers is not None else cfg.portfolio.workers)
        self.logger = setup_logger("portfolio")

        self.engines: dict[str, SymbolEngine] = {}
        self.weights: dict[str, float] = {}
        self.failed: dict[str, str] = {}
        self.tracker = CorrelationTracker(cfg.portfolio)
        self.gate = PortfolioRiskGate(cfg.portfolio)
        self.analyzer = PortfolioRiskAnalyzer(cfg.portfolio)
        self.risk_report: PortfolioRiskReport | None = None
        self.portfolio_equity: list[EquityPoint] = []
        self.steps = 0
        self.calibration_steps = 0
        self.result: dict[str, Any] | None = None

    def run(self) -> EngineResult:
        bars_by_symbol = self._load_all()
        record = self.run_bars(bars_by_symbol)
        artifacts = None
        if self._artifacts_dir is not None:
            trades = [t for e in self.engines.values() for t in e.trades]
            artifacts = export_backtest_artifacts(
                self._artifacts_dir,
                record,
                trades=sorted(trades, key=lambda t: (t.exit_time, t.symbol)),
                equity=self.portfolio_equity,
                initial_balance=self.cfg.backtest.initial_balance,
            )
        summary = {
            "symbols": self.symbols,
            "metrics": record["metrics"],
            "weights": record["weights"],
            "failed": record["failed"],
            "suppressed": len(self.gate.suppressed),
        }
        self.logger.info(f"Portfolio summary: {summary}")
        return EngineResult(summary=summary, artifacts=artifacts)

    def run_bars(self, bars_by_symbol: Mapping[str, Sequence[Bar]]) -> dict[str, Any]:
        """同步步进全部品种，返回结果记录。

        Raises
        ------
        DataLoadError
            任一品种无数据。
        BacktestCancelledError
            批边界检测到取消（部分结果丢弃）。
        """
        cfg = self.cfg
        bt = cfg.backtest
        for symbol in self.symbols:
            if not bars_by_symbol.get(symbol):
                raise DataLoadError(f"No bars for {symbol}")

        by_ts: dict[str, dict[int, Bar]] = {
            s: {b.timestamp: b for b in bars_by_symbol[s]} for s in self.symbols
        }
        timeline = sorted({ts for s in self.symbols for ts in by_ts[s]})

        # volatility 模式：前 lookback+1 个时间点只用来估计波动率，不参与交易
        self.calibration_steps = 0
        returns: dict[str, list[float]] = {}
        if cfg.portfolio.allocation == "volatility":
            self.calibration_steps = cfg.portfolio.volatility_lookback + 1
            if self.calibration_steps >= len(timeline):
                raise DataLoadError(
                    f"Need more than {self.calibration_steps} bars for volatility allocation, got {len(timeline)}"
                )
            trade_start = timeline[self.calibration_steps]
            returns = {
                s: _close_returns([b for b in bars_by_symbol[s] if b.timestamp < trade_start]) for s in self.symbols
            }
            timeline = timeline[self.calibration_steps:]
        self.weights = allocation_weights(self.symbols, cfg.portfolio, returns=returns)
        self.engines = {
            s: SymbolEngine(s, cfg, initial_balance=bt.initial_balance * self.weights[s]) for s in self.symbols
        }

        executor = ThreadPoolExecutor(max_workers=self.workers) if self.workers > 1 else None
        try:
            for step, ts in enumerate(timeline):
                if step % bt.batch_size == 0:
                    self._check_cancelled(step)
                    enabled = not kill_switch_active(bt.kill_switch_path)
                    for engine in self.engines.values():
                        engine.trading_enabled = enabled
                current = {
                    s: by_ts[s][ts] for s in self.symbols if ts in by_ts[s] and s not in self.failed
                }
                if current:
                    self._step(ts, current, executor)
            self._check_cancelled(len(timeline))
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        for symbol, engine in self.engines.items():
            if symbol not in self.failed:
                engine.finish(flatten=bt.flatten_on_end)
        if timeline:
            self._record_portfolio_equity(timeline[-1])

        self.result = self._build_record()
        return self.result

    # ----- 同步步进 -----
    def _step(self, ts: int, current: dict[str, Bar], executor: ThreadPoolExecutor | None) -> None:
        symbols = list(current)
        if executor is not None:
            prepared = list(executor.map(lambda s: self._safe_prepare(s, current[s]), symbols))
        else:
            prepared = [self._safe_prepare(s, current[s]) for s in symbols]
        intents = {s: out for s, out in zip(symbols, prepared) if out is not None}

        # 同步屏障：所有品种都已处理到 ts
        for symbol in intents:
            self.tracker.observe(symbol, ts, current[symbol].close)
        if self.tracker.maybe_update(ts):
            self.risk_report = self.analyzer.analyze(
                {s: e.exposure() for s, e in self.engines.items()},
                self.total_equity(),
                self.weights,
                self.tracker.matrix,
            )

        kept = self.gate.filter(
            intents,
            symbols=self.symbols,
            weights=self.weights,
            matrix=self.tracker.matrix,
            equity=self.total_equity(),
            exposure=sum(e.exposure() for e in self.engines.values()),
            prices={s: b.close for s, b in current.items()},
            timestamp=ts,
        )
        for symbol, symbol_intents in kept.items():
            try:
                self.engines[symbol].commit(symbol_intents, current[symbol])
            except FillSimulationError as exc:
                self._fail(symbol, exc)
        self.steps += 1
        if self.steps % self.cfg.backtest.equity_sample_interval == 0:
            self._record_portfolio_equity(ts)

    def _safe_prepare(self, symbol: str, bar: Bar) -> list[OrderIntent] | None:
        try:
            return self.engines[symbol].prepare(bar)
        except FillSimulationError as exc:
            self._fail(symbol, exc)
            return None

    def _fail(self, symbol: str, exc: Exception) -> None:
        self.failed[symbol] = str(exc)
        self.logger.error(f"Symbol {symbol} halted: {exc}")

    def total_equity(self) -> float:
        return sum(e.equity() for e in self.engines.values())

    def _record_portfolio_equity(self, ts: int) -> None:
        point = EquityPoint(timestamp=ts, equity=self.total_equity())
        if self.portfolio_equity and self.portfolio_equity[-1].timestamp == ts:
            self.portfolio_equity[-1] = point
        else:
            self.portfolio_equity.append(point)

    def _check_cancelled(self, processed: int) -> None:
        if self.cancel_token.cancelled:
            self.logger.warning(f"Portfolio backtest cancelled after {processed} steps, partial results discarded.")
            self.engines = {}
            self.portfolio_equity = []
            raise BacktestCancelledError(f"portfolio backtest cancelled after {processed} steps")

    # ----- 结果 -----
    def _build_record(self) -> dict[str, Any]:
        bt = self.cfg.backtest
        trades: list[Trade] = sorted(
            (t for e in self.engines.values() for t in e.trades), key=lambda t: (t.exit_time, t.symbol)
        )
        metrics = compute_metrics(
            self.portfolio_equity,
            trades,
            initial_balance=bt.initial_balance,
            bars_per_year=bt.bars_per_year,
            sample_interval=bt.equity_sample_interval,
        )
        per_symbol = {}
        for symbol, engine in self.engines.items():
            per_symbol[symbol] = compute_metrics(
                engine.equity_curve,
                engine.trades,
                initial_balance=engine.initial_balance,
                bars_per_year=bt.bars_per_year,
                sample_interval=engine.sample_interval,
            )
        return {
            "metrics": metrics,
            "trades": [t.to_dict() for t in trades],
            "equity": [p.to_dict() for p in self.portfolio_equity],
            "parameters": run_parameters(self.cfg),
            "symbols": list(self.symbols),
            "weights": dict(self.weights),
            "per_symbol": per_symbol,
            "failed": dict(self.failed),
            "suppressed": [r.to_dict() for r in self.gate.suppressed],
            "correlation": {
                "updates": self.tracker.updates,
                "matrix": {f"{a}/{b}": v for (a, b), v in self.tracker.matrix.items() if a < b},
            },
            "risk_report": self.risk_report.to_dict() if self.risk_report is not None else None,
        }

    def _load_all(self) -> dict[str, Sequence[Bar]]:
        if self._bars is not None:
            return dict(self._bars)
        bt = self.cfg.backtest
        loader = HistoricalDataLoader(bt.data_dir)
        return {
            s: loader.load_bars(s, bt.timeframe_hours, bt.start_date, bt.end_date, auto_download=bt.auto_download)
            for s in self.symbols
        }
