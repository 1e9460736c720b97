"""命令行入口。

子命令：

- `backtest`：单品种回测；给出多个品种（`--symbols`）时走多品种组合回测；
- `reconcile`：实盘对账，轮询交易所未完成订单一次并打印结果。

退出码：0 成功；1 致命模拟错误；2 配置错误；3 数据加载错误；130 被取消。
出错时向 stderr 输出结构化 JSON 错误记录。
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from broker.live_broker import CcxtExchangeAdapter, LiveBroker
from engine.backtest_engine import BacktestEngine, CancellationToken
from engine.base_engine import EngineResult
from engine.portfolio_engine import MultiSymbolOrchestrator
from shared.config.config_loader import load_config
from shared.config.schema import MainConfig
from shared.errors import (
    BacktestCancelledError,
    ConfigurationError,
    DataLoadError,
    ExternalServiceError,
    TradingError,
)
from shared.utils.logging import set_quiet

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_DATA = 3
EXIT_CANCELLED = 130

CHATTY_LOGGERS = ("backtest", "oms", "risk", "regime", "portfolio", "data", "strategy.selector")


@dataclass
class CliArgs:
    """命令行参数结构。

    None 表示沿用配置文件中的值。
    """
    task: str
    config: str | None = None
    symbols: list[str] = field(default_factory=list)
    timeframes: list[float] = field(default_factory=list)
    start_date: str | None = None
    end_date: str | None = None
    initial_balance: float | None = None
    slippage: float | None = None
    commission_rate: float | None = None
    batch_size: int | None = None
    data_dir: str | None = None
    output_dir: str | None = None
    workers: int | None = None
    quiet: bool = False


def _csv_list(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def build_parser() -> argparse.ArgumentParser:
    """构建 CLI 参数解析器。"""
    parser = argparse.ArgumentParser(prog="regime-trader", description="Regime-driven trading core")
    sub = parser.add_subparsers(dest="task", required=True)

    p_bt = sub.add_parser("backtest", help="历史回测（单品种或多品种组合）")
    p_bt.add_argument("--config", default=None, help="YAML 配置文件路径")
    p_bt.add_argument("--symbol", action="append", default=[], help="品种，可重复")
    p_bt.add_argument("--symbols", type=_csv_list, default=[], help="逗号分隔的品种列表")
    p_bt.add_argument("--timeframe", type=float, action="append", default=[], help="周期（小时），可重复")
    p_bt.add_argument("--timeframes", type=lambda v: [float(x) for x in _csv_list(v)], default=[])
    p_bt.add_argument("--start-date", default=None)
    p_bt.add_argument("--end-date", default=None)
    p_bt.add_argument("--initial-balance", type=float, default=None)
    p_bt.add_argument("--slippage", type=float, default=None)
    p_bt.add_argument("--commission-rate", type=float, default=None)
    p_bt.add_argument("--batch-size", type=int, default=None)
    p_bt.add_argument("--data-dir", default=None)
    p_bt.add_argument("--output-dir", default=None, help="产物目录（result.json/trades.csv/equity.csv）")
    p_bt.add_argument("--workers", type=int, default=None, help="多品种 prepare 阶段线程数")
    p_bt.add_argument("--quiet", action="store_true", help="只输出 WARNING 以上日志")

    p_rec = sub.add_parser("reconcile", help="实盘对账：轮询交易所未完成订单")
    p_rec.add_argument("--config", default=None)
    p_rec.add_argument("--symbol", action="append", default=[])
    p_rec.add_argument("--symbols", type=_csv_list, default=[])
    p_rec.add_argument("--quiet", action="store_true")
    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    ns = build_parser().parse_args(argv)
    symbols = list(ns.symbol) + list(ns.symbols)
    return CliArgs(
        task=ns.task,
        config=ns.config,
        symbols=list(dict.fromkeys(symbols)),
        timeframes=list(getattr(ns, "timeframe", [])) + list(getattr(ns, "timeframes", [])),
        start_date=getattr(ns, "start_date", None),
        end_date=getattr(ns, "end_date", None),
        initial_balance=getattr(ns, "initial_balance", None),
        slippage=getattr(ns, "slippage", None),
        commission_rate=getattr(ns, "commission_rate", None),
        batch_size=getattr(ns, "batch_size", None),
        data_dir=getattr(ns, "data_dir", None),
        output_dir=getattr(ns, "output_dir", None),
        workers=getattr(ns, "workers", None),
        quiet=bool(ns.quiet),
    )


def apply_cli_overrides(cfg: MainConfig, args: CliArgs) -> MainConfig:
    """把命令行参数写入 backtest 配置块（赋值时由 pydantic 重新校验）。"""
    overrides: dict[str, Any] = {
        "start_date": args.start_date,
        "end_date": args.end_date,
        "initial_balance": args.initial_balance,
        "slippage": args.slippage,
        "commission_rate": args.commission_rate,
        "batch_size": args.batch_size,
        "data_dir": args.data_dir,
    }
    data = cfg.backtest.model_dump()
    data.update({k: v for k, v in overrides.items() if v is not None})
    if args.symbols:
        data["symbol"] = args.symbols[0]
        data["symbols"] = list(args.symbols)
    if args.timeframes:
        data["timeframe_hours"] = args.timeframes[0]
        data["timeframes"] = list(args.timeframes)
    if args.quiet:
        data["quiet"] = True
    try:
        cfg.backtest = type(cfg.backtest).model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid command line arguments: {exc}") from exc
    return cfg


def run_backtests(cfg: MainConfig, args: CliArgs, cancel_token: CancellationToken) -> list[EngineResult]:
    """按 (周期 × 品种集合) 逐个运行回测。"""
    bt = cfg.backtest
    symbols = list(bt.symbols or [bt.symbol])
    timeframes = list(bt.timeframes or [bt.timeframe_hours])
    results: list[EngineResult] = []
    for tf in timeframes:
        run_cfg = cfg.model_copy(deep=True)
        run_cfg.backtest.timeframe_hours = tf
        out_dir = None
        if args.output_dir:
            out_dir = f"{args.output_dir}/{'_'.join(symbols)}_{tf:g}h" if len(timeframes) > 1 else args.output_dir
        if len(symbols) == 1:
            engine = BacktestEngine(cfg=run_cfg, symbol=symbols[0], artifacts_dir=out_dir, cancel_token=cancel_token)
        else:
            engine = MultiSymbolOrchestrator(
                run_cfg, symbols=symbols, artifacts_dir=out_dir, cancel_token=cancel_token, workers=args.workers
            )
        results.append(engine.run())
    return results


def print_summary(console: Console, result: EngineResult) -> None:
    m = result.metrics
    title = str(result.summary.get("symbol") or ",".join(result.summary.get("symbols") or []))
    table = Table(title=f"Backtest {title}")
    table.add_column("metric")
    table.add_column("value", justify="right")
    for key in (
        "total_return",
        "annualized_return",
        "max_drawdown",
        "sharpe",
        "sortino",
        "calmar",
        "win_rate",
        "profit_factor",
        "total_trades",
        "max_consecutive_wins",
        "max_consecutive_losses",
        "stop_gap_trades",
    ):
        if key not in m:
            continue
        value = m[key]
        table.add_row(key, f"{value:.4f}" if isinstance(value, float) else str(value))
    console.print(table)
    if result.artifacts:
        console.print(f"Artifacts: {result.artifacts}")


def build_live_broker(cfg: MainConfig, exchange: Any | None = None) -> LiveBroker:
    """按 exchange 配置构造实盘 broker；sandbox 时连接测试网。"""
    ex = cfg.exchange
    return LiveBroker(
        CcxtExchangeAdapter(ex, exchange=exchange),
        retry_attempts=ex.retry_attempts,
        retry_delays=ex.retry_delays,
        kill_switch_path=cfg.backtest.kill_switch_path,
        testnet=ex.sandbox,
    )


def run_reconcile(cfg: MainConfig, args: CliArgs, console: Console) -> dict[str, Any]:
    broker = build_live_broker(cfg)
    symbols = args.symbols or list(cfg.backtest.symbols or [cfg.backtest.symbol])
    report = {s: broker.reconcile(s) for s in symbols}
    console.print_json(json.dumps(report, default=str))
    return {"mode": broker.mode.value, "reconcile": report, "halted": dict(broker.halted_symbols)}


def _error_record(kind: str, exc: BaseException, code: int) -> dict[str, Any]:
    return {"error": kind, "type": type(exc).__name__, "message": str(exc), "exit_code": code}


def main(argv: list[str] | None = None) -> int:
    """程序主入口，返回退出码。"""
    args = parse_args(argv)
    console = Console()
    err_console = Console(stderr=True)
    if args.quiet:
        set_quiet(CHATTY_LOGGERS)

    cancel_token = CancellationToken()
    previous = signal.getsignal(signal.SIGINT)

    def _on_sigint(signum, frame):
        # 第一次 Ctrl-C 在下一个批边界取消；第二次直接中断
        if cancel_token.cancelled:
            raise KeyboardInterrupt
        cancel_token.cancel()

    signal.signal(signal.SIGINT, _on_sigint)
    try:
        cfg = load_config(args.config)
        if args.task == "backtest":
            cfg = apply_cli_overrides(cfg, args)
            for result in run_backtests(cfg, args, cancel_token):
                if not args.quiet:
                    print_summary(console, result)
            return EXIT_OK
        if args.task == "reconcile":
            out = run_reconcile(cfg, args, console)
            return EXIT_FATAL if out["halted"] else EXIT_OK
        raise ConfigurationError(f"Unknown task: {args.task}")
    except ConfigurationError as exc:
        record = _error_record("configuration", exc, EXIT_CONFIG)
    except DataLoadError as exc:
        record = _error_record("data_load", exc, EXIT_DATA)
    except (BacktestCancelledError, KeyboardInterrupt) as exc:
        record = _error_record("cancelled", exc, EXIT_CANCELLED)
    except (ExternalServiceError, TradingError) as exc:
        record = _error_record("fatal", exc, EXIT_FATAL)
    except Exception as exc:
        # 未归类的异常同样输出结构化错误记录，不向外抛 traceback
        record = _error_record("fatal", exc, EXIT_FATAL)
    finally:
        signal.signal(signal.SIGINT, previous)
    err_console.print_json(json.dumps(record, default=str))
    return int(record["exit_code"])


if __name__ == "__main__":
    sys.exit(main())
