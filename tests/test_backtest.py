import json
import math

import numpy as np
import pandas as pd
import pytest

from analysis.metrics.metrics import (
    annualized_return,
    calmar_ratio,
    compute_metrics,
    compute_trade_metrics,
    max_consecutive,
    max_drawdown,
    sharpe_ratio,
    sortino_ratio,
)
from engine.artifacts import sanitize_for_json
from engine.backtest_engine import BacktestEngine, CancellationToken
from shared.config.schema import IndicatorConfig
from shared.errors import BacktestCancelledError, DataLoadError
from helpers import bars_from_closes, random_walk_bars, small_cfg, trend_closes


def _default_cfg(**backtest):
    cfg = small_cfg(**backtest)
    cfg.indicators = IndicatorConfig()
    return cfg


# ----- 回测流程 -----
def test_losses_stay_within_per_trade_cap():
    cfg = _default_cfg()
    bars = random_walk_bars(1500, seed=11)
    result = BacktestEngine(cfg=cfg).run_bars(bars, symbol="TEST")

    assert result.trades
    assert len(result.equity) == len(bars)
    initial = cfg.backtest.initial_balance
    cum = 0.0
    peak_pnl = 0.0
    for trade in sorted(result.trades, key=lambda t: t.exit_time):
        if trade.exit_reason != "stop_gap":
            assert -trade.pnl <= cfg.risk.max_risk_per_trade * (initial + peak_pnl) + 1e-6, trade
        cum += trade.pnl
        peak_pnl = max(peak_pnl, cum)

    # 全部平仓后余额 = 初始资金 + Σ pnl
    assert result.equity[-1].equity == pytest.approx(initial + sum(t.pnl for t in result.trades))
    assert result.metrics["total_trades"] == len(result.trades)
    assert sum(result.regimes.values()) == len(bars)


def test_batch_size_does_not_change_results():
    bars = random_walk_bars(600, seed=5)
    a = BacktestEngine(cfg=small_cfg()).run_bars(bars, symbol="TEST")
    b = BacktestEngine(cfg=small_cfg(batch_size=7, gc_interval=50)).run_bars(bars, symbol="TEST")
    assert [t.pnl for t in a.trades] == [t.pnl for t in b.trades]
    assert [p.equity for p in a.equity] == [p.equity for p in b.equity]


def test_equity_sampling_interval():
    bars = random_walk_bars(100, seed=2)
    result = BacktestEngine(cfg=small_cfg(equity_sample_interval=10)).run_bars(bars, symbol="TEST")
    assert len(result.equity) == 10
    assert result.equity[-1].timestamp == bars[-1].timestamp


def test_cancelled_run_discards_results(tmp_path):
    token = CancellationToken()
    token.cancel()
    out = tmp_path / "out"
    engine = BacktestEngine(
        cfg=small_cfg(), symbol="TEST", bars=random_walk_bars(50), artifacts_dir=out, cancel_token=token
    )
    with pytest.raises(BacktestCancelledError):
        engine.run()
    assert engine.engine is None
    assert engine.result is None
    assert not out.exists()


def test_empty_bars_raise_data_load_error():
    with pytest.raises(DataLoadError):
        BacktestEngine(cfg=small_cfg()).run_bars([], symbol="TEST")


def test_kill_switch_blocks_entries(tmp_path):
    flag = tmp_path / "kill.flag"
    flag.write_text("stop")
    cfg = small_cfg(kill_switch_path=str(flag))
    result = BacktestEngine(cfg=cfg).run_bars(bars_from_closes(trend_closes(80)), symbol="TEST")
    assert result.trades == []
    assert {r["reason"] for r in result.rejections} == {"kill_switch"}


def test_flatten_on_end_is_optional():
    bars = bars_from_closes(trend_closes(80))
    kept = BacktestEngine(cfg=small_cfg(flatten_on_end=False)).run_bars(bars, symbol="TEST")
    assert kept.trades == []
    flat = BacktestEngine(cfg=small_cfg()).run_bars(bars, symbol="TEST")
    assert flat.trades[-1].exit_reason == "end_of_backtest"


def test_artifacts_are_valid_json(tmp_path):
    bars = bars_from_closes(trend_closes(120))
    out = tmp_path / "run"
    res = BacktestEngine(cfg=small_cfg(export_indicators=True), symbol="TEST", bars=bars, artifacts_dir=out).run()

    assert set(res.artifacts) == {"result", "trades", "equity", "indicators"}
    payload = json.loads((out / "result.json").read_text(encoding="utf-8"))
    assert set(payload) >= {"metrics", "trades", "equity", "parameters"}
    # 只有盈利交易：profit_factor 为 inf，写成字符串
    assert payload["metrics"]["profit_factor"] == "inf"
    assert payload["parameters"]["backtest"]["symbol"] == "BTCUSDT"
    assert "api_key" not in payload["parameters"]["exchange"]

    trades = pd.read_csv(out / "trades.csv")
    assert len(trades) == len(payload["trades"])
    equity = pd.read_csv(out / "equity.csv")
    assert list(equity.columns) == ["timestamp", "equity", "drawdown", "drawdown_pct"]
    assert (equity["drawdown"] >= 0).all()
    indicators = pd.read_csv(out / "indicators.csv")
    assert len(indicators) == len(bars)


# ----- 指标 -----
def test_sanitize_for_json():
    assert sanitize_for_json({"a": math.inf, "b": [-math.inf, math.nan], "c": (1, 2)}) == {
        "a": "inf",
        "b": ["-inf", "nan"],
        "c": [1, 2],
    }


def test_sharpe_and_sortino():
    returns = [0.01, -0.01, 0.02, 0.005]
    arr = np.array(returns)
    assert sharpe_ratio(returns, 365) == pytest.approx(arr.mean() / arr.std() * math.sqrt(365))
    downside = math.sqrt(sum(min(r, 0) ** 2 for r in returns) / len(returns))
    assert sortino_ratio(returns, 365) == pytest.approx(arr.mean() / downside * math.sqrt(365))
    assert sharpe_ratio([0.01, 0.01], 365) == 0.0
    assert sortino_ratio([0.01, 0.02], 365) == math.inf
    assert sortino_ratio([], 365) == 0.0


def test_drawdown_and_calmar():
    assert max_drawdown([100.0, 120.0, 90.0, 130.0], 100.0) == pytest.approx(0.25)
    assert max_drawdown([100.0, 120.0, 90.0, 130.0], 150.0) == pytest.approx(0.4)
    assert calmar_ratio(0.2, 0.1) == pytest.approx(2.0)
    assert calmar_ratio(0.1, 0.0) == math.inf
    assert annualized_return(100.0, 121.0, 2, 1.0) == pytest.approx(0.1)
    assert annualized_return(100.0, 0.0, 2, 1.0) == -1.0


def test_trade_metrics():
    m = compute_trade_metrics([{"pnl": 10.0}, {"pnl": -5.0}, {"pnl": 5.0, "exit_reason": "stop_gap"}])
    assert m["profit_factor"] == pytest.approx(3.0)
    assert m["win_rate"] == pytest.approx(2 / 3)
    assert m["stop_gap_trades"] == 1
    assert m["largest_loss"] == pytest.approx(5.0)
    assert compute_trade_metrics([{"pnl": 1.0}, {"pnl": 2.0}])["profit_factor"] == math.inf
    assert compute_trade_metrics([])["profit_factor"] == 0.0
    assert max_consecutive([1, 2, -1, -1, -1, 0, 3]) == (2, 3)


def test_compute_metrics_annualizes_by_sample_interval():
    equity = [(i, 10000.0 * (1 + 0.001 * i)) for i in range(1, 11)]
    hourly = compute_metrics(equity, [], initial_balance=10000.0, bars_per_year=8760)
    sampled = compute_metrics(equity, [], initial_balance=10000.0, bars_per_year=8760, sample_interval=24)
    assert hourly["total_return"] == pytest.approx(0.01)
    assert hourly["max_drawdown"] == 0.0
    assert sampled["sharpe"] == pytest.approx(hourly["sharpe"] / math.sqrt(24))
    empty = compute_metrics([], [], initial_balance=10000.0, bars_per_year=8760)
    assert empty["final_equity"] == 10000.0 and empty["total_trades"] == 0
