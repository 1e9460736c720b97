import json

import pytest

from algo.risk.portfolio import (
    CorrelationTracker,
    PortfolioRiskAnalyzer,
    PortfolioRiskGate,
    allocation_weights,
    correlation_matrix,
    custom_weights,
    daily_returns_frame,
    volatility_weights,
)
from engine.portfolio_engine import MultiSymbolOrchestrator
from shared.config.schema import PortfolioConfig
from shared.errors import ConfigurationError, DataLoadError
from shared.models.models import OrderIntent, OrderType, Side
from helpers import DAY_MS, HOUR_MS, START_MS, random_walk_bars, small_cfg


def _entry(symbol: str, side: Side = Side.BUY, amount: float = 1.0) -> OrderIntent:
    return OrderIntent(symbol=symbol, side=side, type=OrderType.MARKET, amount=amount, metadata={"reason": "entry"})


# ----- 资金分配 -----
def test_equal_and_custom_weights():
    assert allocation_weights(["A", "B", "C", "D"]) == {s: 0.25 for s in "ABCD"}
    cfg = PortfolioConfig(allocation="custom", weights={"A": 3.0, "B": 1.0})
    assert allocation_weights(["A", "B"], cfg) == pytest.approx({"A": 0.75, "B": 0.25})
    with pytest.raises(ConfigurationError):
        custom_weights(["A", "B", "C"], {"A": 1.0, "B": 1.0})
    with pytest.raises(ConfigurationError):
        custom_weights(["A"], {"A": 0.0})


def test_volatility_weights():
    returns = {"A": [0.01, -0.01, 0.01, -0.01], "B": [0.02, -0.02, 0.02, -0.02]}
    assert volatility_weights(["A", "B"], returns) == pytest.approx({"A": 2 / 3, "B": 1 / 3})
    cfg = PortfolioConfig(allocation="volatility")
    assert allocation_weights(["A", "B"], cfg, returns=returns) == pytest.approx({"A": 2 / 3, "B": 1 / 3})
    # 任一品种波动率为 0：退回等权
    flat = {"A": [0.01, -0.01], "B": [0.0, 0.0]}
    assert volatility_weights(["A", "B"], flat) == {"A": 0.5, "B": 0.5}


# ----- 相关性 -----
def _daily_points(values, hour: int = 23):
    return [(START_MS + i * DAY_MS + hour * HOUR_MS, v) for i, v in enumerate(values)]


def test_daily_returns_and_correlation():
    a = [100.0, 101.0, 99.0, 102.0, 100.0, 103.0]
    b = [200.0, 202.0, 198.0, 204.0, 200.0, 206.0]
    c = [100.0, 99.0, 101.0, 98.0, 100.0, 97.0]
    frame = daily_returns_frame({"A": _daily_points(a), "B": _daily_points(b), "C": _daily_points(c)})
    assert list(frame.columns) == ["A", "B", "C"]
    assert len(frame) == 5
    assert frame["A"].iloc[0] == pytest.approx(0.01)

    matrix = correlation_matrix(frame)
    assert matrix[("A", "B")] == pytest.approx(1.0)
    assert matrix[("B", "A")] == matrix[("A", "B")]
    assert matrix[("A", "C")] < -0.9
    assert correlation_matrix(frame.iloc[:2]) == {}


def test_tracker_recomputes_on_interval():
    tracker = CorrelationTracker(PortfolioConfig(correlation_interval_hours=24))
    for i in range(24 * 6):
        ts = START_MS + i * HOUR_MS
        tracker.observe("A", ts, 100.0 + i)
        tracker.observe("B", ts, 50.0 + 0.5 * i)
    t0 = START_MS + 24 * 6 * HOUR_MS
    assert tracker.maybe_update(t0)
    assert not tracker.maybe_update(t0 + HOUR_MS)
    assert tracker.maybe_update(t0 + DAY_MS)
    assert tracker.updates == 2
    assert tracker.correlation("A", "B") == pytest.approx(1.0)


def test_tracker_drops_points_outside_lookback():
    tracker = CorrelationTracker(PortfolioConfig(correlation_lookback_days=2))
    for i in range(24 * 5):
        tracker.observe("A", START_MS + i * HOUR_MS, 100.0)
    points = tracker.history["A"]
    assert points[-1][0] - points[0][0] <= 2 * DAY_MS


# ----- 风险报告 -----
def test_risk_report():
    analyzer = PortfolioRiskAnalyzer(PortfolioConfig())
    report = analyzer.analyze(
        {"A": 3000.0, "B": 1000.0},
        10000.0,
        {"A": 0.5, "B": 0.5},
        {("A", "B"): 0.9, ("B", "A"): 0.9},
    )
    assert report.total_exposure == 4000.0
    assert report.var == pytest.approx(80.0)
    assert report.expected_shortfall == pytest.approx(104.0)
    assert report.concentration == pytest.approx(0.5)
    assert report.correlation_risk == pytest.approx(0.9 * 0.25)
    assert report.stress == pytest.approx({"market_crash": 160.0, "liquidity_crisis": 120.0})
    assert report.high_correlation_pairs == [{"pair": ["A", "B"], "correlation": 0.9}]

    capped = analyzer.analyze({"A": 100000.0}, 10000.0, {"A": 1.0}, {})
    assert capped.var == pytest.approx(1000.0)
    assert capped.concentration == pytest.approx(1.0)
    assert capped.correlation_risk == 0.0


# ----- 组合闸门 -----
def test_gate_suppresses_correlated_same_side_entries():
    gate = PortfolioRiskGate(PortfolioConfig(correlation_limit=0.8))
    reduce = OrderIntent(
        symbol="B", side=Side.SELL, type=OrderType.MARKET, amount=1.0,
        metadata={"reduce_only": True, "position_side": "long"},
    )
    kept = gate.filter(
        {"A": [_entry("A")], "B": [_entry("B"), _entry("B", Side.SELL), reduce]},
        symbols=["A", "B"],
        weights={"A": 0.5, "B": 0.5},
        matrix={("A", "B"): 0.95, ("B", "A"): 0.95},
        equity=10000.0,
        exposure=0.0,
        prices={"A": 10.0, "B": 10.0},
    )
    assert [i.side for i in kept["A"]] == [Side.BUY]
    assert [(i.side, i.reduce_only) for i in kept["B"]] == [(Side.SELL, False), (Side.SELL, True)]
    assert [(r.reason, r.intent.symbol) for r in gate.suppressed] == [("correlation", "B")]


def test_gate_prefers_higher_weight():
    gate = PortfolioRiskGate()
    kept = gate.filter(
        {"A": [_entry("A")], "B": [_entry("B")]},
        symbols=["A", "B"],
        weights={"A": 0.3, "B": 0.7},
        matrix={("A", "B"): 0.9, ("B", "A"): 0.9},
        equity=10000.0,
        exposure=0.0,
        prices={"A": 10.0, "B": 10.0},
    )
    assert kept["A"] == [] and len(kept["B"]) == 1


def test_gate_enforces_portfolio_exposure():
    gate = PortfolioRiskGate(PortfolioConfig(max_portfolio_exposure=0.5))
    kept = gate.filter(
        {"A": [_entry("A", amount=10.0)], "B": [_entry("B", amount=5.0)]},
        symbols=["A", "B"],
        weights={"A": 0.5, "B": 0.5},
        matrix={},
        equity=10000.0,
        exposure=4000.0,
        prices={"A": 80.0, "B": 100.0},
    )
    assert len(kept["A"]) == 1
    assert kept["B"] == []
    assert gate.suppressed[0].reason == "portfolio_exposure"


# ----- 编排器 -----
def test_identical_series_suppress_second_symbol():
    cfg = small_cfg()
    cfg.portfolio = PortfolioConfig(correlation_limit=0.8)
    bars = {s: random_walk_bars(300, seed=21, symbol=s) for s in ("AAA", "BBB")}
    orch = MultiSymbolOrchestrator(cfg, symbols=["AAA", "BBB"])
    record = orch.run_bars(bars)

    assert record["weights"] == {"AAA": 0.5, "BBB": 0.5}
    assert record["correlation"]["updates"] >= 12
    assert record["correlation"]["matrix"]["AAA/BBB"] == pytest.approx(1.0)
    corr = [s for s in record["suppressed"] if s["reason"] == "correlation"]
    assert corr
    assert {s["symbol"] for s in corr} == {"BBB"}
    assert orch.engines["AAA"].initial_balance == pytest.approx(cfg.backtest.initial_balance / 2)
    assert record["risk_report"] is not None
    assert set(record["per_symbol"]) == {"AAA", "BBB"}


def test_portfolio_equity_is_sum_of_symbols(tmp_path):
    cfg = small_cfg()
    bars = {
        "AAA": random_walk_bars(120, seed=1, symbol="AAA"),
        "BBB": random_walk_bars(120, seed=2, symbol="BBB"),
    }
    orch = MultiSymbolOrchestrator(cfg, symbols=["AAA", "BBB"], bars_by_symbol=bars, artifacts_dir=tmp_path)
    res = orch.run()
    total = sum(e.equity() for e in orch.engines.values())
    assert orch.portfolio_equity[-1].equity == pytest.approx(total)
    assert len(orch.portfolio_equity) == 120
    payload = json.loads((tmp_path / "result.json").read_text(encoding="utf-8"))
    assert payload["symbols"] == ["AAA", "BBB"]
    assert res.summary["failed"] == {}


def test_threaded_prepare_matches_serial():
    cfg = small_cfg()
    bars = {s: random_walk_bars(150, seed=i, symbol=s) for i, s in enumerate(("AAA", "BBB", "CCC"))}
    serial = MultiSymbolOrchestrator(cfg, symbols=list(bars), workers=1).run_bars(bars)
    threaded = MultiSymbolOrchestrator(cfg, symbols=list(bars), workers=3).run_bars(bars)
    assert serial["metrics"]["final_equity"] == pytest.approx(threaded["metrics"]["final_equity"])
    assert [t["id"] for t in serial["trades"]] == [t["id"] for t in threaded["trades"]]


def test_orchestrator_input_validation():
    cfg = small_cfg()
    with pytest.raises(ConfigurationError):
        MultiSymbolOrchestrator(cfg, symbols=["AAA", "AAA"])
    orch = MultiSymbolOrchestrator(cfg, symbols=["AAA", "BBB"])
    with pytest.raises(DataLoadError):
        orch.run_bars({"AAA": random_walk_bars(10, symbol="AAA"), "BBB": []})


def test_volatility_weights_use_only_calibration_window():
    cfg = small_cfg()
    cfg.portfolio = PortfolioConfig(allocation="volatility", volatility_lookback=20)
    head = 21
    bars = {
        "AAA": random_walk_bars(100, seed=1, vol=0.01, symbol="AAA"),
        "BBB": random_walk_bars(100, seed=2, vol=0.03, symbol="BBB"),
    }
    # 校准窗口之后的行情换成另一条路径
    altered = {
        "AAA": bars["AAA"][:head] + random_walk_bars(100, seed=9, vol=0.05, symbol="AAA")[head:],
        "BBB": bars["BBB"][:head] + random_walk_bars(100, seed=8, vol=0.002, symbol="BBB")[head:],
    }
    first = MultiSymbolOrchestrator(cfg, symbols=["AAA", "BBB"])
    first.run_bars(bars)
    second = MultiSymbolOrchestrator(cfg, symbols=["AAA", "BBB"])
    second.run_bars(altered)

    assert first.weights == pytest.approx(second.weights)
    assert first.weights["AAA"] > first.weights["BBB"]
    assert first.calibration_steps == head
    assert len(first.portfolio_equity) == 100 - head
    assert first.portfolio_equity[0].timestamp == START_MS + head * HOUR_MS

    with pytest.raises(DataLoadError):
        MultiSymbolOrchestrator(cfg, symbols=["AAA", "BBB"]).run_bars(
            {s: b[:head] for s, b in bars.items()}
        )
