import pytest

from algo.indicators.engine import IndicatorEngine, IndicatorSnapshot
from algo.strategy.base import StrategyContext
from algo.strategy.emergency import EmergencyStrategy
from algo.strategy.mean_revert import (
    MeanRevertStrategy,
    grid_level_count,
    grid_levels,
    maker_price,
    narrowed_range,
)
from algo.strategy.registry import available_strategies, build_strategy
from algo.strategy.selector import StrategySelector, build_selector, check_role_table
from algo.strategy.trend_follow import TrendFollowStrategy
from engine.symbol_engine import SymbolEngine
from shared.config.schema import IndicatorConfig, MeanRevertConfig, SelectorConfig, TrendFollowConfig
from shared.models.models import OrderType, Position, PositionSide, RegimeLabel, Side
from helpers import bars_from_closes, make_bar, oscillating_closes, small_cfg, trend_closes


def snap(**kw) -> IndicatorSnapshot:
    base = dict(
        timestamp=0,
        close=100.0,
        prev_close=100.0,
        gap_pct=0.0,
        ema_short=100.0,
        ema_long=100.0,
        slope_short=0.0,
        slope_long=0.0,
        slope_periods=5,
        atr=1.0,
        raw_atr=1.0,
        atr_pct=1.0,
        adx=15.0,
        plus_di=20.0,
        minus_di=20.0,
        sar=None,
        sar_uptrend=None,
        sar_flipped=False,
        donchian_upper=102.0,
        donchian_lower=98.0,
        prior_upper=102.0,
        prior_lower=98.0,
        range_upper=102.0,
        range_lower=98.0,
        vwap=100.0,
        bars_seen=100,
        ready=True,
        range_ready=True,
    )
    base.update(kw)
    return IndicatorSnapshot(**base)


def ctx_for(snapshot: IndicatorSnapshot, regime: RegimeLabel, *, positions=(), balance=10000.0, cost_rate=0.0):
    bar = make_bar(0, snapshot.close)
    return StrategyContext(
        symbol="TEST",
        bar=bar,
        snapshot=snapshot,
        regime=regime,
        balance=balance,
        equity=balance,
        positions=tuple(positions),
        cost_rate=cost_rate,
    )


def position(side: PositionSide, amount: float, entry: float = 100.0, stop=None, **metadata) -> Position:
    return Position(
        id=f"pos_TEST_{side.value}",
        symbol="TEST",
        side=side,
        amount=amount,
        entry_price=entry,
        opened_at=0,
        stop_price=stop,
        original_amount=amount,
        metadata=dict(metadata),
    )


# ----- 分派 -----
def _selector() -> StrategySelector:
    return StrategySelector(
        {"trend": TrendFollowStrategy(), "range": MeanRevertStrategy(), "emergency": EmergencyStrategy()}
    )


@pytest.mark.parametrize(
    "regime, adx, role",
    [
        (RegimeLabel.STRONG_UPTREND, 10.0, "trend"),
        (RegimeLabel.DOWNTREND, 10.0, "trend"),
        (RegimeLabel.RANGE, 40.0, "range"),
        (RegimeLabel.EMERGENCY, 40.0, "emergency"),
        (RegimeLabel.WEAK_UPTREND, 30.0, "trend"),
        (RegimeLabel.WEAK_DOWNTREND, 20.0, "range"),
        (RegimeLabel.WEAK_DOWNTREND, 25.0, "range"),
    ],
)
def test_selector_roles(regime, adx, role):
    assert _selector().role_for(regime, adx) == role


def test_selector_covers_every_label():
    selector = _selector()
    for label in RegimeLabel:
        assert selector.select(label, 10.0).name in {"trend_follow", "mean_revert", "emergency"}


def test_role_table_must_cover_every_label():
    check_role_table({label: "trend" for label in RegimeLabel})
    partial = {label: "trend" for label in RegimeLabel if label is not RegimeLabel.EMERGENCY}
    with pytest.raises(RuntimeError) as exc:
        check_role_table(partial)
    assert "emergency" in str(exc.value)


def test_selector_requires_all_roles():
    with pytest.raises(ValueError):
        StrategySelector({"trend": TrendFollowStrategy(), "range": MeanRevertStrategy()})


def test_build_selector_from_config():
    selector = build_selector(SelectorConfig(), {"trend_follow": TrendFollowConfig(adx_threshold=30.0)}, 25.0)
    assert selector.strategies["trend"].cfg.adx_threshold == 30.0
    assert selector.strategies["trend"].strategy_id == "trend_follow"
    assert set(available_strategies()) >= {"trend_follow", "mean_revert", "emergency"}
    with pytest.raises(ValueError):
        build_strategy("martingale")


def test_selector_degrades_when_data_insufficient():
    ctx = ctx_for(snap(ready=False, bars_seen=3), RegimeLabel.UPTREND)
    assert _selector().execute(ctx) == []


# ----- 趋势跟随 -----
def test_trend_breakout_entry_is_risk_sized():
    s = snap(close=102.0, prev_close=101.0, prior_upper=101.5, adx=30.0, atr=1.0)
    intents = TrendFollowStrategy().execute(ctx_for(s, RegimeLabel.UPTREND))
    assert len(intents) == 1
    entry = intents[0]
    assert entry.side is Side.BUY and entry.type is OrderType.MARKET
    assert entry.stop_price == pytest.approx(102.0 - 1.5)
    assert entry.metadata["signal"] == "donchian_breakout"
    # 风险预算 100/1.5 ≈ 66.7，被名义上限 25% 截断
    assert entry.amount == pytest.approx(10000.0 * 0.25 / 102.0)


def test_trend_does_not_fight_the_regime():
    s = snap(close=102.0, prev_close=101.0, prior_upper=101.5, adx=30.0)
    assert TrendFollowStrategy().execute(ctx_for(s, RegimeLabel.DOWNTREND)) == []


def test_trend_sar_flip_entry():
    s = snap(sar=99.0, sar_uptrend=True, sar_flipped=True)
    intents = TrendFollowStrategy().execute(ctx_for(s, RegimeLabel.WEAK_UPTREND))
    assert [i.metadata["signal"] for i in intents] == ["sar_flip"]
    off = TrendFollowStrategy(TrendFollowConfig(use_sar_entry=False))
    assert off.execute(ctx_for(s, RegimeLabel.WEAK_UPTREND)) == []


def test_trend_trails_stop_and_pyramids():
    pos = position(PositionSide.LONG, 10.0, entry=100.0, stop=98.5, initial_risk=1.5, adds=0, anchor_price=100.0)
    s = snap(close=104.0, prev_close=103.5, atr=1.0)
    intents = TrendFollowStrategy().execute(ctx_for(s, RegimeLabel.UPTREND, positions=[pos]))
    by_reason = {i.reason: i for i in intents}
    # 浮盈 4 ≥ 2R：保本 100 与追踪 104 - 1.2 中取更有利者
    assert by_reason["trailing_stop"].stop_price == pytest.approx(102.8)
    assert by_reason["trailing_stop"].is_stop_update
    pyramid = by_reason["pyramid"]
    assert pyramid.side is Side.BUY
    assert pyramid.stop_price == pytest.approx(102.8)
    # 风险预算 50/1.2 ≈ 41.7，被 35% 仓位上限截断
    assert pyramid.amount == pytest.approx((10000.0 * 0.35 - 10.0 * 104.0) / 104.0)


def test_trend_stop_never_loosens():
    pos = position(PositionSide.LONG, 10.0, entry=100.0, stop=99.0, initial_risk=1.5)
    s = snap(close=99.5, prev_close=100.0, atr=1.0)
    intents = TrendFollowStrategy().execute(ctx_for(s, RegimeLabel.UPTREND, positions=[pos]))
    assert not [i for i in intents if i.is_stop_update]


def test_trend_sar_reversal_closes_position():
    pos = position(PositionSide.LONG, 3.0, entry=100.0, stop=98.0)
    s = snap(sar=103.0, sar_uptrend=False, sar_flipped=True)
    intents = TrendFollowStrategy().execute(ctx_for(s, RegimeLabel.UPTREND, positions=[pos]))
    assert len(intents) == 1
    assert intents[0].reason == "sar_exit"
    assert intents[0].reduce_only and intents[0].amount == 3.0


def test_uptrend_series_opens_and_keeps_single_long():
    cfg = small_cfg()
    bars = bars_from_closes(trend_closes(200))
    engine = SymbolEngine("TEST", cfg)
    for bar in bars:
        engine.step(bar)

    positions = engine.oms.positions
    assert PositionSide.SHORT not in positions
    long_pos = positions[PositionSide.LONG]
    assert long_pos.id == "pos_TEST_1"
    assert long_pos.opened_at <= bars[29].timestamp
    assert engine.oms.closed_positions == []

    engine.finish()
    trades = engine.trades
    assert trades
    assert {t.side for t in trades} == {PositionSide.LONG}
    assert {t.position_id for t in trades} == {"pos_TEST_1"}


# ----- 区间网格 -----
def test_grid_helpers():
    assert narrowed_range(102.0, 98.0, 0.9) == pytest.approx((101.8, 98.2))
    cfg = MeanRevertConfig()
    assert grid_level_count(3.6, 3.0, cfg) == cfg.min_levels
    assert grid_level_count(50.0, 0.5, cfg) == cfg.max_levels
    assert grid_level_count(6.0, 1.0, cfg) == 10
    assert grid_level_count(2.9, 1.0, cfg) == 5
    assert grid_levels(101.8, 98.2, 3) == pytest.approx([99.1, 100.0, 100.9])
    assert maker_price(Side.BUY, 100.0, 0.3) == pytest.approx(99.7)
    assert maker_price(Side.SELL, 100.0, 0.3) == pytest.approx(100.3)


def test_grid_places_maker_orders_on_both_sides():
    s = snap(close=100.3, atr_pct=3.0, atr=3.0)
    intents = MeanRevertStrategy().execute(ctx_for(s, RegimeLabel.RANGE, cost_rate=0.002))
    grid = [i for i in intents if i.reason == "grid"]
    assert sorted(i.metadata["grid_level"] for i in grid) == [0, 1, 2]
    for intent in grid:
        assert intent.type is OrderType.LIMIT
        assert intent.metadata["post_only"] is True
        assert intent.amount > 0
        if intent.side is Side.BUY:
            assert intent.price < 100.3
        else:
            assert intent.price > 100.3


def test_grid_on_oscillating_series():
    cfg = IndicatorConfig()
    engine = IndicatorEngine(cfg)
    snapshot = None
    for bar in bars_from_closes(oscillating_closes(100, offset=1), spread=0.012):
        snapshot = engine.update(bar)
    assert snapshot.ready and snapshot.close == pytest.approx(100.0)

    high, low = narrowed_range(snapshot.range_upper, snapshot.range_lower, MeanRevertConfig().range_multiplier)
    levels = grid_level_count((high - low) / snapshot.close * 100.0, snapshot.atr_pct, MeanRevertConfig())
    assert 3 <= levels <= 10

    bar = make_bar(99, snapshot.close)
    ctx = StrategyContext(
        symbol="TEST", bar=bar, snapshot=snapshot, regime=RegimeLabel.RANGE,
        balance=10000.0, equity=10000.0, cost_rate=0.002,
    )
    grid = [i for i in MeanRevertStrategy().execute(ctx) if i.reason == "grid"]
    buys = [i for i in grid if i.side is Side.BUY]
    sells = [i for i in grid if i.side is Side.SELL]
    assert buys and sells
    assert all(i.price < snapshot.close for i in buys)
    assert all(i.price > snapshot.close for i in sells)
    assert all(i.metadata["post_only"] for i in grid)


def test_grid_iceberg_splits_orders():
    s = snap(close=100.3, atr_pct=3.0, atr=3.0)
    strategy = MeanRevertStrategy(MeanRevertConfig(iceberg_chunks=3))
    grid = [i for i in strategy.execute(ctx_for(s, RegimeLabel.RANGE)) if i.reason == "grid"]
    level0 = [i for i in grid if i.metadata["grid_level"] == 0]
    assert [i.metadata["chunk"] for i in level0] == [0, 1, 2]
    # 后续子单让价更多
    assert level0[0].price > level0[1].price > level0[2].price


def test_grid_escape_closes_adverse_position():
    pos = position(PositionSide.LONG, 5.0, entry=99.0, stop=95.0)
    s = snap(close=95.0)
    intents = MeanRevertStrategy().execute(ctx_for(s, RegimeLabel.RANGE, positions=[pos]))
    assert len(intents) == 1
    escape = intents[0]
    assert escape.reason == "escape"
    assert escape.type is OrderType.MARKET
    assert escape.reduce_only and escape.amount == 5.0
    assert escape.position_side is PositionSide.LONG


def test_grid_hedges_imbalanced_book():
    pos = position(PositionSide.LONG, 10.0, entry=100.0, stop=96.0)
    s = snap(close=100.3, atr_pct=3.0, atr=3.0)
    intents = MeanRevertStrategy().execute(ctx_for(s, RegimeLabel.RANGE, positions=[pos]))
    hedge = intents[0]
    assert hedge.reason == "hedge"
    assert hedge.side is Side.SELL
    assert hedge.reduce_only
    assert hedge.amount == pytest.approx(5.0)
    assert hedge.metadata["imbalance"] == pytest.approx(10.0 / (10000.0 * 0.35 / 100.3))


def test_grid_small_net_position_is_not_hedged():
    # 净额持仓只有一侧，小库存相对容量未超阈值，不应触发对冲
    pos = position(PositionSide.LONG, 3.0, entry=100.0, stop=96.0)
    s = snap(close=100.3, atr_pct=3.0, atr=3.0)
    intents = MeanRevertStrategy().execute(ctx_for(s, RegimeLabel.RANGE, positions=[pos]))
    assert not [i for i in intents if i.reason == "hedge"]
    assert [i for i in intents if i.reason == "grid"]


def test_grid_stops_adding_at_position_cap():
    long_pos = position(PositionSide.LONG, 20.0, stop=96.0)
    short_pos = position(PositionSide.SHORT, 20.0, stop=104.0)
    s = snap(close=100.3, atr_pct=3.0, atr=3.0)
    intents = MeanRevertStrategy().execute(ctx_for(s, RegimeLabel.RANGE, positions=[long_pos, short_pos]))
    assert intents == []


# ----- 紧急 -----
def test_emergency_reduces_and_tightens():
    pos = position(PositionSide.LONG, 2.0, entry=105.0, stop=90.0)
    s = snap(close=100.0, atr=2.0, ready=False)
    intents = EmergencyStrategy().execute(ctx_for(s, RegimeLabel.EMERGENCY, positions=[pos]))
    reduce, stop = intents
    assert reduce.reason == "emergency_reduce"
    assert reduce.type is OrderType.MARKET and reduce.reduce_only
    assert reduce.amount == pytest.approx(1.0)
    assert stop.is_stop_update
    assert stop.stop_price == pytest.approx(98.8)


def test_emergency_keeps_tighter_existing_stop():
    pos = position(PositionSide.SHORT, 4.0, entry=95.0, stop=100.5)
    s = snap(close=100.0, atr=2.0)
    intents = EmergencyStrategy().execute(ctx_for(s, RegimeLabel.EMERGENCY, positions=[pos]))
    assert [i.reason for i in intents] == ["emergency_reduce"]
    assert intents[0].side is Side.BUY


def test_emergency_never_opens():
    assert EmergencyStrategy().execute(ctx_for(snap(), RegimeLabel.EMERGENCY)) == []
