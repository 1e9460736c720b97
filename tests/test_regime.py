import pytest

from algo.indicators.engine import IndicatorEngine, IndicatorSnapshot
from algo.regime.classifier import RegimeClassifier, classify
from shared.config.schema import RegimeConfig
from shared.models.models import RegimeLabel
from helpers import bars_from_closes, small_indicator_cfg, trend_closes


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
        atr=2.0,
        raw_atr=2.0,
        atr_pct=2.0,
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
        range_upper=103.0,
        range_lower=97.0,
        vwap=100.0,
        bars_seen=100,
        ready=True,
        range_ready=True,
    )
    base.update(kw)
    return IndicatorSnapshot(**base)


@pytest.mark.parametrize(
    "kw, expected",
    [
        (dict(slope_short=4.0, slope_long=1.0, adx=30.0, ema_short=101.0), RegimeLabel.STRONG_UPTREND),
        (dict(slope_short=-4.0, slope_long=-1.0, adx=30.0, ema_short=99.0), RegimeLabel.STRONG_DOWNTREND),
        # 长斜率反向：降为普通趋势
        (dict(slope_short=4.0, slope_long=-1.0, adx=30.0, ema_short=101.0), RegimeLabel.UPTREND),
        (dict(slope_short=2.5, adx=22.0, ema_short=101.0), RegimeLabel.UPTREND),
        (dict(slope_short=-2.5, adx=22.0, ema_short=99.0), RegimeLabel.DOWNTREND),
        # EMA 排列不一致
        (dict(slope_short=2.5, adx=22.0, ema_short=99.0), RegimeLabel.WEAK_UPTREND),
        (dict(slope_short=1.5, adx=10.0), RegimeLabel.WEAK_UPTREND),
        (dict(slope_short=-1.5, adx=10.0), RegimeLabel.WEAK_DOWNTREND),
        (dict(slope_short=1.0, adx=40.0), RegimeLabel.RANGE),
        (dict(), RegimeLabel.RANGE),
    ],
)
def test_classify_labels(kw, expected):
    assert classify(snap(**kw)) is expected


def test_gap_forces_emergency_even_during_warmup():
    assert classify(snap(gap_pct=-0.15)) is RegimeLabel.EMERGENCY
    assert classify(snap(gap_pct=0.2, ready=False)) is RegimeLabel.EMERGENCY
    assert classify(snap(gap_pct=0.149)) is RegimeLabel.RANGE


def test_not_ready_is_range():
    s = snap(slope_short=5.0, slope_long=2.0, adx=40.0, ema_short=101.0, ready=False)
    assert classify(s) is RegimeLabel.RANGE


def test_classify_is_deterministic_and_configurable():
    s = snap(slope_short=2.5, adx=22.0, ema_short=101.0)
    assert {classify(s) for _ in range(5)} == {RegimeLabel.UPTREND}
    strict = RegimeConfig(slope_threshold=3.0)
    assert classify(s, strict) is RegimeLabel.WEAK_UPTREND


def test_emergency_needs_calm_bars_to_recover():
    clf = RegimeClassifier(symbol="TEST")
    assert clf.update(snap(gap_pct=0.2)) is RegimeLabel.EMERGENCY
    for _ in range(23):
        assert clf.update(snap()) is RegimeLabel.EMERGENCY
    assert clf.update(snap()) is RegimeLabel.RANGE
    assert not clf.in_emergency
    assert clf.emergency_count == 1


def test_moderate_move_resets_recovery_count():
    clf = RegimeClassifier()
    clf.update(snap(gap_pct=-0.2))
    for _ in range(10):
        clf.update(snap())
    # 低于 emergency_gap、高于 recovery_gap：不触发新的 EMERGENCY，但计数清零
    assert clf.update(snap(gap_pct=0.08)) is RegimeLabel.EMERGENCY
    assert clf.calm_bars == 0
    for _ in range(23):
        assert clf.update(snap()) is RegimeLabel.EMERGENCY
    assert clf.update(snap(slope_short=2.5, adx=22.0, ema_short=101.0)) is RegimeLabel.UPTREND


def test_regime_from_real_bars():
    cfg = small_indicator_cfg()

    engine = IndicatorEngine(cfg)
    labels = [classify(engine.update(b)) for b in bars_from_closes(trend_closes(60))]
    assert labels[0] is RegimeLabel.RANGE
    assert labels[-1] in (RegimeLabel.STRONG_UPTREND, RegimeLabel.UPTREND)

    engine = IndicatorEngine(cfg)
    labels = [classify(engine.update(b)) for b in bars_from_closes(trend_closes(60, step=-0.005))]
    assert labels[-1] in (RegimeLabel.STRONG_DOWNTREND, RegimeLabel.DOWNTREND)

    engine = IndicatorEngine(cfg)
    labels = [classify(engine.update(b)) for b in bars_from_closes([100.0] * 40)]
    assert set(labels) == {RegimeLabel.RANGE}


def test_crash_bar_is_emergency():
    closes = trend_closes(30)
    closes.append(closes[-1] * 0.8)
    engine = IndicatorEngine(small_indicator_cfg())
    snaps = [engine.update(b) for b in bars_from_closes(closes)]
    assert snaps[-1].gap_pct == pytest.approx(-0.2)
    assert classify(snaps[-1]) is RegimeLabel.EMERGENCY

    engine = IndicatorEngine(small_indicator_cfg())
    snaps = [engine.update(b) for b in bars_from_closes([100.0, 80.0])]
    assert not snaps[-1].ready
    assert classify(snaps[-1]) is RegimeLabel.EMERGENCY
