"""市场状态分类（Regime）。

`classify` 是纯函数：同一快照 + 同一配置永远得到同一标签。
`RegimeClassifier` 在其上叠加 EMERGENCY 的滞回（连续 recovery_bars 根平稳 bar 才解除）。
"""

from __future__ import annotations

from shared.config.schema import RegimeConfig
from shared.models.models import RegimeLabel
from shared.utils.logging import setup_logger
from algo.indicators.engine import IndicatorSnapshot


def classify(snapshot: IndicatorSnapshot, cfg: RegimeConfig | None = None) -> RegimeLabel:
    """按 EMA 斜率、EMA 排列与 ADX 给出 8 类标签之一。

    判定顺序：
    1. |gap| ≥ emergency_gap → EMERGENCY（预热期同样生效）；
    2. 指标未就绪 → RANGE；
    3. 强趋势：|短斜率| > 阈值 * strong_multiplier，ADX > adx_threshold，
       EMA 排列与方向一致，长斜率同号；
    4. 普通趋势：|短斜率| > 阈值 且 ADX ≥ adx_moderate，EMA 排列一致；
    5. 弱趋势：|短斜率| > 阈值 * weak_multiplier；
    6. 其余为 RANGE。

    Parameters
    ----------
    snapshot:
        当前 bar 的指标快照。
    cfg:
        分类阈值；None 时取默认值。

    Returns
    -------
    RegimeLabel
    """
    cfg = cfg or RegimeConfig()
    if abs(snapshot.gap_pct) >= cfg.emergency_gap:
        return RegimeLabel.EMERGENCY
    if not snapshot.ready:
        return RegimeLabel.RANGE

    slope = snapshot.slope_short
    slope_long = snapshot.slope_long
    adx = snapshot.adx
    ema_up = snapshot.ema_short > snapshot.ema_long
    ema_down = snapshot.ema_short < snapshot.ema_long
    thr = cfg.slope_threshold

    if abs(slope) > thr * cfg.strong_multiplier and adx > cfg.adx_threshold:
        if slope > 0 and ema_up and slope_long > 0:
            return RegimeLabel.STRONG_UPTREND
        if slope < 0 and ema_down and slope_long < 0:
            return RegimeLabel.STRONG_DOWNTREND

    if abs(slope) > thr and adx >= cfg.adx_moderate:
        if slope > 0 and ema_up:
            return RegimeLabel.UPTREND
        if slope < 0 and ema_down:
            return RegimeLabel.DOWNTREND

    if abs(slope) > thr * cfg.weak_multiplier:
        return RegimeLabel.WEAK_UPTREND if slope > 0 else RegimeLabel.WEAK_DOWNTREND

    return RegimeLabel.RANGE


class RegimeClassifier:
    """带 EMERGENCY 滞回的有状态分类器（每个 symbol 一份）。

    Parameters
    ----------
    cfg:
        分类配置。
    symbol:
        仅用于日志。
    """

    def __init__(self, cfg: RegimeConfig | None = None, symbol: str = ""):
        self.cfg = cfg or RegimeConfig()
        self.symbol = symbol
        self.logger = setup_logger("regime")
        self.current: RegimeLabel = RegimeLabel.RANGE
        self.calm_bars = 0
        self.emergency_count = 0

    @property
    def in_emergency(self) -> bool:
        return self.current is RegimeLabel.EMERGENCY

    def update(self, snapshot: IndicatorSnapshot) -> RegimeLabel:
        raw = classify(snapshot, self.cfg)
        prev = self.current

        if raw is RegimeLabel.EMERGENCY:
            self.calm_bars = 0
            label = RegimeLabel.EMERGENCY
            if prev is not RegimeLabel.EMERGENCY:
                self.emergency_count += 1
                self.logger.warning(
                    f"[REGIME] {self.symbol} enter EMERGENCY: gap={snapshot.gap_pct:.2%} at ts={snapshot.timestamp}"
                )
        elif prev is RegimeLabel.EMERGENCY:
            # 仍在紧急状态：平稳 bar 计数，超过 recovery_gap 的波动会清零
            if abs(snapshot.gap_pct) >= self.cfg.recovery_gap:
                self.calm_bars = 0
            else:
                self.calm_bars += 1
            if self.calm_bars >= self.cfg.recovery_bars:
                label = raw
                self.calm_bars = 0
                self.logger.info(f"[REGIME] {self.symbol} leave EMERGENCY -> {raw.value}")
            else:
                label = RegimeLabel.EMERGENCY
        else:
            label = raw

        if label is not prev and label is not RegimeLabel.EMERGENCY and prev is not RegimeLabel.EMERGENCY:
            self.logger.debug(f"[REGIME] {self.symbol} {prev.value} -> {label.value}")
        self.current = label
        return label

    def reset(self) -> None:
        self.current = RegimeLabel.RANGE
        self.calm_bars = 0
