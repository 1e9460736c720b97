"""配置架构定义（Pydantic Schema）。

目标：
- 让配置成为“强类型 + 可演进”的边界协议；
- 启动阶段尽早失败，避免 typo/类型错误在实盘或长回测中“隐蔽爆炸”；
- 组件构造时注入对应配置块，热路径里不再按字符串路径查参数。

说明：
- ATR 兜底参数（min_atr_value/default_atr_percentage）是经验值，换市场需要重新校准；
- 风险关键参数（max_risk_per_trade/max_daily_loss）若来自配置文件必须显式给出，
  见 `shared.config.validation`。
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class IndicatorConfig(BaseModel):
    """指标引擎参数。"""
    ema_short: int = 10
    ema_long: int = 55
    atr_period: int = 14
    adx_period: int = 14
    donchian_period: int = 20
    range_period: int = 30
    vwap_window: int = 20

    sar_start: float = 0.02
    sar_increment: float = 0.02
    sar_max: float = 0.2

    # EMA 斜率窗口：ATR% 高时缩短、低时拉长
    slope_periods: int = 5
    slope_periods_fast: int = 3
    slope_periods_slow: int = 8
    high_vol_atr_pct: float = 8.0
    low_vol_atr_pct: float = 3.0

    warmup_margin: int = 10
    min_atr_value: float = 0.0001
    default_atr_percentage: float = 0.02

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_periods(self) -> "IndicatorConfig":
        for name in (
            "ema_short",
            "ema_long",
            "atr_period",
            "adx_period",
            "donchian_period",
            "range_period",
            "vwap_window",
            "slope_periods",
            "slope_periods_fast",
            "slope_periods_slow",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"indicators.{name} must be > 0")
        if self.ema_short >= self.ema_long:
            raise ValueError("indicators.ema_short must be < indicators.ema_long")
        if not 0 < self.sar_start <= self.sar_max:
            raise ValueError("indicators.sar_start must be in (0, sar_max]")
        if self.default_atr_percentage <= 0:
            raise ValueError("indicators.default_atr_percentage must be > 0")
        return self

    @property
    def warmup_bars(self) -> int:
        return max(self.ema_long, self.atr_period, self.adx_period, self.donchian_period) + self.warmup_margin


class RegimeConfig(BaseModel):
    """市场状态分类参数（斜率单位：度，由 %/bar 经 atan 换算）。"""
    slope_threshold: float = 2.0
    strong_multiplier: float = 1.5
    weak_multiplier: float = 0.7
    adx_threshold: float = 25.0
    adx_moderate: float = 20.0
    atr_pct_threshold: float = 6.0
    range_slope_limit: float = 1.0
    emergency_gap: float = 0.15
    recovery_bars: int = 24
    recovery_gap: float = 0.075
    model_config = ConfigDict(extra="forbid")


class TrendFollowConfig(BaseModel):
    """趋势跟随策略参数。"""
    adx_threshold: float = 25.0
    use_sar_entry: bool = True
    sar_exit: bool = True
    initial_stop_atr_factor: float = 1.5
    trailing_stop_factor: float = 1.2
    breakeven_r: float = 2.0
    lock_r: float = 3.0
    lock_fraction: float = 0.5
    pyramid_step_r: float = 1.0
    pyramid_risk_fraction: float = 0.5
    max_pyramids: int = 2
    max_notional_fraction: float = 0.25
    model_config = ConfigDict(extra="forbid")


class MeanRevertConfig(BaseModel):
    """区间网格（均值回归）策略参数。百分比字段单位为 %。"""
    range_multiplier: float = 0.9
    grid_atr_multiplier: float = 0.6
    min_levels: int = 3
    max_levels: int = 10
    min_spread_pct: float = 0.3
    iceberg_chunks: int = 1
    iceberg_spread_step_pct: float = 0.05
    escape_threshold: float = 0.02
    imbalance_threshold: float = 0.15
    hedge_ratio: float = 0.5
    hedge_spread_pct: float = 0.2
    position_cap: float = 0.35
    near_bound_pct: float = 0.02
    level_weighting: bool = True
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_levels(self) -> "MeanRevertConfig":
        if not 1 <= self.min_levels <= self.max_levels:
            raise ValueError("mean_revert.min_levels must be in [1, max_levels]")
        if self.iceberg_chunks < 1:
            raise ValueError("mean_revert.iceberg_chunks must be >= 1")
        return self


class EmergencyConfig(BaseModel):
    """紧急（黑天鹅）策略参数。"""
    reduction_ratio: float = 0.5
    stop_atr_factor: float = 0.6
    model_config = ConfigDict(extra="forbid")


class SelectorConfig(BaseModel):
    """RegimeLabel → 策略注册名。"""
    trend: str = "trend_follow"
    range: str = "mean_revert"
    emergency: str = "emergency"
    model_config = ConfigDict(extra="forbid")


class RiskConfig(BaseModel):
    """风控配置。"""
    max_risk_per_trade: float = 0.01
    max_daily_loss: float = 0.05
    max_position_pct: float = 0.35
    black_swan_gap: float = 0.15
    black_swan_reduction: float = 0.5
    min_stop_distance_pct: float = 0.01
    include_cost_buffer: bool = True
    model_config = ConfigDict(extra="forbid")

    @field_validator("max_risk_per_trade")
    @classmethod
    def _check_risk_per_trade(cls, v: float) -> float:
        if not 0 < v <= 0.1:
            raise ValueError("risk.max_risk_per_trade must be in (0, 0.1]")
        return v

    @field_validator("max_daily_loss")
    @classmethod
    def _check_daily_loss(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("risk.max_daily_loss must be in (0, 1)")
        return v

    @field_validator("max_position_pct", "black_swan_reduction")
    @classmethod
    def _check_fraction(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("value must be in (0, 1]")
        return v


class BacktestConfig(BaseModel):
    """回测配置。"""
    symbol: str = "BTCUSDT"
    symbols: Optional[List[str]] = None
    timeframe_hours: float = 1.0
    timeframes: Optional[List[float]] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    data_dir: str = "dataset/history"
    auto_download: bool = False

    initial_balance: float = 10000.0
    slippage: float = 0.001
    commission_rate: float = 0.001
    maker_commission_rate: Optional[float] = None

    batch_size: int = 5000
    gc_interval: int = 0
    equity_sample_interval: int = 1
    flatten_on_end: bool = True
    order_ttl_bars: int = 24
    max_volume_participation: Optional[float] = None
    kill_switch_path: Optional[str] = "data/kill-switch.flag"
    export_indicators: bool = False
    quiet: bool = False

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_numbers(self) -> "BacktestConfig":
        if self.initial_balance <= 0:
            raise ValueError("backtest.initial_balance must be > 0")
        if self.timeframe_hours <= 0:
            raise ValueError("backtest.timeframe_hours must be > 0")
        if self.batch_size <= 0:
            raise ValueError("backtest.batch_size must be > 0")
        if self.slippage < 0 or self.commission_rate < 0:
            raise ValueError("backtest.slippage/commission_rate must be >= 0")
        if self.equity_sample_interval <= 0:
            raise ValueError("backtest.equity_sample_interval must be > 0")
        return self

    @property
    def bars_per_year(self) -> float:
        return 365 * 24 / self.timeframe_hours


class PortfolioConfig(BaseModel):
    """多品种组合配置。"""
    allocation: Literal["equal", "volatility", "custom"] = "equal"
    weights: Dict[str, float] = Field(default_factory=dict)
    volatility_lookback: int = 168
    correlation_interval_hours: float = 24.0
    correlation_lookback_days: int = 30
    min_correlation_points: int = 3
    correlation_limit: float = 0.8
    max_portfolio_exposure: float = 0.5
    var_rate: float = 0.02
    var_cap: float = 0.1
    es_multiplier: float = 1.3
    workers: int = 1
    model_config = ConfigDict(extra="forbid")


class ExchangeConfig(BaseModel):
    """交易所配置（仅实盘使用）。"""
    name: str = "binance"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    sandbox: bool = False
    retry_attempts: int = 5
    retry_delays: List[float] = Field(default_factory=lambda: [1.0, 2.0, 4.0, 8.0, 16.0])
    poll_interval_secs: float = 5.0
    model_config = ConfigDict(extra="forbid")


class MainConfig(BaseModel):
    """应用总配置。"""
    indicators: IndicatorConfig = Field(default_factory=IndicatorConfig)
    regime: RegimeConfig = Field(default_factory=RegimeConfig)
    trend_follow: TrendFollowConfig = Field(default_factory=TrendFollowConfig)
    mean_revert: MeanRevertConfig = Field(default_factory=MeanRevertConfig)
    emergency: EmergencyConfig = Field(default_factory=EmergencyConfig)
    selector: SelectorConfig = Field(default_factory=SelectorConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)
    portfolio: PortfolioConfig = Field(default_factory=PortfolioConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)

    model_config = ConfigDict(extra="forbid", validate_assignment=True)
