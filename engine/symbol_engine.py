"""单 symbol 引擎：指标 → regime → 策略 → 风控 → OMS。

一个 SymbolEngine 独占该 symbol 的全部可变状态（指标累加器、regime 滞回、
持仓/订单/Trade、权益曲线），不同 symbol 之间不共享任何对象，因此多品种
可以并行推进，只在组合层同步屏障处汇合。

每根 bar 拆成两步：
- `prepare(bar)`：撮合挂单 → 更新指标 → 分类 → 策略决策 → 风控审批，返回待提交意图；
- `commit(intents, bar)`：提交到 OMS 并记录权益点。

单品种回测直接调用 `step(bar)`；组合回测在两步之间插入组合风控闸门。
"""

from __future__ import annotations

from datetime import date

from algo.indicators.engine import IndicatorEngine, IndicatorSnapshot
from algo.regime.classifier import RegimeClassifier
from algo.risk.manager import RiskManager
from algo.strategy.base import StrategyContext
from algo.strategy.selector import StrategySelector, build_selector
from broker.execution.simulator import BacktestFillSimulator
from broker.execution.slippage_models import FractionSlippageModel
from broker.oms import OrderManagementSystem
from shared.config.schema import MainConfig
from shared.models.models import (
    Bar,
    EquityPoint,
    Order,
    OrderIntent,
    OrderType,
    RegimeLabel,
    Trade,
    ms_to_datetime,
)
from shared.utils.logging import setup_logger


class SymbolEngine:
    """单 symbol 的逐 bar 推进器。

    Parameters
    ----------
    symbol:
        品种。
    cfg:
        总配置（各组件在构造时取对应配置块）。
    initial_balance:
        该品种分得的初始资金；None 时取 `backtest.initial_balance`。
    sample_interval:
        每隔多少根 bar 记录一个权益点。
    """

    def __init__(
        self,
        symbol: str,
        cfg: MainConfig,
        *,
        initial_balance: float | None = None,
        sample_interval: int | None = None,
    ):
        bt = cfg.backtest
        self.symbol = symbol
        self.cfg = cfg
        self.initial_balance = float(initial_balance if initial_balance is not None else bt.initial_balance)
        self.sample_interval = int(sample_interval or bt.equity_sample_interval)
        self.cost_rate = bt.slippage + bt.commission_rate
        self.logger = setup_logger("backtest")

        self.indicators = IndicatorEngine(cfg.indicators, symbol)
        self.classifier = RegimeClassifier(cfg.regime, symbol)
        self.selector: StrategySelector = build_selector(
            cfg.selector,
            {
                "trend_follow": cfg.trend_follow,
                "mean_revert": cfg.mean_revert,
                "emergency": cfg.emergency,
            },
            adx_threshold=cfg.trend_follow.adx_threshold,
        )
        self.risk = RiskManager(cfg.risk, cost_rate=self.cost_rate, suppress_warnings=bt.quiet)
        simulator = BacktestFillSimulator(
            commission_rate=bt.commission_rate,
            slippage=FractionSlippageModel(bt.slippage),
            maker_commission_rate=bt.maker_commission_rate,
            max_volume_participation=bt.max_volume_participation,
        )
        self.oms = OrderManagementSystem(
            symbol,
            initial_balance=self.initial_balance,
            simulator=simulator,
            order_ttl_bars=bt.order_ttl_bars,
            suppress_logs=bt.quiet,
        )

        self.trading_enabled = True
        self.equity_curve: list[EquityPoint] = []
        self.regime_counts: dict[str, int] = {label.value: 0 for label in RegimeLabel}
        self.strategy_switches = 0
        self.active_strategy: str | None = None
        self.bars_processed = 0

        self.last_bar: Bar | None = None
        self.last_snapshot: IndicatorSnapshot | None = None
        self.last_regime: RegimeLabel | None = None
        self._prev_close: float | None = None
        self._current_day: date | None = None
        self._day_start_equity = self.initial_balance

    # ----- 视图 -----
    @property
    def trades(self) -> list[Trade]:
        return self.oms.trades

    def equity(self) -> float:
        return self.oms.equity()

    def exposure(self) -> float:
        return self.oms.exposure()

    # ----- 逐 bar 推进 -----
    def prepare(self, bar: Bar) -> list[OrderIntent]:
        """推进一根 bar 并返回风控审批后的意图（尚未提交）。"""
        if bar.symbol and bar.symbol != self.symbol:
            raise ValueError(f"SymbolEngine[{self.symbol}] got bar for {bar.symbol}")
        self._roll_day(bar)

        self.oms.process_bar(bar)
        snapshot = self.indicators.update(bar)
        regime = self.classifier.update(snapshot)
        self.regime_counts[regime.value] += 1
        self.last_snapshot = snapshot
        self.last_regime = regime

        strategy = self.selector.select(regime, snapshot.adx)
        if self.active_strategy is not None and strategy.name != self.active_strategy:
            self._on_strategy_switch(self.active_strategy, strategy.name)
        self.active_strategy = strategy.name

        state = self.oms.account_state(
            bar,
            prev_close=self._prev_close,
            day_start_equity=self._day_start_equity,
            trading_enabled=self.trading_enabled,
        )
        risk_cfg = self.cfg.risk
        ctx = StrategyContext(
            symbol=self.symbol,
            bar=bar,
            snapshot=snapshot,
            regime=regime,
            balance=state.balance,
            equity=state.equity,
            positions=state.positions,
            open_orders=state.open_orders,
            cost_rate=self.cost_rate,
            max_risk_per_trade=risk_cfg.max_risk_per_trade,
            min_stop_distance_pct=risk_cfg.min_stop_distance_pct,
            max_position_pct=risk_cfg.max_position_pct,
        )
        intents = self.selector.execute(ctx)
        approved = self.risk.approve_all(intents, state)

        self._prev_close = bar.close
        self.last_bar = bar
        return approved

    def commit(self, intents: list[OrderIntent], bar: Bar) -> list[Order]:
        """把意图提交到 OMS，并按采样间隔记录权益点。"""
        orders: list[Order] = []
        for intent in intents:
            order = self.oms.submit(intent, bar)
            if order is not None:
                orders.append(order)
        self.bars_processed += 1
        if self.bars_processed % self.sample_interval == 0:
            self._record_equity(bar.timestamp)
        return orders

    def step(self, bar: Bar) -> list[Order]:
        return self.commit(self.prepare(bar), bar)

    def finish(self, flatten: bool = True) -> list[Trade]:
        """结束处理：强制平仓（生成平仓 Trade）并写入最终权益点。"""
        if self.last_bar is None:
            return []
        trades = self.oms.close_all(self.last_bar) if flatten else []
        self._record_equity(self.last_bar.timestamp)
        return trades

    # ----- 内部 -----
    def _roll_day(self, bar: Bar) -> None:
        day = ms_to_datetime(bar.timestamp).date()
        if self._current_day is None:
            self._current_day = day
            return
        if day == self._current_day:
            return
        self._current_day = day
        # 新 UTC 日：以上一根 bar 收盘时的权益作为当日起始权益
        self._day_start_equity = self.oms.equity()
        self.risk.reset_daily_state(log=False)

    def _on_strategy_switch(self, old: str, new: str) -> None:
        self.strategy_switches += 1
        cancelled = self.oms.cancel_where(
            lambda o: o.type is OrderType.LIMIT and o.intent.metadata.get("strategy") == old,
            reason="strategy_switch",
        )
        if cancelled and not self.cfg.backtest.quiet:
            self.logger.debug(f"{self.symbol} strategy {old} -> {new}, cancelled {cancelled} resting orders.")

    def _record_equity(self, timestamp: int) -> None:
        point = EquityPoint(timestamp=timestamp, equity=self.oms.equity())
        # 同一 ts 重复写入时覆盖最后一个点
        if self.equity_curve and self.equity_curve[-1].timestamp == timestamp:
            self.equity_curve[-1] = point
        else:
            self.equity_curve.append(point)
