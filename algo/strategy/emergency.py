"""紧急（黑天鹅）策略：减仓 + 收紧止损，不开新仓。"""

from __future__ import annotations

from algo.strategy.base import Strategy, StrategyContext
from shared.config.schema import EmergencyConfig
from shared.models.models import OrderIntent, OrderType


class EmergencyStrategy(Strategy):
    """对每个持仓市价减仓 reduction_ratio，并把止损收紧到 `price ∓ ATR * stop_atr_factor`。

    预热期同样可用（只依赖持仓与 ATR 兜底值）。
    """

    name = "emergency"

    def __init__(self, cfg: EmergencyConfig | None = None):
        self.cfg = cfg or EmergencyConfig()

    def execute(self, ctx: StrategyContext) -> list[OrderIntent]:
        intents: list[OrderIntent] = []
        price = ctx.price
        atr = ctx.snapshot.atr
        for pos in ctx.positions:
            if pos.symbol != ctx.symbol or pos.amount <= 0:
                continue
            reduce_amount = pos.amount * self.cfg.reduction_ratio
            intents.append(
                OrderIntent(
                    symbol=ctx.symbol,
                    side=pos.side.closing_side,
                    type=OrderType.MARKET,
                    amount=reduce_amount,
                    metadata={
                        "reason": "emergency_reduce",
                        "strategy": self.name,
                        "reduce_only": True,
                        "position_side": pos.side.value,
                    },
                )
            )

            sign = pos.side.sign
            tight = price - sign * atr * self.cfg.stop_atr_factor
            if pos.stop_price is None or sign * (tight - pos.stop_price) > 0:
                intents.append(
                    OrderIntent(
                        symbol=ctx.symbol,
                        side=pos.side.closing_side,
                        type=OrderType.STOP,
                        amount=pos.amount - reduce_amount,
                        stop_price=tight,
                        metadata={
                            "reason": "emergency_stop",
                            "strategy": self.name,
                            "action": "update_stop",
                            "position_side": pos.side.value,
                        },
                    )
                )
        return intents
