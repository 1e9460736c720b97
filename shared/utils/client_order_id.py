"""订单幂等 ID（client_order_id）生成。

要求：
- 同一交易意图在重放/重启后可重建（deterministic）。
- 长度可控，适配交易所 client id 字段限制（用 hash 缩短）。
"""

from __future__ import annotations

import hashlib


def _digest(parts: list[str], n: int = 24) -> str:
    raw = "|".join(parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:n]


def make_client_order_id(
    *,
    strategy_id: str,
    symbol: str,
    side: str,
    intent_ts: int,
    signal_seq: int,
    reason: str | None = None,
) -> str:
    digest = _digest(
        [
            str(strategy_id),
            str(symbol),
            str(side),
            str(int(intent_ts)),
            str(int(signal_seq)),
            str(reason or ""),
        ]
    )
    return f"rt_{digest}"


def make_trade_id(*, fill_id: str, position_id: str) -> str:
    """平仓记录 ID：由成交 ID + 持仓 ID 决定，重放同一成交得到同一 ID。"""
    return f"tr_{_digest([str(fill_id), str(position_id)])}"
