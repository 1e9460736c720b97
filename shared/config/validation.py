"""配置 Schema 校验（原始 dict 层）。

目标：
- 在启动阶段尽早失败，给出带“did you mean”提示的未知键报错；
- 风险关键参数（risk.max_risk_per_trade / risk.max_daily_loss）不允许静默回落到默认值：
  配置文件里一旦出现 `risk:` 块，就必须显式给出这两个键。
"""

from __future__ import annotations

import difflib
from typing import Any, Iterable

from pydantic import BaseModel

from shared.config.schema import MainConfig
from shared.errors import ConfigurationError

RISK_CRITICAL_KEYS = ("max_risk_per_trade", "max_daily_loss")


def _suggest_key(key: str, allowed: Iterable[str]) -> str | None:
    matches = difflib.get_close_matches(key, list(allowed), n=1, cutoff=0.75)
    return matches[0] if matches else None


def _ensure_allowed_keys(block: dict[str, Any], *, allowed: set[str], ctx: str) -> None:
    unknown = [k for k in block.keys() if k not in allowed]
    if not unknown:
        return
    parts = []
    for k in sorted(unknown):
        suggestion = _suggest_key(k, allowed)
        if suggestion:
            parts.append(f"{k} (did you mean '{suggestion}'?)")
        else:
            parts.append(k)
    raise ConfigurationError(f"{ctx} contains unknown keys: {', '.join(parts)}")


def _require(block: dict[str, Any], key: str, *, ctx: str) -> Any:
    if key not in block or block[key] is None:
        raise ConfigurationError(f"Missing required config key: {ctx}.{key}")
    return block[key]


def _expect_dict(val: Any, *, ctx: str) -> dict[str, Any]:
    if not isinstance(val, dict):
        raise ConfigurationError(f"{ctx} must be a dict")
    return val


def _expect_number(val: Any, *, ctx: str) -> float:
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise ConfigurationError(f"{ctx} must be a number")
    return float(val)


def _block_models() -> dict[str, type[BaseModel]]:
    out: dict[str, type[BaseModel]] = {}
    for name, info in MainConfig.model_fields.items():
        ann = info.annotation
        if isinstance(ann, type) and issubclass(ann, BaseModel):
            out[name] = ann
    return out


def validate_raw_config(cfg: dict[str, Any]) -> None:
    """校验 raw config dict（来自 YAML + env 展开后）。"""
    if not isinstance(cfg, dict):
        raise ConfigurationError("Config root must be a dict")

    blocks = _block_models()
    _ensure_allowed_keys(cfg, allowed=set(blocks), ctx="config")

    for name, model in blocks.items():
        if name not in cfg or cfg[name] is None:
            continue
        block = _expect_dict(cfg[name], ctx=f"config.{name}")
        _ensure_allowed_keys(block, allowed=set(model.model_fields), ctx=f"config.{name}")

    if cfg.get("risk") is not None:
        risk = _expect_dict(cfg["risk"], ctx="config.risk")
        for key in RISK_CRITICAL_KEYS:
            _expect_number(_require(risk, key, ctx="risk"), ctx=f"risk.{key}")
