"""配置加载：默认值 → YAML 文件 → 环境变量覆盖 → Pydantic 校验。

支持：
- YAML 中 `${VAR}` 占位符展开；
- `.env/.env.local` 自动加载（不覆盖已有环境变量）；
- `REGIME__<BLOCK>__<KEY>=value` 形式的环境变量覆盖（值按 YAML 语法解析类型）；
- `get_config_value(cfg, "risk.max_risk_per_trade", default)` 扁平路径读取。
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ValidationError

from shared.config.schema import MainConfig
from shared.config.validation import validate_raw_config
from shared.errors import ConfigurationError

ENV_PREFIX = "REGIME__"


def _load_env_file(env_path: Path):
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _load_envs(cfg_path: Path):
    """
    加载配置文件目录与其上级目录下的 .env/.env.local（不覆盖已有环境变量）。
    """
    candidates = [
        cfg_path.parent / ".env",
        cfg_path.parent / ".env.local",
        cfg_path.parent.parent / ".env",
        cfg_path.parent.parent / ".env.local",
    ]
    for env_file in candidates:
        _load_env_file(env_file)


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        # 未设置的变量直接报错，避免静默替换为空
        def replacer(match):
            var_name = match.group(1)
            if var_name not in os.environ:
                raise ConfigurationError(f"Missing environment variable: {var_name}")
            return os.environ[var_name]

        return re.sub(r"\$\{([^}]+)\}", replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def apply_env_overrides(raw: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """把 `REGIME__BLOCK__KEY` 环境变量写入 raw config（原地修改并返回）。"""
    env = os.environ if environ is None else environ
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        path = [p.lower() for p in key[len(ENV_PREFIX):].split("__") if p]
        if not path:
            continue
        node = raw
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[path[-1]] = yaml.safe_load(value) if value != "" else None
    return raw


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "Invalid config: " + "; ".join(parts)


def build_config(raw: Mapping[str, Any] | None = None) -> MainConfig:
    """由 raw dict 构建 MainConfig；校验失败统一转成 ConfigurationError。"""
    try:
        return MainConfig.model_validate(dict(raw or {}))
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc


def load_config(
    path: str | None = None,
    load_env: bool = True,
    expand_env: bool = True,
    env_overrides: bool = True,
    environ: Mapping[str, str] | None = None,
) -> MainConfig:
    """读取并解析配置。

    Parameters
    ----------
    path:
        YAML 配置路径；为 None 时只使用默认值（+ 环境变量覆盖）。
    load_env:
        是否自动加载 .env/.env.local。
    expand_env:
        是否展开 `${VAR}` 占位符。
    env_overrides:
        是否应用 `REGIME__BLOCK__KEY` 覆盖。
    environ:
        覆盖来源（测试可注入）；默认 os.environ。

    Returns
    -------
    MainConfig
        解析后的配置对象。

    Raises
    ------
    ConfigurationError
        文件缺失、未知键、风险关键参数缺失或取值非法。
    """
    raw: dict[str, Any] = {}
    if path is not None:
        cfg_path = Path(path)
        if not cfg_path.exists():
            raise ConfigurationError(f"Config file not found: {cfg_path}")
        if load_env:
            _load_envs(cfg_path)
        with cfg_path.open("r", encoding="utf-8") as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {cfg_path}: {exc}") from exc
        if expand_env:
            raw = _expand_env(raw)
        validate_raw_config(raw)

    if env_overrides:
        raw = apply_env_overrides(raw, environ)
    return build_config(raw)


def get_config_value(cfg: Any, path: str, default: Any = None) -> Any:
    """按 `a.b.c` 路径读取配置值，缺失时返回 default。"""
    node: Any = cfg
    for part in path.split("."):
        if isinstance(node, BaseModel):
            if part not in type(node).model_fields:
                return default
            node = getattr(node, part)
        elif isinstance(node, Mapping):
            if part not in node:
                return default
            node = node[part]
        else:
            return default
    return default if node is None else node


def config_to_dict(cfg: MainConfig) -> dict[str, Any]:
    return cfg.model_dump(mode="json")
