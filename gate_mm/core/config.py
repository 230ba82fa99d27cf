"""策略配置（StrategyConfig）。

一次运行内不可变：启动时创建，运行中只能"暂存"新配置，下次启动才生效。
支持环境变量（MM_* / GATE_API_*，可选 .env）与 YAML 文件两种来源，
最终都经过 ``parse_config`` 做强类型校验，失败统一抛 ``ConfigError``。
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from gate_mm.core.errors import ConfigError

# 调度常量（固定值，不进入配置面）
STRATEGY_THROTTLE_S = 10.0
RESTART_COOLDOWN_S = 10.0


class StrategyKind(str, Enum):
    GRID = "GRID"
    AVELLANEDA = "AVELLANEDA"


class StrategyConfig(BaseModel):
    """Immutable per-run strategy parameters."""

    strategy: StrategyKind = StrategyKind.AVELLANEDA
    coin: str = Field(default="XRP", min_length=1)
    leverage: int = Field(default=20, ge=1)
    quantity: float = Field(default=1.0, gt=0)

    # 风控
    position_threshold: float = Field(default=500.0, gt=0)

    # Grid
    grid_spacing: float = Field(default=0.006, ge=0, lt=1)
    take_profit_spacing: float = Field(default=0.004, ge=0, lt=1)

    # Avellaneda-Stoikov：gamma/eta 为 0 会导致除零或 log 定义域错误
    gamma: float = Field(default=1.0, gt=0)
    eta: float = Field(default=1.0, gt=0)
    sigma: float = Field(default=0.01, gt=0)
    time_horizon: float = Field(default=1.0, gt=0)
    taker_fee: float = Field(default=0.0005, ge=0)

    simulation: bool = True
    initial_balance: float = Field(default=1000.0, ge=0)

    # 盈利目标
    enable_profit_target: bool = False
    profit_target: float = Field(default=100.0, gt=0)
    auto_restart: bool = True

    api_key: Optional[str] = None
    api_secret: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_coin(self) -> "StrategyConfig":
        if "_" in self.coin or "/" in self.coin:
            raise ValueError(f"coin must be a bare asset name (got {self.coin!r})")
        return self

    @property
    def contract(self) -> str:
        """Gate.io futures contract name, e.g. ``XRP_USDT``."""
        return f"{self.coin.upper()}_USDT"

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key) and bool(self.api_secret)

    def ensure_startable(self) -> None:
        """Checks that only matter when a run starts (live credentials)."""
        if not self.simulation and not self.has_credentials:
            raise ConfigError("Live trading requires both api_key and api_secret")

    def describe(self) -> str:
        mode = "PAPER" if self.simulation else "LIVE"
        return f"{self.strategy.value} [{mode}] | {self.contract}"

    @classmethod
    def from_env(cls, *, env_file: str | None = None) -> "StrategyConfig":
        """Build from ``MM_*`` env vars; unset vars keep the defaults."""
        if env_file:
            from dotenv import load_dotenv

            load_dotenv(os.path.abspath(env_file))

        raw: Dict[str, Any] = {}
        for env_name, field in _ENV_FIELDS.items():
            value = os.getenv(env_name)
            if value is None or value == "":
                continue
            raw[field] = value
        return parse_config(raw)


_ENV_FIELDS = {
    "MM_STRATEGY": "strategy",
    "MM_COIN": "coin",
    "MM_LEVERAGE": "leverage",
    "MM_QUANTITY": "quantity",
    "MM_POSITION_THRESHOLD": "position_threshold",
    "MM_GRID_SPACING": "grid_spacing",
    "MM_TAKE_PROFIT_SPACING": "take_profit_spacing",
    "MM_GAMMA": "gamma",
    "MM_ETA": "eta",
    "MM_SIGMA": "sigma",
    "MM_TIME_HORIZON": "time_horizon",
    "MM_TAKER_FEE": "taker_fee",
    "MM_SIMULATION": "simulation",
    "MM_INITIAL_BALANCE": "initial_balance",
    "MM_PROFIT_TARGET_ENABLED": "enable_profit_target",
    "MM_PROFIT_TARGET": "profit_target",
    "MM_AUTO_RESTART": "auto_restart",
    "GATE_API_KEY": "api_key",
    "GATE_API_SECRET": "api_secret",
}


def parse_config(raw: Dict[str, Any]) -> StrategyConfig:
    """Validate a raw mapping into a ``StrategyConfig``."""
    if not isinstance(raw, dict):
        raise ConfigError("strategy config must be a mapping")
    data = dict(raw)
    kind = data.get("strategy")
    if isinstance(kind, str):
        data["strategy"] = kind.strip().upper()
    try:
        return StrategyConfig.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"Invalid strategy config: {problems}") from exc


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replacer(match):
            var_name = match.group(1)
            if var_name not in os.environ:
                raise ConfigError(f"Missing environment variable: {var_name}")
            return os.environ[var_name]

        return re.sub(r"\$\{([^}]+)\}", replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_config(path: str, *, load_env: bool = True) -> StrategyConfig:
    """Load a YAML file; the strategy block may sit under ``strategy_config:`` or at top level."""
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")
    if load_env:
        from dotenv import load_dotenv

        for candidate in (cfg_path.parent / ".env", cfg_path.parent / ".env.local"):
            if candidate.exists():
                load_dotenv(candidate, override=False)

    try:
        raw_cfg = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {cfg_path} is not valid YAML: {exc}") from exc
    if not isinstance(raw_cfg, dict):
        raise ConfigError(f"Config file {cfg_path} must contain a mapping")

    block = raw_cfg.get("strategy_config", raw_cfg)
    return parse_config(_expand_env(block))
