from __future__ import annotations
import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from libs.common.analysis_config import ThresholdSet
from libs.common.errors import InitializationError

CONFIG_PATH = os.getenv("CONFIG_PATH", "config/app.yaml")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PairConfig(_Frozen):
    symbol: str
    tradeable: bool = True
    order_size: float = Field(10.0, gt=0)          # quote asset
    profit_margin: float = Field(0.5, gt=0)        # %
    stop_loss_base: float = Field(-2.0, lt=0)      # %
    max_stop_loss: float = Field(-5.0, lt=0)       # %
    reentry_delay_h: float = Field(0.2, ge=0)
    ok_diff: float = 0.5                           # % dérive tolérée sur un BUY en attente
    entry_distance: float = 0.1                    # % sous le prix courant
    trailing_enabled: bool = True
    trailing_distance: float = Field(0.2, gt=0)    # %
    trailing_activation: float = Field(0.2, ge=0)  # %

    @field_validator("symbol")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def _stops(self):
        if self.max_stop_loss > self.stop_loss_base:
            raise ValueError(f"{self.symbol}: max_stop_loss must be <= stop_loss_base")
        return self


class RateWindow(_Frozen):
    kind: Literal["weight", "count"] = "weight"
    limit: int = Field(gt=0)
    period_s: float = Field(gt=0)


DEFAULT_RATE_WINDOWS = (
    RateWindow(kind="weight", limit=20, period_s=1.0),
    RateWindow(kind="weight", limit=1100, period_s=60.0),
    RateWindow(kind="count", limit=50, period_s=10.0),
)


class EngineConfig(_Frozen):
    mode: Literal["sequential", "parallel"] = "parallel"
    tick_interval_s: float = Field(1.0, gt=0)
    pair_delay_s: float = Field(0.0, ge=0)
    inbox_size: int = Field(100, gt=0)
    candle_window: int = Field(100, ge=20)
    primary_timeframe: str = "1h"
    analysis_window: int = Field(24, gt=0)
    prefix: str = "BOT_"


class StreamsConfig(_Frozen):
    reconnect_delay_s: float = 5.0
    keepalive_s: float = 30 * 60
    ping_interval: float = 20.0


class AlertsConfig(_Frozen):
    cooldown_s: float = 600.0
    discord_webhook_url: str = ""
    discord_username: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""


class ApiConfig(_Frozen):
    host: str = "0.0.0.0"
    port: int = 8000


class AppConfig(_Frozen):
    mode: Literal["mainnet", "testnet"] = "testnet"
    api_key: str = ""
    api_secret: str = ""
    timeframes: List[str] = Field(default_factory=lambda: ["1h", "4h"])
    timeframe_weights: Dict[str, float] = Field(default_factory=dict)
    pairs: List[PairConfig] = Field(default_factory=list)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    analysis: ThresholdSet = Field(default_factory=ThresholdSet)
    rate_limits: List[RateWindow] = Field(default_factory=lambda: list(DEFAULT_RATE_WINDOWS))
    streams: StreamsConfig = Field(default_factory=StreamsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @model_validator(mode="after")
    def _check(self):
        if not self.timeframes:
            raise ValueError("at least one timeframe is required")
        syms = [p.symbol for p in self.pairs]
        if len(syms) != len(set(syms)):
            raise ValueError("duplicate symbols in pairs")
        return self

    @property
    def rest_base(self) -> str:
        return "https://api.binance.com" if self.mode == "mainnet" else "https://testnet.binance.vision"

    @property
    def ws_base(self) -> str:
        return "wss://stream.binance.com:9443" if self.mode == "mainnet" else "wss://testnet.binance.vision"

    def pair(self, symbol: str) -> Optional[PairConfig]:
        for p in self.pairs:
            if p.symbol == symbol:
                return p
        return None

    def weights(self) -> Dict[str, float]:
        w = dict(self.analysis.timeframe_weights)
        w.update(self.timeframe_weights)
        return w


def _env_overrides(raw: dict) -> dict:
    out = dict(raw)
    mode = os.getenv("BINANCE_MODE")
    if mode:
        out["mode"] = mode.lower()
    key = os.getenv("BINANCE_API_KEY")
    if key:
        out["api_key"] = key
    secret = os.getenv("BINANCE_API_SECRET")
    if secret:
        out["api_secret"] = secret
    alerts = dict(out.get("alerts") or {})
    for env, field in (
        ("DISCORD_WEBHOOK_URL", "discord_webhook_url"),
        ("TELEGRAM_BOT_TOKEN", "telegram_bot_token"),
        ("TELEGRAM_CHAT_ID", "telegram_chat_id"),
    ):
        v = os.getenv(env, "").strip()
        if v:
            alerts[field] = v
    out["alerts"] = alerts
    return out


def load_config(path: Optional[str] = None) -> AppConfig:
    """YAML + surcharges d'environnement, validé une seule fois au démarrage."""
    path = path or CONFIG_PATH
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise InitializationError(f"cannot read config {path}: {e}") from e
    try:
        return AppConfig(**_env_overrides(raw))
    except ValueError as e:
        raise InitializationError(f"invalid config {path}: {e}") from e
