"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with defaults for every section
  - Env var gate for live trading
  - Runtime mutation (config / weights updates from the control surface)
  - Subsystem configs: scanning, strategy, decision, risk, execution,
    storage, observability, engine
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

SUPPORTED_COINS = ("btc", "eth", "sol", "xrp")
WEIGHT_SUM_TOLERANCE = 0.01


class ScanningConfig(BaseModel):
    gamma_url: str = "https://gamma-api.polymarket.com"
    clob_url: str = "https://clob.polymarket.com"
    event_tag: str = "crypto"
    coins: list[str] = Field(default_factory=lambda: list(SUPPORTED_COINS))
    http_timeout_secs: float = 10.0
    resolution_price_threshold: float = 0.95


class StrategyWeights(BaseModel):
    """Composite strategy weights. Must be non-negative and sum to 1.0."""
    technical: float = 0.45
    news: float = 0.30
    order_flow: float = 0.25

    @model_validator(mode="after")
    def _check_sum(self) -> "StrategyWeights":
        values = (self.technical, self.news, self.order_flow)
        if any(v < 0 for v in values):
            raise ValueError("strategy weights must be non-negative")
        total = sum(values)
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"strategy weights must sum to 1.0 (got {total:.3f})")
        return self

    def as_dict(self) -> dict[str, float]:
        return {"technical": self.technical, "news": self.news, "order_flow": self.order_flow}


class StrategyConfig(BaseModel):
    weights: StrategyWeights = Field(default_factory=StrategyWeights)
    news_url: str = "https://free-crypto-news.vercel.app/api/search"
    fear_greed_url: str = "https://api.alternative.me/fng/"
    binance_url: str = "https://api.binance.com"
    candle_interval: str = "1m"
    candle_limit: int = 100
    max_articles: int = 20
    provider_timeout_secs: float = 5.0


class DecisionConfig(BaseModel):
    """Composite decision thresholds, checked most-extreme-first."""
    strong_score: float = 0.5
    strong_confidence: float = 0.65
    min_score: float = 0.35
    min_confidence: float = 0.50
    all_agree_confidence: float = 0.9
    agreement_blend: float = 0.7
    order_flow_blend: float = 0.3
    low_liquidity_confidence: float = 0.3


class RiskConfig(BaseModel):
    trade_amount: float = 10.0
    bankroll: float = 100.0
    max_exposure: float = 0.5
    odds_min: float = 0.30
    odds_max: float = 0.75
    max_risk_reward: float = 5.0
    kelly_cap: float = 0.25
    min_trade_usd: float = 1.0
    max_trade_multiplier: float = 2.0
    prob_floor: float = 0.05
    prob_ceiling: float = 0.95

    @field_validator("trade_amount", "bankroll", "max_risk_reward")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("max_exposure")
    @classmethod
    def _exposure_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("max_exposure must be in (0, 1]")
        return v

    @model_validator(mode="after")
    def _odds_band(self) -> "RiskConfig":
        if not 0 <= self.odds_min < self.odds_max <= 1:
            raise ValueError("odds band must satisfy 0 <= odds_min < odds_max <= 1")
        return self


class ExecutionConfig(BaseModel):
    max_live_trade_amount: float = 50.0
    tick_size: str = "0.01"
    neg_risk: bool = False
    chain_id: int = 137
    signature_type: int = 0


class StorageConfig(BaseModel):
    sqlite_path: str = "data/updown.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"  # console | json
    log_file: str = "logs/updown.log"
    event_history: int = 200

    @field_validator("log_format")
    @classmethod
    def _log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("console", "json"):
            raise ValueError('log_format must be "console" or "json"')
        return v


class EngineConfig(BaseModel):
    """Trading engine scheduling."""
    scan_interval_secs: int = 30
    opportunity_interval_secs: int = 10
    settlement_interval_secs: int = 30
    trade_window_secs: int = 120
    min_time_buffer_secs: int = 5
    auto_start: bool = False
    dashboard_host: str = "127.0.0.1"
    dashboard_port: int = 3001

    @field_validator("scan_interval_secs", "opportunity_interval_secs",
                     "settlement_interval_secs", "trade_window_secs")
    @classmethod
    def _positive_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("interval must be positive")
        return v


class BotConfig(BaseModel):
    scanning: ScanningConfig = Field(default_factory=ScanningConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)


def load_config(path: str | Path | None = None) -> BotConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return BotConfig(**raw)
    return BotConfig()


def is_live_trading_enabled() -> bool:
    """Check if live trading is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"
