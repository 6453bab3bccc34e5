"""Database models: Pydantic models for storage records."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, Field


def _utcnow() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class TradeRecord(BaseModel):
    """A paper or live trade.

    ``settle_end_date`` / ``settle_slug`` carry what the settlement checker
    needs to resolve the trade later; both are empty for trades that cannot
    be settled automatically.
    """
    id: str = ""
    created_at: str = Field(default_factory=_utcnow)
    mode: str = "paper"  # paper | live
    market_id: str
    market_question: str = ""
    coin: str = ""
    side: str = "BUY"
    outcome: str  # YES | NO
    token_id: str = ""
    price: float
    amount: float
    shares: float = 0.0
    status: str = "pending"  # pending | filled | failed | settled
    order_id: str = ""
    pnl: float = 0.0
    notes: str = ""
    settle_end_date: str = ""
    settle_slug: str = ""
    settled_at: str | None = None
    winner: str | None = None
    analysis_json: str = "{}"


class SnapshotRecord(BaseModel):
    """Point-in-time prices for one market, written every scan cycle."""
    id: int | None = None
    timestamp: str = Field(default_factory=_utcnow)
    market_id: str
    market_question: str = ""
    yes_price: float = 0.0
    no_price: float = 0.0
    volume: float = 0.0
    liquidity: float = 0.0


class EngineStatusRecord(BaseModel):
    is_running: bool = False
    mode: str = "paper"
    last_heartbeat: str | None = None
    total_trades: int = 0
    total_pnl: float = 0.0
    updated_at: str = Field(default_factory=_utcnow)


class TradeStats(BaseModel):
    total_trades: int = 0
    settled_trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0
    win_rate: float = 0.0
    total_volume: float = 0.0
