"""Database: SQLite persistence layer.

Manages the connection, runs migrations, and provides CRUD for trades,
market snapshots and the singleton engine status row.

The engine thread and the dashboard request threads share one connection,
so every statement runs under ``_lock``.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any

from updown.config import StorageConfig
from updown.observability.logger import get_logger
from updown.storage.migrations import run_migrations
from updown.storage.models import (
    EngineStatusRecord,
    SnapshotRecord,
    TradeRecord,
    TradeStats,
)

log = get_logger(__name__)

_TRADE_COLUMNS = (
    "id", "created_at", "mode", "market_id", "market_question", "coin",
    "side", "outcome", "token_id", "price", "amount", "shares", "status",
    "order_id", "pnl", "notes", "settle_end_date", "settle_slug",
    "settled_at", "winner", "analysis_json",
)

_UPDATABLE_TRADE_FIELDS = frozenset({
    "status", "order_id", "pnl", "notes", "settled_at", "winner",
})

_STATUS_FIELDS = frozenset({
    "is_running", "mode", "last_heartbeat", "total_trades", "total_pnl",
})


class Database:
    """SQLite database for the bot."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # ── Trades ───────────────────────────────────────────────────────

    def insert_trade(self, trade: TradeRecord) -> str:
        tid = trade.id or str(uuid.uuid4())
        row = trade.model_dump()
        row["id"] = tid
        placeholders = ", ".join("?" for _ in _TRADE_COLUMNS)
        with self._lock:
            self.conn.execute(
                f"INSERT INTO trades ({', '.join(_TRADE_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[c] for c in _TRADE_COLUMNS),
            )
            self.conn.commit()
        return tid

    def update_trade(self, trade_id: str, **fields: Any) -> None:
        unknown = set(fields) - _UPDATABLE_TRADE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update trade fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self._lock:
            self.conn.execute(
                f"UPDATE trades SET {assignments} WHERE id = ?",
                (*fields.values(), trade_id),
            )
            self.conn.commit()

    def get_trade(self, trade_id: str) -> TradeRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM trades WHERE id = ?", (trade_id,)
            ).fetchone()
        return TradeRecord(**dict(row)) if row else None

    def get_trades(self, limit: int = 100, mode: str | None = None) -> list[TradeRecord]:
        sql = "SELECT * FROM trades"
        params: list[Any] = []
        if mode:
            sql += " WHERE mode = ?"
            params.append(mode)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]

    def get_unsettled_paper_trades(self) -> list[TradeRecord]:
        """Filled paper trades awaiting market resolution."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM trades
                WHERE mode = 'paper' AND status = 'filled'
                ORDER BY created_at ASC
                """
            ).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]

    def get_stats(self, mode: str | None = None) -> TradeStats:
        """Aggregate over filled and settled trades; failed orders never count."""
        where = "WHERE status IN ('filled', 'settled')"
        params: list[Any] = []
        if mode:
            where += " AND mode = ?"
            params.append(mode)
        with self._lock:
            row = self.conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total_trades,
                    SUM(CASE WHEN status = 'settled' THEN 1 ELSE 0 END) AS settled_trades,
                    SUM(CASE WHEN status = 'settled' AND pnl > 0 THEN 1 ELSE 0 END) AS wins,
                    SUM(CASE WHEN status = 'settled' AND pnl <= 0 THEN 1 ELSE 0 END) AS losses,
                    COALESCE(SUM(pnl), 0) AS total_pnl,
                    COALESCE(SUM(amount), 0) AS total_volume
                FROM trades {where}
                """,
                params,
            ).fetchone()
        total = row["total_trades"] or 0
        settled = row["settled_trades"] or 0
        wins = row["wins"] or 0
        total_pnl = float(row["total_pnl"] or 0.0)
        return TradeStats(
            total_trades=total,
            settled_trades=settled,
            wins=wins,
            losses=row["losses"] or 0,
            total_pnl=round(total_pnl, 4),
            avg_pnl=round(total_pnl / settled, 4) if settled else 0.0,
            win_rate=round(wins / settled, 4) if settled else 0.0,
            total_volume=round(float(row["total_volume"] or 0.0), 4),
        )

    # ── Snapshots ────────────────────────────────────────────────────

    def insert_snapshot(self, snap: SnapshotRecord) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO market_snapshots
                    (timestamp, market_id, market_question, yes_price,
                     no_price, volume, liquidity)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snap.timestamp, snap.market_id, snap.market_question,
                    snap.yes_price, snap.no_price, snap.volume, snap.liquidity,
                ),
            )
            self.conn.commit()

    def get_snapshots(
        self, limit: int = 100, market_id: str | None = None,
    ) -> list[SnapshotRecord]:
        sql = "SELECT * FROM market_snapshots"
        params: list[Any] = []
        if market_id:
            sql += " WHERE market_id = ?"
            params.append(market_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [SnapshotRecord(**dict(r)) for r in rows]

    # ── Engine Status ────────────────────────────────────────────────

    def get_status(self) -> EngineStatusRecord:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM engine_status WHERE id = 1"
            ).fetchone()
        if row is None:
            return EngineStatusRecord()
        data = dict(row)
        data.pop("id", None)
        data["is_running"] = bool(data["is_running"])
        if data.get("updated_at") is None:
            data.pop("updated_at")
        return EngineStatusRecord(**data)

    def update_status(self, **fields: Any) -> None:
        unknown = set(fields) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown engine status fields: {sorted(unknown)}")
        if "is_running" in fields:
            fields["is_running"] = int(bool(fields["is_running"]))
        fields["updated_at"] = EngineStatusRecord().updated_at
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self._lock:
            self.conn.execute(
                f"UPDATE engine_status SET {assignments} WHERE id = 1",
                tuple(fields.values()),
            )
            self.conn.commit()

    def refresh_status_totals(self, mode: str | None = None) -> EngineStatusRecord:
        """Recompute trade count and PnL (for ``mode``, or all trades) from the trades table."""
        stats = self.get_stats(mode)
        self.update_status(total_trades=stats.total_trades, total_pnl=stats.total_pnl)
        return self.get_status()

    # ── Maintenance ──────────────────────────────────────────────────

    def clear_all_records(self) -> None:
        """Delete every trade and snapshot and zero the status totals."""
        with self._lock:
            self.conn.execute("DELETE FROM trades")
            self.conn.execute("DELETE FROM market_snapshots")
            self.conn.execute(
                "UPDATE engine_status SET total_trades = 0, total_pnl = 0 WHERE id = 1"
            )
            self.conn.commit()
        log.info("database.records_cleared")
