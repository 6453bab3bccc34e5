"""Database migrations: create and upgrade schema."""

from __future__ import annotations

import sqlite3

from updown.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS trades (
            id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            mode TEXT NOT NULL CHECK (mode IN ('paper', 'live')),
            market_id TEXT NOT NULL,
            market_question TEXT,
            coin TEXT,
            side TEXT NOT NULL CHECK (side IN ('BUY', 'SELL')),
            outcome TEXT NOT NULL CHECK (outcome IN ('YES', 'NO')),
            token_id TEXT,
            price REAL NOT NULL,
            amount REAL NOT NULL,
            shares REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'filled', 'failed', 'settled')),
            order_id TEXT,
            pnl REAL DEFAULT 0,
            notes TEXT,
            settle_end_date TEXT,
            settle_slug TEXT,
            settled_at TEXT,
            winner TEXT,
            analysis_json TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS market_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            market_id TEXT NOT NULL,
            market_question TEXT,
            yes_price REAL,
            no_price REAL,
            volume REAL,
            liquidity REAL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS engine_status (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            is_running INTEGER NOT NULL DEFAULT 0,
            mode TEXT NOT NULL DEFAULT 'paper',
            last_heartbeat TEXT,
            total_trades INTEGER DEFAULT 0,
            total_pnl REAL DEFAULT 0,
            updated_at TEXT
        );
        """,
        """
        INSERT OR IGNORE INTO engine_status (id, is_running, mode)
        VALUES (1, 0, 'paper');
        """,
    ],
    2: [
        "CREATE INDEX IF NOT EXISTS idx_trades_status_mode ON trades(status, mode);",
        "CREATE INDEX IF NOT EXISTS idx_trades_created ON trades(created_at);",
        "CREATE INDEX IF NOT EXISTS idx_snapshots_market ON market_snapshots(market_id, timestamp);",
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply every migration newer than the recorded schema version."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        for sql in _MIGRATIONS[version]:
            conn.execute(sql)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (version,),
        )
        conn.commit()

    log.info("migrations.complete", version=_get_current_version(conn))


def _get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
