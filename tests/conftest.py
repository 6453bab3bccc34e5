"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure updown is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from updown.config import BotConfig, StorageConfig  # noqa: E402
from updown.engine.loop import TradingEngine  # noqa: E402
from updown.observability.metrics import metrics  # noqa: E402
from updown.storage.database import Database  # noqa: E402

from factories import FakeAnalyzer, FakeMarketAPI  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("ENABLE_LIVE_TRADING", raising=False)
    monkeypatch.delenv("DASHBOARD_API_KEY", raising=False)


@pytest.fixture()
def db():
    """Migrated in-memory database."""
    database = Database(StorageConfig(sqlite_path=":memory:"))
    database.connect()
    yield database
    database.close()


@pytest.fixture()
def config() -> BotConfig:
    return BotConfig()


@pytest.fixture()
def make_engine(db, config):
    def _make(
        api: FakeMarketAPI | None = None,
        analyzer: FakeAnalyzer | None = None,
        cfg: BotConfig | None = None,
    ) -> TradingEngine:
        return TradingEngine(cfg or config, db, api or FakeMarketAPI(), analyzer or FakeAnalyzer())
    return _make
