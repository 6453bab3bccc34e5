"""Tests for the trading engine: cycles, guards, dedup, execution and commands."""

from __future__ import annotations

import json
import sqlite3

import pytest

from updown.config import BotConfig, RiskConfig
from updown.connectors.polymarket_clob import PriceQuote
from updown.engine.events import EventTypes
from updown.engine.loop import RUNNING, STOPPED, TradingEngine
from updown.execution.order_router import OrderResult
from updown.observability.metrics import metrics

from factories import FakeAnalyzer, FakeMarketAPI, make_analysis, make_market


def _events(engine, event_type: str) -> list[dict]:
    return [e.data for e in engine.bus.recent(limit=500, event_type=event_type)]


def _buy_yes() -> FakeAnalyzer:
    return FakeAnalyzer({"btc": make_analysis(score=0.5, confidence=0.87, outcome="YES")})


# ─── lifecycle ──────────────────────────────────────────────────────────

class TestLifecycle:
    def test_stale_running_flag_reset_on_construction(self, db, make_engine) -> None:
        db.update_status(is_running=True)
        engine = make_engine()
        assert db.get_status().is_running is False
        assert engine.state == STOPPED

    @pytest.mark.asyncio
    async def test_start_and_stop_idempotent(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        engine = make_engine(api=api)

        await engine.start()
        await engine.start()
        assert engine.state == RUNNING
        assert db.get_status().is_running is True
        assert engine.markets()[0].id == "m1"  # immediate scan

        await engine.stop()
        await engine.stop()
        assert engine.state == STOPPED
        assert db.get_status().is_running is False
        statuses = _events(engine, EventTypes.STATUS)
        assert [s["state"] for s in statuses] == [RUNNING, STOPPED]

    @pytest.mark.asyncio
    async def test_close_releases_api(self, make_engine) -> None:
        api = FakeMarketAPI()
        engine = make_engine(api=api)
        await engine.close()
        assert api.closed


# ─── scan cycle ─────────────────────────────────────────────────────────

class TestScan:
    @pytest.mark.asyncio
    async def test_scan_snapshots_and_publishes(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1"), make_market("m2", coin="eth")])
        engine = make_engine(api=api)

        await engine.scan_markets()

        assert [m.id for m in engine.markets()] == ["m1", "m2"]
        assert len(db.get_snapshots()) == 2
        event = _events(engine, EventTypes.MARKETS_UPDATED)[-1]
        assert [row["id"] for row in event["markets"]] == ["m1", "m2"]
        assert event["markets"][0]["yes_price"] == pytest.approx(0.6)
        assert db.get_status().last_heartbeat is not None

    @pytest.mark.asyncio
    async def test_per_market_price_failure_skipped(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1"), make_market("m2")])
        api.failing_price_ids.add("m1")
        engine = make_engine(api=api)

        await engine.scan_markets()

        snaps = db.get_snapshots()
        assert [s.market_id for s in snaps] == ["m2"]
        assert len(engine.markets()) == 2

    @pytest.mark.asyncio
    async def test_listing_failure_publishes_error(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        engine = make_engine(api=api)
        await engine.scan_markets()

        async def _down() -> list:
            raise RuntimeError("gamma unavailable")

        api.list_tradable_markets = _down  # type: ignore[method-assign]
        await engine.scan_markets()

        errors = _events(engine, EventTypes.ERROR)
        assert errors[-1]["message"] == "Failed to scan markets"
        assert "gamma unavailable" in errors[-1]["error"]
        assert [m.id for m in engine.markets()] == ["m1"]
        assert metrics.counter("cycles.scan.errors") == 1

    @pytest.mark.asyncio
    async def test_market_list_replaced_each_scan(self, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        engine = make_engine(api=api)
        await engine.scan_markets()
        api.markets = [make_market("m3")]
        await engine.scan_markets()
        assert [m.id for m in engine.markets()] == ["m3"]


# ─── opportunity cycle ─────────────────────────────────────────────────

class TestOpportunities:
    @pytest.mark.asyncio
    async def test_buy_signal_opens_paper_trade(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        engine = make_engine(api=api, analyzer=_buy_yes())
        await engine.scan_markets()

        await engine.check_opportunities()

        trades = db.get_trades()
        assert len(trades) == 1
        trade = trades[0]
        assert trade.status == "filled"
        assert trade.mode == "paper"
        assert trade.outcome == "YES"
        assert trade.token_id == "m1-up"
        assert trade.amount == pytest.approx(20.0)
        assert trade.shares == pytest.approx(20.0 / 0.6)
        assert trade.order_id.startswith("PAPER_")
        assert trade.settle_slug == "btc-updown-15m-m1"
        assert json.loads(trade.analysis_json)["decision"] == "BUY"

        opened = _events(engine, EventTypes.TRADE_OPENED)
        assert opened[0]["id"] == trade.id
        assert _events(engine, EventTypes.ANALYSIS_UPDATED)[0]["market_id"] == "m1"
        assert db.get_status().total_trades == 1
        assert api.orders == []  # paper never reaches the live API

    @pytest.mark.asyncio
    async def test_pair_traded_at_most_once(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        engine = make_engine(api=api, analyzer=_buy_yes())
        await engine.scan_markets()

        await engine.check_opportunities()
        await engine.check_opportunities()
        await engine.check_opportunities()

        assert len(db.get_trades()) == 1
        assert engine.traded_pairs == frozenset({("m1", "YES")})

    @pytest.mark.asyncio
    async def test_dedup_survives_clear_records(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        engine = make_engine(api=api, analyzer=_buy_yes())
        await engine.scan_markets()
        await engine.check_opportunities()

        engine.clear_records()
        await engine.check_opportunities()

        assert db.get_trades() == []

    @pytest.mark.asyncio
    async def test_hold_does_not_trade(self, db, make_engine) -> None:
        engine = make_engine(api=FakeMarketAPI([make_market("m1")]), analyzer=FakeAnalyzer())
        await engine.scan_markets()
        await engine.check_opportunities()
        assert db.get_trades() == []
        assert len(_events(engine, EventTypes.ANALYSIS_UPDATED)) == 1
        assert engine.latest_analysis()[0]["decision"] == "HOLD"

    @pytest.mark.asyncio
    async def test_markets_outside_window_not_analyzed(self, db, make_engine) -> None:
        api = FakeMarketAPI([
            make_market("early", seconds_left=600),
            make_market("late", seconds_left=2),
            make_market("ended", seconds_left=-30),
        ])
        analyzer = _buy_yes()
        engine = make_engine(api=api, analyzer=analyzer)
        await engine.scan_markets()
        await engine.check_opportunities()
        assert analyzer.calls == []
        assert db.get_trades() == []

    @pytest.mark.asyncio
    async def test_odds_guard_skips(self, db, make_engine) -> None:
        market = make_market("m1")
        api = FakeMarketAPI(
            [market],
            quotes={"m1": PriceQuote(0.8, 0.2, market.up_token_id, market.down_token_id)},
        )
        engine = make_engine(api=api, analyzer=_buy_yes())
        await engine.scan_markets()
        await engine.check_opportunities()

        assert db.get_trades() == []
        skipped = _events(engine, EventTypes.TRADE_SKIPPED)
        assert skipped[0]["kind"] == "odds_range"
        assert skipped[0]["market_id"] == "m1"
        assert metrics.counter("skips.odds_range") == 1

    @pytest.mark.asyncio
    async def test_risk_reward_guard_skips(self, db, make_engine) -> None:
        engine = make_engine(api=FakeMarketAPI([make_market("m1")]), analyzer=_buy_yes())
        engine.update_config(max_risk_reward=1.0)
        await engine.scan_markets()
        await engine.check_opportunities()

        assert db.get_trades() == []
        assert _events(engine, EventTypes.TRADE_SKIPPED)[0]["kind"] == "risk_reward"

    @pytest.mark.asyncio
    async def test_sizing_rejection_skips(self, db, make_engine) -> None:
        # BUY NO on a positive score is misaligned
        analyzer = FakeAnalyzer({"btc": make_analysis(score=0.5, confidence=0.9, outcome="NO")})
        engine = make_engine(api=FakeMarketAPI([make_market("m1")]), analyzer=analyzer)
        await engine.scan_markets()
        await engine.check_opportunities()

        assert db.get_trades() == []
        skipped = _events(engine, EventTypes.TRADE_SKIPPED)[0]
        assert skipped["kind"] == "sizing"
        assert "misaligned" in skipped["reason"]

    @pytest.mark.asyncio
    async def test_budget_rations_candidates(self, db) -> None:
        cfg = BotConfig(risk=RiskConfig(bankroll=100.0, max_exposure=0.4))
        api = FakeMarketAPI([make_market("m1"), make_market("m2"), make_market("m3")])
        engine = TradingEngine(cfg, db, api, _buy_yes())
        await engine.scan_markets()

        await engine.check_opportunities()

        trades = sorted(db.get_trades(), key=lambda t: t.market_id)
        assert [t.market_id for t in trades] == ["m1", "m2"]
        assert sum(t.amount for t in trades) == pytest.approx(40.0)
        skipped = _events(engine, EventTypes.TRADE_SKIPPED)
        assert [(s["market_id"], s["kind"]) for s in skipped] == [("m3", "budget")]

    @pytest.mark.asyncio
    async def test_budget_remainder_below_minimum_not_traded(self, db) -> None:
        cfg = BotConfig(risk=RiskConfig(bankroll=100.0, max_exposure=0.55, trade_amount=2.5))
        markets = [make_market(f"m{i}") for i in range(12)]
        engine = TradingEngine(cfg, db, FakeMarketAPI(markets), _buy_yes())
        await engine.scan_markets()

        await engine.check_opportunities()

        trades = db.get_trades()
        assert len(trades) == 11
        assert all(t.amount >= cfg.risk.min_trade_usd for t in trades)
        assert sum(t.amount for t in trades) == pytest.approx(55.0)
        skipped = _events(engine, EventTypes.TRADE_SKIPPED)
        assert [(s["market_id"], s["reason"]) for s in skipped] == [("m11", "budget exhausted")]
        assert ("m11", "YES") not in engine.traded_pairs

    @pytest.mark.asyncio
    async def test_unpriced_market_skipped_before_analysis(self, db, make_engine) -> None:
        market = make_market("m1")
        api = FakeMarketAPI(
            [market],
            quotes={"m1": PriceQuote(0.0, 0.4, market.up_token_id, market.down_token_id)},
        )
        analyzer = _buy_yes()
        engine = make_engine(api=api, analyzer=analyzer)
        engine._markets = (market,)

        await engine.check_opportunities()

        assert analyzer.calls == []
        assert _events(engine, EventTypes.TRADE_SKIPPED) == []
        assert db.get_trades() == []

    @pytest.mark.asyncio
    async def test_analysis_failure_isolated_per_market(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1"), make_market("m2")])
        api.failing_price_ids.add("m1")
        engine = make_engine(api=api, analyzer=_buy_yes())
        engine._markets = tuple(api.markets)

        await engine.check_opportunities()

        assert [t.market_id for t in db.get_trades()] == ["m2"]


# ─── execution ──────────────────────────────────────────────────────────

class TestExecution:
    @pytest.mark.asyncio
    async def test_live_rejection_marks_trade_failed(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        api.order_result = OrderResult.failure("order couldn't be fully filled")
        engine = make_engine(api=api, analyzer=_buy_yes())
        engine.set_mode("live")
        await engine.scan_markets()

        await engine.check_opportunities()

        trade = db.get_trades()[0]
        assert trade.mode == "live"
        assert trade.status == "failed"
        assert trade.pnl == 0.0
        assert "fully filled" in trade.notes
        assert _events(engine, EventTypes.TRADE_OPENED) == []
        errors = _events(engine, EventTypes.ERROR)
        assert errors[0]["trade_id"] == trade.id
        token, price, size = api.orders[0]
        assert token == "m1-up"
        assert size == pytest.approx(20.0 / 0.6)
        assert db.get_stats("live").total_trades == 0

    @pytest.mark.asyncio
    async def test_failed_pair_stays_blocked(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        api.order_result = OrderResult.failure("rejected")
        engine = make_engine(api=api, analyzer=_buy_yes())
        engine.set_mode("live")
        await engine.scan_markets()

        await engine.check_opportunities()
        await engine.check_opportunities()

        assert len(api.orders) == 1

    @pytest.mark.asyncio
    async def test_storage_error_does_not_abort_other_candidates(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1"), make_market("m2")])
        engine = make_engine(api=api, analyzer=_buy_yes())
        await engine.scan_markets()
        insert_trade = db.insert_trade

        def _locked_for_m1(trade):
            if trade.market_id == "m1":
                raise sqlite3.OperationalError("database is locked")
            return insert_trade(trade)

        db.insert_trade = _locked_for_m1  # type: ignore[method-assign]
        db.update_status(last_heartbeat="stale")

        await engine.check_opportunities()

        assert [t.market_id for t in db.get_trades()] == ["m2"]
        errors = _events(engine, EventTypes.ERROR)
        assert len(errors) == 1
        assert errors[0]["market_id"] == "m1"
        assert "locked" in errors[0]["error"]
        assert metrics.counter("trades.errors") == 1
        assert db.get_status().last_heartbeat != "stale"
        assert engine.traded_pairs == frozenset({("m1", "YES"), ("m2", "YES")})

    @pytest.mark.asyncio
    async def test_live_fill_records_order_id(self, db, make_engine) -> None:
        api = FakeMarketAPI([make_market("m1")])
        engine = make_engine(api=api, analyzer=_buy_yes())
        engine.set_mode("live")
        await engine.scan_markets()
        await engine.check_opportunities()

        trade = db.get_trades()[0]
        assert trade.status == "filled"
        assert trade.order_id == "LIVE_1"


# ─── commands ───────────────────────────────────────────────────────────

class TestCommands:
    def test_set_mode(self, db, make_engine) -> None:
        engine = make_engine()
        assert engine.set_mode("LIVE") == "live"
        assert db.get_status().mode == "live"
        assert _events(engine, EventTypes.MODE_CHANGED)[-1] == {"mode": "live"}

    def test_set_mode_rejects_unknown(self, make_engine) -> None:
        with pytest.raises(ValueError):
            make_engine().set_mode("yolo")

    def test_update_config(self, make_engine) -> None:
        engine = make_engine()
        cfg = engine.update_config(trade_amount=15, odds_min=0.25, trade_window_secs=90)
        assert cfg["trade_amount"] == 15
        assert cfg["odds_min"] == 0.25
        assert cfg["trade_window_secs"] == 90
        assert engine.config.engine.trade_window_secs == 90

    def test_update_config_unknown_field(self, make_engine) -> None:
        with pytest.raises(ValueError, match="unknown"):
            make_engine().update_config(kill_switch=True)

    def test_update_config_invalid_is_atomic(self, make_engine) -> None:
        engine = make_engine()
        with pytest.raises(ValueError):
            engine.update_config(trade_amount=50, odds_min=0.9)
        assert engine.config.risk.trade_amount == 10.0
        assert engine.config.risk.odds_min == 0.30

    def test_update_config_rejects_nonpositive(self, make_engine) -> None:
        with pytest.raises(ValueError):
            make_engine().update_config(bankroll=0)

    def test_update_weights(self, make_engine) -> None:
        engine = make_engine()
        weights = engine.update_weights(0.5, 0.25, 0.25)
        assert weights == {"technical": 0.5, "news": 0.25, "order_flow": 0.25}
        assert engine.config.strategy.weights.technical == 0.5

    @pytest.mark.parametrize("weights", [(0.5, 0.5, 0.5), (1.2, -0.1, -0.1)])
    def test_update_weights_invalid(self, make_engine, weights) -> None:
        engine = make_engine()
        with pytest.raises(ValueError):
            engine.update_weights(*weights)
        assert engine.config.strategy.weights.technical == 0.45

    @pytest.mark.asyncio
    async def test_clear_records(self, db, make_engine) -> None:
        engine = make_engine(api=FakeMarketAPI([make_market("m1")]), analyzer=_buy_yes())
        await engine.scan_markets()
        await engine.check_opportunities()

        engine.clear_records()

        assert db.get_trades() == []
        assert db.get_snapshots() == []
        assert db.get_status().total_trades == 0
        assert len(_events(engine, EventTypes.RECORDS_CLEARED)) == 1

    def test_get_status_shape(self, make_engine) -> None:
        status = make_engine().get_status()
        assert status["state"] == STOPPED
        assert status["mode"] == "paper"
        assert status["live_trading_enabled"] is False
        assert status["config"]["weights"]["technical"] == 0.45
