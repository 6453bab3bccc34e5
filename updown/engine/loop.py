"""Trading engine: the scan / decide / execute / settle state machine.

Three periodic tasks run on one asyncio loop:
  1. Scan (default 30s): refresh the tradable market list, snapshot prices
  2. Opportunity (default 10s): for markets close to expiry, run the
     composite analysis, apply guards, size with Kelly, ration the cycle's
     candidates against the exposure budget and execute the funded ones
  3. Settlement (default 30s): resolve expired paper trades and book PnL

Each (market, outcome) pair is traded at most once per engine lifetime.
Everything the engine does is published on the event bus.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import signal
import uuid
from typing import Any

from updown.config import (
    BotConfig,
    EngineConfig,
    RiskConfig,
    StrategyWeights,
    is_live_trading_enabled,
    load_config,
)
from updown.connectors.binance import BinanceClient
from updown.connectors.market_api import MarketAPI
from updown.connectors.news import NewsClient
from updown.connectors.polymarket_gamma import Market
from updown.engine.events import EventBus, EventTypes
from updown.engine.scheduler import PeriodicTask
from updown.engine.settlement import SettlementChecker, SettlementReport
from updown.execution.order_router import OrderResult, OrderRouter
from updown.observability.logger import get_logger
from updown.observability.metrics import metrics
from updown.policy.allocator import Allocation, TradeCandidate, allocate_budget
from updown.policy.guards import check_odds_range, check_risk_reward
from updown.policy.position_sizer import calculate_position_size
from updown.signals.news_sentiment import NewsSentimentSignal
from updown.signals.order_flow import OrderFlowSignal
from updown.signals.technical import TechnicalSignal
from updown.storage.database import Database
from updown.storage.models import SnapshotRecord, TradeRecord
from updown.strategy.composite import CompositeAnalysis, CompositeAnalyzer

log = get_logger(__name__)

STOPPED = "STOPPED"
RUNNING = "RUNNING"

MODES = ("paper", "live")

_RISK_FIELDS = frozenset({
    "trade_amount", "odds_min", "odds_max", "max_risk_reward", "bankroll", "max_exposure",
})
_ENGINE_FIELDS = frozenset({"trade_window_secs"})
CONFIG_FIELDS = _RISK_FIELDS | _ENGINE_FIELDS


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class TradingEngine:
    """Coordinates market data, analysis, sizing, execution and settlement."""

    def __init__(
        self,
        config: BotConfig,
        db: Database,
        market_api: MarketAPI,
        analyzer: CompositeAnalyzer,
        bus: EventBus | None = None,
        router: OrderRouter | None = None,
    ):
        self.config = config
        self.db = db
        self.api = market_api
        self.analyzer = analyzer
        self.bus = bus or EventBus(config.observability.event_history)
        self.router = router or OrderRouter(market_api)
        self.settlement = SettlementChecker(db, market_api, self.bus)

        self._running = False
        self._markets: tuple[Market, ...] = ()
        self._latest_analysis: dict[str, dict[str, Any]] = {}
        self._traded: set[tuple[str, str]] = set()
        self._tasks: list[PeriodicTask] = []

        self._reset_stale_status()

    @classmethod
    def from_config(cls, config: BotConfig | None = None) -> "TradingEngine":
        """Wire the real connectors, providers and database."""
        config = config or load_config()
        db = Database(config.storage)
        db.connect()
        api = MarketAPI(config)
        strategy = config.strategy
        analyzer = CompositeAnalyzer(
            TechnicalSignal(
                BinanceClient(strategy.binance_url, timeout=strategy.provider_timeout_secs),
                interval=strategy.candle_interval,
                limit=strategy.candle_limit,
            ),
            NewsSentimentSignal(
                NewsClient(
                    strategy.news_url,
                    strategy.fear_greed_url,
                    timeout=strategy.provider_timeout_secs,
                ),
                max_articles=strategy.max_articles,
            ),
            OrderFlowSignal(api.clob),
            config.decision,
        )
        return cls(config, db, api, analyzer)

    # ── Properties ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> str:
        return RUNNING if self._running else STOPPED

    @property
    def mode(self) -> str:
        return self.db.get_status().mode

    @property
    def traded_pairs(self) -> frozenset[tuple[str, str]]:
        return frozenset(self._traded)

    def markets(self) -> list[Market]:
        return list(self._markets)

    def latest_analysis(self) -> list[dict[str, Any]]:
        return list(self._latest_analysis.values())

    # ── Lifecycle ────────────────────────────────────────────────────

    def _reset_stale_status(self) -> None:
        """A crash can leave is_running=1 behind; nothing is running at construction."""
        if self.db.get_status().is_running:
            log.warning("engine.stale_running_flag_reset")
            self.db.update_status(is_running=False)

    async def start(self) -> None:
        if self._running:
            log.info("engine.already_running")
            return
        self._running = True
        self.db.update_status(is_running=True, last_heartbeat=_now_iso())
        log.info(
            "engine.starting",
            mode=self.mode,
            live_trading=is_live_trading_enabled(),
            bankroll=self.config.risk.bankroll,
            max_exposure=self.config.risk.max_exposure,
        )

        eng = self.config.engine
        scan = PeriodicTask("scan", self.scan_markets, eng.scan_interval_secs, run_immediately=False)
        self._tasks = [
            scan,
            PeriodicTask("opportunity", self.check_opportunities, eng.opportunity_interval_secs),
            PeriodicTask("settlement", self.settle, eng.settlement_interval_secs),
        ]
        await scan.run_once()
        for task in self._tasks:
            task.start()
        self._publish_status()

    async def stop(self) -> None:
        if not self._running:
            log.info("engine.already_stopped")
            return
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            await task.stop()
        self.db.update_status(is_running=False)
        log.info("engine.stopped", cycles={t.name: t.runs for t in tasks})
        self._publish_status()

    async def run_forever(self) -> None:
        """Start, then block until SIGINT/SIGTERM and stop cleanly."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    async def close(self) -> None:
        await self.stop()
        await self.api.close()
        self.db.close()

    def _heartbeat(self) -> None:
        self.db.update_status(last_heartbeat=_now_iso())

    # ── Scan cycle ───────────────────────────────────────────────────

    async def scan_markets(self) -> None:
        try:
            markets = await self.api.list_tradable_markets()
        except Exception as e:
            metrics.incr("cycles.scan.errors")
            log.error("engine.scan_failed", error=str(e))
            self.bus.publish(EventTypes.ERROR, {
                "message": "Failed to scan markets",
                "error": str(e),
            })
            return
        self._markets = tuple(markets)
        metrics.gauge("markets.tracked", len(markets))

        rows: list[dict[str, Any]] = []
        for market in markets:
            try:
                quote = await self.api.get_prices(market)
                self.db.insert_snapshot(SnapshotRecord(
                    market_id=market.id,
                    market_question=market.question,
                    yes_price=quote.yes_price,
                    no_price=quote.no_price,
                    volume=market.volume,
                    liquidity=market.liquidity,
                ))
                rows.append({**market.to_dict(), **quote.to_dict()})
            except Exception as e:
                log.error("engine.scan_market_failed", market_id=market.id, error=str(e))

        self._heartbeat()
        log.info("engine.scan_complete", markets=len(markets), priced=len(rows))
        self.bus.publish(EventTypes.MARKETS_UPDATED, {"markets": rows})

    # ── Opportunity cycle ────────────────────────────────────────────

    async def check_opportunities(self) -> None:
        mode = self.mode
        eng = self.config.engine
        candidates: list[TradeCandidate] = []

        for market in self._markets:
            if not self.api.is_within_trading_window(
                market.end_date, eng.trade_window_secs, eng.min_time_buffer_secs,
            ):
                continue
            try:
                candidate = await self._evaluate_market(market)
            except Exception as e:
                log.error("engine.evaluate_market_failed", market_id=market.id, error=str(e))
                continue
            if candidate is not None:
                candidates.append(candidate)

        if candidates:
            budget = self.config.risk.bankroll * self.config.risk.max_exposure
            plan = allocate_budget(candidates, budget, min_amount=self.config.risk.min_trade_usd)
            for cand, reason in plan.skipped:
                self._skip(cand.market, reason, "budget", outcome=cand.outcome)
            for allocation in plan.funded:
                cand = allocation.candidate
                # Stays blocked even on error; the order may already be live.
                self._traded.add(cand.dedup_key)
                try:
                    await self._execute(allocation, mode)
                except Exception as e:
                    metrics.incr("trades.errors")
                    log.error(
                        "engine.execute_failed",
                        market_id=cand.market.id,
                        outcome=cand.outcome,
                        error=str(e),
                    )
                    self.bus.publish(EventTypes.ERROR, {
                        "message": "Failed to execute trade",
                        "market_id": cand.market.id,
                        "outcome": cand.outcome,
                        "error": str(e),
                    })

        self._heartbeat()

    async def _evaluate_market(self, market: Market) -> TradeCandidate | None:
        quote = await self.api.get_prices(market)
        if not quote.is_complete:
            log.warning(
                "engine.prices_unavailable",
                market_id=market.id,
                yes_price=quote.yes_price,
                no_price=quote.no_price,
            )
            return None
        analysis = await self.analyzer.analyze(
            market.coin,
            quote.yes_token or market.up_token_id,
            quote.no_token or market.down_token_id,
            self.config.strategy.weights,
        )
        self._record_analysis(market, quote.to_dict(), analysis)

        if not analysis.is_buy:
            return None
        outcome = analysis.outcome or ""
        if (market.id, outcome) in self._traded:
            return None

        risk = self.config.risk
        price = quote.price_for(outcome)

        ok, reason = check_odds_range(price, risk.odds_min, risk.odds_max)
        if not ok:
            self._skip(market, reason, "odds_range", outcome=outcome)
            return None
        ok, reason = check_risk_reward(price, risk.max_risk_reward)
        if not ok:
            self._skip(market, reason, "risk_reward", outcome=outcome)
            return None

        size = calculate_position_size(
            outcome, analysis.composite_score, price, risk.bankroll, risk.trade_amount, risk,
        )
        if not size.is_trade:
            self._skip(market, size.reason, "sizing", outcome=outcome)
            return None

        return TradeCandidate(
            market=market,
            analysis=analysis,
            quote=quote,
            outcome=outcome,
            price=price,
            token_id=quote.token_for(outcome),
            kelly_amount=size.amount or 0.0,
        )

    def _record_analysis(
        self, market: Market, prices: dict[str, Any], analysis: CompositeAnalysis,
    ) -> None:
        entry = {
            "market_id": market.id,
            "coin": market.coin,
            "question": market.question,
            "end_date": market.end_date.isoformat() if market.end_date else None,
            "yes_price": prices.get("yes_price", 0.0),
            "no_price": prices.get("no_price", 0.0),
            "timestamp": _now_iso(),
            **analysis.to_dict(),
        }
        self._latest_analysis[market.id] = entry
        self.bus.publish(EventTypes.ANALYSIS_UPDATED, entry)

    def _skip(self, market: Market, reason: str, kind: str, outcome: str | None = None) -> None:
        log.info("engine.trade_skipped", market_id=market.id, coin=market.coin, kind=kind, reason=reason)
        metrics.incr(f"skips.{kind}")
        self.bus.publish(EventTypes.TRADE_SKIPPED, {
            "market_id": market.id,
            "coin": market.coin,
            "outcome": outcome,
            "kind": kind,
            "reason": reason,
            "timestamp": _now_iso(),
        })

    async def _execute(self, allocation: Allocation, mode: str) -> TradeRecord:
        cand = allocation.candidate
        market = cand.market
        amount = allocation.amount
        trade = TradeRecord(
            id=str(uuid.uuid4()),
            mode=mode,
            market_id=market.id,
            market_question=market.question,
            coin=market.coin,
            outcome=cand.outcome,
            token_id=cand.token_id,
            price=cand.price,
            amount=amount,
            shares=amount / cand.price,
            settle_end_date=market.end_date.isoformat() if market.end_date else "",
            settle_slug=market.slug,
            analysis_json=json.dumps(cand.analysis.to_dict()),
        )
        self.db.insert_trade(trade)

        try:
            result = await self.router.submit(mode, cand.token_id, cand.price, amount)
        except Exception as e:
            result = OrderResult.failure(str(e))

        if result.success:
            trade.status = "filled"
            trade.order_id = result.order_id
            self.db.update_trade(trade.id, status="filled", order_id=result.order_id)
            metrics.incr("trades.opened")
            log.info(
                "engine.trade_opened",
                trade_id=trade.id,
                mode=mode,
                coin=market.coin,
                outcome=cand.outcome,
                price=round(cand.price, 4),
                amount=round(amount, 2),
                kelly_amount=round(cand.kelly_amount, 2),
            )
            self.bus.publish(EventTypes.TRADE_OPENED, trade.model_dump())
        else:
            trade.status = "failed"
            trade.notes = result.error
            self.db.update_trade(trade.id, status="failed", pnl=0.0, notes=result.error)
            metrics.incr("trades.failed")
            log.error("engine.trade_failed", trade_id=trade.id, mode=mode, error=result.error)
            self.bus.publish(EventTypes.ERROR, {
                "message": "Failed to execute trade",
                "trade_id": trade.id,
                "market_id": market.id,
                "error": result.error,
            })

        self.db.refresh_status_totals(mode)
        self.bus.publish(EventTypes.STATS_UPDATED, self.db.get_stats(mode).model_dump())
        return trade

    # ── Settlement cycle ─────────────────────────────────────────────

    async def settle(self) -> SettlementReport:
        return await self.settlement.run()

    # ── Commands ─────────────────────────────────────────────────────

    def set_mode(self, mode: str) -> str:
        mode = (mode or "").lower()
        if mode not in MODES:
            raise ValueError(f'mode must be "paper" or "live" (got {mode!r})')
        self.db.update_status(mode=mode)
        if mode == "live" and not is_live_trading_enabled():
            log.warning("engine.live_mode_without_gate", hint="set ENABLE_LIVE_TRADING=true")
        log.info("engine.mode_changed", mode=mode)
        self.bus.publish(EventTypes.MODE_CHANGED, {"mode": mode})
        self._publish_status()
        return mode

    def update_config(self, **changes: Any) -> dict[str, Any]:
        """Apply validated changes to the risk and engine settings; all or nothing."""
        unknown = set(changes) - CONFIG_FIELDS
        if unknown:
            raise ValueError(f"unknown config fields: {sorted(unknown)}")

        risk_changes = {k: v for k, v in changes.items() if k in _RISK_FIELDS}
        engine_changes = {k: v for k, v in changes.items() if k in _ENGINE_FIELDS}
        # pydantic's ValidationError is a ValueError
        risk = RiskConfig(**{**self.config.risk.model_dump(), **risk_changes})
        engine = EngineConfig(**{**self.config.engine.model_dump(), **engine_changes})

        self.config = self.config.model_copy(update={"risk": risk, "engine": engine})
        log.info("engine.config_updated", **changes)
        return self.trading_config()

    def update_weights(self, technical: float, news: float, order_flow: float) -> dict[str, float]:
        weights = StrategyWeights(technical=technical, news=news, order_flow=order_flow)
        strategy = self.config.strategy.model_copy(update={"weights": weights})
        self.config = self.config.model_copy(update={"strategy": strategy})
        log.info("engine.weights_updated", **weights.as_dict())
        return weights.as_dict()

    def clear_records(self) -> None:
        """Wipe trades and snapshots. Traded pairs stay blocked for this engine's lifetime."""
        self.db.clear_all_records()
        self.bus.publish(EventTypes.RECORDS_CLEARED, {"timestamp": _now_iso()})
        self.bus.publish(EventTypes.STATS_UPDATED, self.db.get_stats(self.mode).model_dump())
        self._publish_status()

    # ── Reads ────────────────────────────────────────────────────────

    def trading_config(self) -> dict[str, Any]:
        risk = self.config.risk
        return {
            "trade_amount": risk.trade_amount,
            "bankroll": risk.bankroll,
            "max_exposure": risk.max_exposure,
            "odds_min": risk.odds_min,
            "odds_max": risk.odds_max,
            "max_risk_reward": risk.max_risk_reward,
            "trade_window_secs": self.config.engine.trade_window_secs,
            "weights": self.config.strategy.weights.as_dict(),
        }

    def get_status(self) -> dict[str, Any]:
        status = self.db.get_status()
        return {
            "state": self.state,
            "is_running": self._running,
            "mode": status.mode,
            "last_heartbeat": status.last_heartbeat,
            "total_trades": status.total_trades,
            "total_pnl": status.total_pnl,
            "markets": len(self._markets),
            "traded_pairs": len(self._traded),
            "live_trading_enabled": is_live_trading_enabled(),
            "config": self.trading_config(),
        }

    def _publish_status(self) -> None:
        self.bus.publish(EventTypes.STATUS, self.get_status())
