"""Settlement of expired paper trades.

A paper trade is settled once its market's end date has passed and Gamma
reports a winner. Shares pay $1 each on a win, so PnL is
``shares - amount`` for a winning trade and ``-amount`` for a losing one.
Unresolved markets are simply retried on the next cycle.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field

from updown.connectors.market_api import MarketAPI
from updown.connectors.polymarket_gamma import parse_datetime
from updown.engine.events import EventBus, EventTypes
from updown.observability.logger import get_logger
from updown.observability.metrics import metrics
from updown.storage.database import Database
from updown.storage.models import TradeRecord

log = get_logger(__name__)


def settlement_pnl(trade: TradeRecord, winner: str) -> float:
    if trade.outcome == winner:
        return trade.shares - trade.amount
    return -trade.amount


@dataclass
class SettlementReport:
    checked: int = 0
    settled: list[str] = field(default_factory=list)
    pending: int = 0
    skipped: int = 0
    errors: int = 0


class SettlementChecker:
    def __init__(self, db: Database, market_api: MarketAPI, bus: EventBus):
        self._db = db
        self._api = market_api
        self._bus = bus

    async def run(self, now: dt.datetime | None = None) -> SettlementReport:
        now = now or dt.datetime.now(dt.timezone.utc)
        report = SettlementReport()
        trades = self._db.get_unsettled_paper_trades()
        if not trades:
            return report

        log.info("settlement.checking", count=len(trades))
        for trade in trades:
            report.checked += 1
            try:
                outcome = await self._settle_one(trade, now)
            except Exception as e:
                report.errors += 1
                log.error("settlement.trade_failed", trade_id=trade.id, error=str(e))
                continue
            if outcome == "settled":
                report.settled.append(trade.id)
            elif outcome == "pending":
                report.pending += 1
            else:
                report.skipped += 1

        if report.settled:
            self._bus.publish(
                EventTypes.STATS_UPDATED,
                self._db.get_stats(self._db.get_status().mode).model_dump(),
            )
        return report

    async def _settle_one(self, trade: TradeRecord, now: dt.datetime) -> str:
        end_date = parse_datetime(trade.settle_end_date)
        if end_date is None or not trade.settle_slug:
            log.warning("settlement.missing_info", trade_id=trade.id)
            return "skipped"
        if now <= end_date:
            return "pending"

        winner = await self._api.get_resolution(trade.settle_slug)
        if winner is None:
            log.info("settlement.unresolved", trade_id=trade.id, slug=trade.settle_slug)
            return "pending"

        pnl = settlement_pnl(trade, winner)
        self._db.update_trade(
            trade.id,
            status="settled",
            pnl=pnl,
            winner=winner,
            settled_at=now.isoformat(),
        )
        self._db.refresh_status_totals(self._db.get_status().mode)
        metrics.incr("trades.settled")
        metrics.incr("trades.settled_pnl", pnl)

        log.info(
            "settlement.settled",
            trade_id=trade.id,
            outcome=trade.outcome,
            winner=winner,
            pnl=round(pnl, 4),
        )
        settled = self._db.get_trade(trade.id)
        self._bus.publish(EventTypes.TRADE_SETTLED, settled.model_dump() if settled else {"id": trade.id})
        return "settled"
