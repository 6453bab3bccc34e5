"""The engine's single view of Polymarket.

Wraps the Gamma client (discovery, resolution), the CLOB client (prices,
order books) and the live executor (signed orders).
"""

from __future__ import annotations

import datetime as dt

from updown.config import BotConfig
from updown.connectors.polymarket_clob import CLOBClient, PriceQuote
from updown.connectors.polymarket_gamma import GammaClient, Market, resolve_winner
from updown.execution.order_router import LiveExecutor, OrderResult
from updown.observability.logger import get_logger

log = get_logger(__name__)


def seconds_until(end_date: dt.datetime, now: dt.datetime | None = None) -> float:
    now = now or dt.datetime.now(dt.timezone.utc)
    if end_date.tzinfo is None:
        end_date = end_date.replace(tzinfo=dt.timezone.utc)
    return (end_date - now).total_seconds()


def is_within_trading_window(
    end_date: dt.datetime | None,
    window_secs: float,
    buffer_secs: float,
    now: dt.datetime | None = None,
) -> bool:
    """True when the time left is in ``(buffer_secs, window_secs]``."""
    if end_date is None:
        return False
    remaining = seconds_until(end_date, now)
    return buffer_secs < remaining <= window_secs


class MarketAPI:
    def __init__(
        self,
        config: BotConfig,
        gamma: GammaClient | None = None,
        clob: CLOBClient | None = None,
    ):
        self._config = config
        scanning = config.scanning
        self.gamma = gamma or GammaClient(scanning.gamma_url, timeout=scanning.http_timeout_secs)
        self.clob = clob or CLOBClient(
            scanning.clob_url,
            timeout=scanning.http_timeout_secs,
            chain_id=config.execution.chain_id,
            signature_type=config.execution.signature_type,
        )
        self._live = LiveExecutor(self.clob, config.execution)

    async def close(self) -> None:
        await self.gamma.close()
        await self.clob.close()

    async def list_tradable_markets(self) -> list[Market]:
        scanning = self._config.scanning
        markets = await self.gamma.list_updown_markets(scanning.event_tag, scanning.coins)
        return [m for m in markets if m.has_tokens and m.end_date is not None]

    async def get_prices(self, market: Market) -> PriceQuote:
        return await self.clob.get_prices(market)

    def is_within_trading_window(
        self, end_date: dt.datetime | None, window_secs: float, buffer_secs: float,
    ) -> bool:
        return is_within_trading_window(end_date, window_secs, buffer_secs)

    async def get_resolution(self, slug: str) -> str | None:
        raw = await self.gamma.get_market_by_slug(slug)
        return resolve_winner(raw, self._config.scanning.resolution_price_threshold)

    async def submit_order(self, token_id: str, price: float, size: float) -> OrderResult:
        return await self._live.execute(token_id, price, size)
