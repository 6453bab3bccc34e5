"""Polymarket CLOB (Central-Limit Order Book) connector.

Handles:
  - Fetching orderbooks and midpoints for outcome tokens
  - YES/NO price quotes for a market
  - Signed Fill-Or-Kill order placement via py-clob-client
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from updown.connectors.polymarket_gamma import Market
from updown.observability.logger import get_logger

log = get_logger(__name__)

CLOB_BASE = "https://clob.polymarket.com"


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class OrderBookLevel:
    price: float
    size: float


@dataclass
class OrderBook:
    """Snapshot of an order book for one token."""
    token_id: str
    bids: list[OrderBookLevel] = field(default_factory=list)
    asks: list[OrderBookLevel] = field(default_factory=list)

    @property
    def best_bid(self) -> float:
        return self.bids[0].price if self.bids else 0.0

    @property
    def best_ask(self) -> float:
        return self.asks[0].price if self.asks else 0.0

    @property
    def spread(self) -> float:
        return self.best_ask - self.best_bid

    @property
    def spread_pct(self) -> float:
        """Spread relative to mid; 1.0 when either side of the book is empty."""
        if self.best_bid <= 0 or self.best_ask <= 0:
            return 1.0
        mid = (self.best_bid + self.best_ask) / 2
        return self.spread / mid

    def bid_size(self, levels: int | None = None) -> float:
        return sum(b.size for b in self.bids[:levels])

    def ask_size(self, levels: int | None = None) -> float:
        return sum(a.size for a in self.asks[:levels])


@dataclass
class PriceQuote:
    """Midpoint prices for both outcomes of a market. 0.0 means unavailable."""
    yes_price: float = 0.0
    no_price: float = 0.0
    yes_token: str = ""
    no_token: str = ""

    @property
    def is_complete(self) -> bool:
        return self.yes_price > 0 and self.no_price > 0

    def price_for(self, outcome: str) -> float:
        return self.yes_price if outcome == "YES" else self.no_price

    def token_for(self, outcome: str) -> str:
        return self.yes_token if outcome == "YES" else self.no_token

    def to_dict(self) -> dict[str, Any]:
        return {
            "yes_price": self.yes_price,
            "no_price": self.no_price,
            "yes_token": self.yes_token,
            "no_token": self.no_token,
        }


# ── Client ───────────────────────────────────────────────────────────

class CLOBClient:
    """Async client for the Polymarket CLOB REST API."""

    def __init__(
        self,
        base_url: str = CLOB_BASE,
        timeout: float = 10.0,
        chain_id: int = 137,
        signature_type: int = 0,
    ):
        self._base = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
        self._chain_id = chain_id
        self._signature_type = signature_type
        self._signing_client: Any = None

    async def close(self) -> None:
        await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_orderbook(self, token_id: str) -> OrderBook:
        data = await self._get("/book", params={"token_id": token_id})
        return parse_orderbook(token_id, data or {})

    async def get_midpoint(self, token_id: str) -> float:
        data = await self._get("/midpoint", params={"token_id": token_id})
        return float((data or {}).get("mid", 0) or 0)

    async def get_prices(self, market: Market) -> PriceQuote:
        """YES/NO midpoints; a failed midpoint lookup yields price 0.0."""
        if not market.has_tokens:
            return PriceQuote()

        async def _mid(token_id: str) -> float:
            try:
                return await self.get_midpoint(token_id)
            except Exception as e:
                log.warning("clob.midpoint_failed", token_id=token_id[:16], error=str(e))
                return 0.0

        yes_price, no_price = await asyncio.gather(
            _mid(market.up_token_id), _mid(market.down_token_id),
        )
        return PriceQuote(
            yes_price=yes_price,
            no_price=no_price,
            yes_token=market.up_token_id,
            no_token=market.down_token_id,
        )

    # ── Signed orders ────────────────────────────────────────────────

    def _ensure_signing_client(self) -> Any:
        """Lazy-load the py-clob-client and derive API credentials."""
        if self._signing_client is not None:
            return self._signing_client

        from py_clob_client.client import ClobClient  # type: ignore[import-untyped]

        private_key = os.environ.get("WALLET_PRIVATE_KEY", "")
        if not private_key:
            raise RuntimeError("WALLET_PRIVATE_KEY environment variable is not set")
        funder = os.environ.get("POLYMARKET_FUNDER_ADDRESS") or None

        # Never log the private key
        log.info(
            "clob.init_signing_client",
            chain_id=self._chain_id,
            signature_type=self._signature_type,
            funder=bool(funder),
        )
        client = ClobClient(
            host=self._base,
            key=private_key,
            chain_id=self._chain_id,
            signature_type=self._signature_type,
            funder=funder,
        )
        client.set_api_creds(client.create_or_derive_api_creds())
        self._signing_client = client
        return client

    def post_fok_buy(
        self,
        token_id: str,
        price: float,
        size: float,
        tick_size: str = "0.01",
        neg_risk: bool = False,
    ) -> dict[str, Any]:
        """Sign and post a Fill-Or-Kill BUY. Blocking; run it in a worker thread."""
        from py_clob_client.clob_types import (  # type: ignore[import-untyped]
            OrderArgs,
            OrderType,
            PartialCreateOrderOptions,
        )
        from py_clob_client.order_builder.constants import BUY  # type: ignore[import-untyped]

        client = self._ensure_signing_client()
        signed = client.create_order(
            OrderArgs(token_id=token_id, price=price, size=size, side=BUY),
            PartialCreateOrderOptions(tick_size=tick_size, neg_risk=neg_risk),
        )
        resp = client.post_order(signed, OrderType.FOK)
        return resp if isinstance(resp, dict) else {"raw": str(resp)}


# ── Parsing helpers ──────────────────────────────────────────────────

def parse_orderbook(token_id: str, data: dict[str, Any]) -> OrderBook:
    """Parse raw CLOB orderbook JSON into an OrderBook."""
    bids = [
        OrderBookLevel(price=float(b.get("price", 0)), size=float(b.get("size", 0)))
        for b in data.get("bids") or []
    ]
    asks = [
        OrderBookLevel(price=float(a.get("price", 0)), size=float(a.get("size", 0)))
        for a in data.get("asks") or []
    ]

    # Sort: bids descending, asks ascending
    bids.sort(key=lambda x: x.price, reverse=True)
    asks.sort(key=lambda x: x.price)

    return OrderBook(token_id=token_id, bids=bids, asks=asks)
