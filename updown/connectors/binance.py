"""Binance public market-data connector (spot klines)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from updown.observability.logger import get_logger

log = get_logger(__name__)

BINANCE_BASE = "https://api.binance.com"

BINANCE_SYMBOLS: dict[str, str] = {
    "btc": "BTCUSDT",
    "eth": "ETHUSDT",
    "sol": "SOLUSDT",
    "xrp": "XRPUSDT",
}


@dataclass
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


def parse_kline(row: list[Any]) -> Candle:
    """Binance kline rows are positional: [open_time, o, h, l, c, v, ...]."""
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class BinanceClient:
    def __init__(self, base_url: str = BINANCE_BASE, timeout: float = 5.0):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_klines(self, symbol: str, interval: str = "1m", limit: int = 100) -> list[Candle]:
        data = await self._get(
            "/api/v3/klines",
            params={"symbol": symbol, "interval": interval, "limit": limit},
        )
        candles = [parse_kline(row) for row in data or []]
        log.debug("binance.klines", symbol=symbol, count=len(candles))
        return candles
