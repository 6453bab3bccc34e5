"""Crypto news search and the alternative.me Fear & Greed index."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from updown.observability.logger import get_logger

log = get_logger(__name__)

NEWS_SEARCH_URL = "https://free-crypto-news.vercel.app/api/search"
FEAR_GREED_URL = "https://api.alternative.me/fng/"


@dataclass
class Article:
    title: str = ""
    description: str = ""

    @property
    def text(self) -> str:
        return f"{self.title} {self.description}"


@dataclass
class FearGreed:
    value: int = 50
    classification: str = "Neutral"


class NewsClient:
    """Both endpoints are public and unauthenticated."""

    def __init__(
        self,
        news_url: str = NEWS_SEARCH_URL,
        fear_greed_url: str = FEAR_GREED_URL,
        timeout: float = 5.0,
    ):
        self._news_url = news_url
        self._fear_greed_url = fear_greed_url
        self._client = httpx.AsyncClient(timeout=timeout, headers={"Accept": "application/json"})

    async def close(self) -> None:
        await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def _get(self, url: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(url, params=params)
        resp.raise_for_status()
        return resp.json()

    async def search(self, query: str) -> list[Article]:
        """Newest-first articles matching ``query``."""
        data = await self._get(self._news_url, params={"q": query}) or {}
        return [
            Article(title=str(a.get("title") or ""), description=str(a.get("description") or ""))
            for a in data.get("articles") or []
            if isinstance(a, dict)
        ]

    async def get_fear_greed(self) -> FearGreed:
        data = await self._get(self._fear_greed_url) or {}
        rows = data.get("data") or []
        if not rows:
            return FearGreed()
        row = rows[0]
        try:
            value = int(row.get("value", 50))
        except (TypeError, ValueError):
            value = 50
        return FearGreed(value=value, classification=row.get("value_classification") or "Neutral")
