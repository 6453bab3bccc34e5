"""Keyword news sentiment blended with the Fear & Greed index."""

from __future__ import annotations

import asyncio

from updown.connectors.news import Article, FearGreed, NewsClient
from updown.observability.logger import get_logger
from updown.signals.models import SignalResult, clamp

log = get_logger(__name__)

POSITIVE_WORDS = (
    "surge", "rally", "bullish", "pump", "soar", "breakout", "all-time high",
    "gain", "jump", "rise", "record", "adoption", "approval", "etf approved",
    "upgrade", "partnership", "institutional", "accumulate", "strong", "boom",
)

NEGATIVE_WORDS = (
    "crash", "dump", "bearish", "plunge", "drop", "fall", "decline", "sell-off",
    "hack", "exploit", "lawsuit", "ban", "regulation", "fear", "panic",
    "liquidation", "bankruptcy", "fraud", "scam", "collapse", "correction",
)

COIN_SEARCH_NAMES = {
    "btc": "bitcoin",
    "eth": "ethereum",
    "sol": "solana",
    "xrp": "ripple",
}

NEWS_WEIGHT = 0.7
FEAR_GREED_WEIGHT = 0.3
# Keyword tallies rarely exceed ±5 per article
_NEWS_NORMALIZER = 5.0


def keyword_score(text: str) -> int:
    lower = (text or "").lower()
    return (
        sum(1 for w in POSITIVE_WORDS if w in lower)
        - sum(1 for w in NEGATIVE_WORDS if w in lower)
    )


def news_score(articles: list[Article], max_articles: int = 20) -> float:
    """Recency-weighted average keyword score, normalized to [-1, 1].

    The newest article weighs 1.0, falling linearly toward 0.5.
    """
    window = articles[:max_articles]
    if not window:
        return 0.0
    n = len(window)
    total = sum(
        keyword_score(a.text) * (1 - (i / n) * 0.5)
        for i, a in enumerate(window)
    )
    return clamp(total / n / _NEWS_NORMALIZER)


def fear_greed_score(value: int) -> float:
    if value <= 25:
        return -1.0
    if value <= 45:
        return -0.5
    if value <= 55:
        return 0.0
    if value <= 75:
        return 0.5
    return 1.0


class NewsSentimentSignal:
    name = "news"

    def __init__(self, client: NewsClient, max_articles: int = 20):
        self._client = client
        self._max_articles = max_articles

    async def _articles(self, query: str) -> list[Article]:
        try:
            return await self._client.search(query)
        except Exception as e:
            log.warning("news.search_failed", query=query, error=str(e))
            return []

    async def _fear_greed(self) -> FearGreed:
        try:
            return await self._client.get_fear_greed()
        except Exception as e:
            log.warning("news.fear_greed_failed", error=str(e))
            return FearGreed()

    async def analyze(self, coin: str) -> SignalResult:
        """Either source failing degrades to neutral rather than failing the signal."""
        query = COIN_SEARCH_NAMES.get((coin or "").lower(), "bitcoin")
        articles, fear_greed = await asyncio.gather(self._articles(query), self._fear_greed())

        news = news_score(articles, self._max_articles)
        fg = fear_greed_score(fear_greed.value)
        score = clamp(news * NEWS_WEIGHT + fg * FEAR_GREED_WEIGHT)

        return SignalResult(
            score=score,
            details={
                "coin": query,
                "news_count": min(len(articles), self._max_articles),
                "news_sentiment": round(news, 4),
                "fear_greed_index": fear_greed.value,
                "fear_greed_label": fear_greed.classification,
                "recent_headlines": [a.title for a in articles[:5]],
            },
        )
