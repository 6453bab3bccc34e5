"""Order-book flow signal from the YES and NO token books.

Bullish pressure on YES (or bearish on NO) pushes the score up. Confidence
reflects liquidity: the tighter the average spread across both books, the
more the read can be trusted.
"""

from __future__ import annotations

import asyncio
from typing import Any

from updown.connectors.polymarket_clob import CLOBClient, OrderBook
from updown.observability.logger import get_logger
from updown.signals.models import SignalResult, clamp

log = get_logger(__name__)

IMBALANCE_WEIGHT = 0.40
LARGE_ORDER_WEIGHT = 0.35
DEPTH_WEIGHT = 0.25

LARGE_ORDER_MULT = 3.0
DEPTH_LEVELS = 5

# (max average spread pct, confidence), checked in order
_SPREAD_CONFIDENCE = ((0.02, 1.0), (0.05, 0.7), (0.10, 0.4))
_ILLIQUID_CONFIDENCE = 0.2
_LIQUID_SPREAD_PCT = 0.05


def imbalance(book: OrderBook) -> float:
    bids, asks = book.bid_size(), book.ask_size()
    total = bids + asks
    return (bids - asks) / total if total > 0 else 0.0


def large_order_score(book: OrderBook, mult: float = LARGE_ORDER_MULT) -> dict[str, Any]:
    """Count resting orders larger than ``mult`` times the average size."""
    sizes = [lvl.size for lvl in book.bids] + [lvl.size for lvl in book.asks]
    if not sizes:
        return {"large_buys": 0, "large_sells": 0, "score": 0.0}
    threshold = sum(sizes) / len(sizes) * mult
    large_buys = sum(1 for b in book.bids if b.size > threshold)
    large_sells = sum(1 for a in book.asks if a.size > threshold)
    return {
        "large_buys": large_buys,
        "large_sells": large_sells,
        "score": (large_buys - large_sells) / (large_buys + large_sells + 1),
    }


def depth_ratio(book: OrderBook, levels: int = DEPTH_LEVELS) -> float:
    bids, asks = book.bid_size(levels), book.ask_size(levels)
    total = bids + asks
    return (bids - asks) / total if total > 0 else 0.0


def spread_confidence(avg_spread_pct: float) -> float:
    for ceiling, confidence in _SPREAD_CONFIDENCE:
        if avg_spread_pct < ceiling:
            return confidence
    return _ILLIQUID_CONFIDENCE


def score_books(yes_book: OrderBook, no_book: OrderBook) -> SignalResult:
    yes_large = large_order_score(yes_book)
    no_large = large_order_score(no_book)

    imbalance_score = (imbalance(yes_book) - imbalance(no_book)) / 2
    large_score = (yes_large["score"] - no_large["score"]) / 2
    depth_score = (depth_ratio(yes_book) - depth_ratio(no_book)) / 2

    score = (
        imbalance_score * IMBALANCE_WEIGHT
        + large_score * LARGE_ORDER_WEIGHT
        + depth_score * DEPTH_WEIGHT
    )
    avg_spread_pct = (yes_book.spread_pct + no_book.spread_pct) / 2

    return SignalResult(
        score=clamp(score),
        confidence=spread_confidence(avg_spread_pct),
        details={
            "imbalance": round(imbalance_score, 4),
            "large_orders": round(large_score, 4),
            "depth": round(depth_score, 4),
            "yes_large_orders": yes_large,
            "no_large_orders": no_large,
            "avg_spread_pct": round(avg_spread_pct, 4),
            "is_liquid": (
                yes_book.spread_pct < _LIQUID_SPREAD_PCT
                and no_book.spread_pct < _LIQUID_SPREAD_PCT
            ),
        },
    )


class OrderFlowSignal:
    name = "order_flow"

    def __init__(self, client: CLOBClient):
        self._client = client

    async def analyze(self, yes_token: str, no_token: str) -> SignalResult:
        if not yes_token or not no_token:
            return SignalResult.failed("missing token ids for order flow analysis")
        yes_book, no_book = await asyncio.gather(
            self._client.get_orderbook(yes_token),
            self._client.get_orderbook(no_token),
        )
        result = score_books(yes_book, no_book)
        log.debug(
            "order_flow.scored",
            score=round(result.score, 3),
            confidence=result.confidence,
        )
        return result
