"""Polymarket Gamma (REST) API connector.

Gamma is Polymarket's public market-listing API. We use it to discover the
short-lived "<Coin> Up or Down - 15 minutes" markets and to look a market
up by slug when settling paper trades.

Gamma responses come in two shapes: structured ``tokens`` arrays, or the
``outcomes`` / ``outcomePrices`` / ``clobTokenIds`` fields encoded as JSON
strings. Both are normalized into :class:`Market` here so nothing past this
module has to care.
"""

from __future__ import annotations

import datetime as dt
import json
import re
from typing import Any

import httpx
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from updown.observability.logger import get_logger

log = get_logger(__name__)

GAMMA_BASE = "https://gamma-api.polymarket.com"

_COIN_ALIASES: dict[str, str] = {
    "btc": "btc", "bitcoin": "btc",
    "eth": "eth", "ethereum": "eth",
    "sol": "sol", "solana": "sol",
    "xrp": "xrp", "ripple": "xrp",
}

_FIFTEEN_MIN_RE = re.compile(r"15\s*(m\b|min|-minute)|15m", re.IGNORECASE)

_UP_LABELS = {"up", "yes"}
_DOWN_LABELS = {"down", "no"}


# ── Data Models ──────────────────────────────────────────────────────

class Market(BaseModel):
    """A binary Up/Down market. ``up`` maps to outcome YES, ``down`` to NO."""
    id: str
    question: str = ""
    coin: str = ""
    slug: str = ""
    end_date: dt.datetime | None = None
    up_token_id: str = ""
    down_token_id: str = ""
    active: bool = True
    closed: bool = False
    volume: float = 0.0
    liquidity: float = 0.0

    @property
    def has_tokens(self) -> bool:
        return bool(self.up_token_id and self.down_token_id)

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump()
        data["end_date"] = self.end_date.isoformat() if self.end_date else None
        return data


# ── Parsing ──────────────────────────────────────────────────────────

def _parse_json_str(val: Any) -> list[Any]:
    """Parse a JSON-encoded string or return as-is if already a list."""
    if isinstance(val, list):
        return val
    if isinstance(val, str):
        try:
            parsed = json.loads(val)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, TypeError):
            pass
    return []


def parse_datetime(val: Any) -> dt.datetime | None:
    if val in (None, ""):
        return None
    if isinstance(val, (int, float)):
        # epoch seconds or milliseconds
        ts = float(val) / 1000 if val > 1e11 else float(val)
        return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc)
    try:
        parsed = dt.datetime.fromisoformat(str(val).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _to_float(val: Any) -> float:
    try:
        return float(val or 0)
    except (TypeError, ValueError):
        return 0.0


def extract_coin(*texts: str) -> str:
    """Return the coin symbol mentioned in a slug or question, or ''."""
    for text in texts:
        for word in re.split(r"[^a-z0-9]+", (text or "").lower()):
            if word in _COIN_ALIASES:
                return _COIN_ALIASES[word]
    return ""


def is_fifteen_minute(question: str, slug: str = "") -> bool:
    return bool(_FIFTEEN_MIN_RE.search(question or "") or _FIFTEEN_MIN_RE.search(slug or ""))


def _outcome_tokens(raw: dict[str, Any]) -> list[tuple[str, str, float]]:
    """(label, token_id, price) per outcome, in listing order."""
    raw_tokens = raw.get("tokens", [])
    if isinstance(raw_tokens, list) and raw_tokens and isinstance(raw_tokens[0], dict):
        return [
            (
                str(tok.get("outcome", tok.get("value", ""))),
                str(tok.get("token_id", tok.get("id", ""))),
                _to_float(tok.get("price")),
            )
            for tok in raw_tokens
        ]

    outcomes = _parse_json_str(raw.get("outcomes", []))
    prices = _parse_json_str(raw.get("outcomePrices", []))
    clob_ids = _parse_json_str(raw.get("clobTokenIds", []))
    count = max(len(outcomes), len(clob_ids))
    return [
        (
            str(outcomes[i]) if i < len(outcomes) else "",
            str(clob_ids[i]) if i < len(clob_ids) else "",
            _to_float(prices[i]) if i < len(prices) else 0.0,
        )
        for i in range(count)
    ]


def _split_up_down(tokens: list[tuple[str, str, float]]) -> tuple[str, str]:
    up = down = ""
    for label, token_id, _ in tokens:
        lowered = label.strip().lower()
        if lowered in _UP_LABELS and not up:
            up = token_id
        elif lowered in _DOWN_LABELS and not down:
            down = token_id
    # Unlabeled markets list the Up/Yes token first
    if not up and len(tokens) >= 1:
        up = tokens[0][1]
    if not down and len(tokens) >= 2:
        down = tokens[1][1]
    return up, down


def parse_market(raw: dict[str, Any], event: dict[str, Any] | None = None) -> Market:
    """Convert a raw Gamma market blob (optionally with its parent event) into a Market."""
    event = event or {}
    question = raw.get("question") or raw.get("title") or event.get("title", "")
    slug = raw.get("slug") or event.get("slug", "")
    up, down = _split_up_down(_outcome_tokens(raw))

    end_raw = (
        raw.get("end_date_iso") or raw.get("endDate") or raw.get("end_date")
        or event.get("end_date_iso") or event.get("endDate")
    )

    return Market(
        id=str(raw.get("condition_id") or raw.get("conditionId") or raw.get("id", "")),
        question=question,
        coin=extract_coin(slug, question),
        slug=slug,
        end_date=parse_datetime(end_raw),
        up_token_id=up,
        down_token_id=down,
        active=raw.get("active") is not False,
        closed=bool(raw.get("closed", False)),
        volume=_to_float(raw.get("volume", raw.get("volumeNum"))),
        liquidity=_to_float(raw.get("liquidity", raw.get("liquidityNum"))),
    )


def resolve_winner(raw: dict[str, Any] | list[Any] | None, threshold: float = 0.95) -> str | None:
    """Winning outcome (``YES``/``NO``) of a Gamma market payload, or None if unresolved.

    Outcome prices settle to [1, 0] or [0, 1], so a price at or above
    ``threshold`` decides first. Closed or resolved markets may instead
    carry an explicit ``winning_side`` / ``resolution`` field.
    """
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if not raw:
        return None

    prices = _parse_json_str(raw.get("outcomePrices", []))
    if len(prices) >= 2:
        if _to_float(prices[0]) >= threshold:
            return "YES"
        if _to_float(prices[1]) >= threshold:
            return "NO"

    if raw.get("closed") or raw.get("resolved"):
        for key in ("winning_side", "resolution"):
            value = str(raw.get(key) or "").strip().lower()
            if value in _UP_LABELS:
                return "YES"
            if value in _DOWN_LABELS:
                return "NO"
    return None


# ── Client ───────────────────────────────────────────────────────────

class GammaClient:
    """Async client for the Polymarket Gamma API."""

    def __init__(self, base_url: str = GAMMA_BASE, timeout: float = 10.0):
        self._base = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base,
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

    async def list_events(self, tag: str = "crypto") -> list[dict[str, Any]]:
        data = await self._get(
            "/events", params={"tag": tag, "active": "true", "closed": "false"},
        )
        if isinstance(data, dict):
            data = data.get("data", data.get("events", []))
        return data if isinstance(data, list) else []

    async def list_updown_markets(
        self, tag: str = "crypto", coins: list[str] | tuple[str, ...] | None = None,
    ) -> list[Market]:
        """Active 15-minute Up/Down markets for the given coins."""
        events = await self.list_events(tag)
        markets: list[Market] = []
        for event in events:
            for raw in event.get("markets") or []:
                if not isinstance(raw, dict):
                    continue
                market = parse_market(raw, event)
                if not is_fifteen_minute(market.question, market.slug):
                    continue
                if not market.coin or (coins and market.coin not in coins):
                    continue
                if not market.active or market.closed:
                    continue
                markets.append(market)
        log.info("gamma.list_updown_markets", events=len(events), count=len(markets))
        return markets

    async def get_market_by_slug(self, slug: str) -> dict[str, Any] | None:
        """Raw market payload for ``slug``; Gamma answers with a list or an object."""
        data = await self._get("/markets", params={"slug": slug})
        if isinstance(data, list):
            return data[0] if data else None
        return data or None
