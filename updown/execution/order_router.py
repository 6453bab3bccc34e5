"""Order router: simulates paper orders or submits live FOK orders.

Paper orders always fill at the quoted price. Live orders go through the
py-clob-client signing client as Fill-Or-Kill BUYs and are refused unless
``ENABLE_LIVE_TRADING=true`` and the dollar amount is within
``max_live_trade_amount``. Neither path raises: failures come back as an
``OrderResult`` with ``success=False``.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import secrets
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from updown.config import ExecutionConfig, is_live_trading_enabled
from updown.connectors.polymarket_clob import CLOBClient
from updown.observability.logger import get_logger
from updown.observability.metrics import metrics

if TYPE_CHECKING:
    from updown.connectors.market_api import MarketAPI

log = get_logger(__name__)


@dataclass
class OrderResult:
    """Result of order submission."""
    success: bool
    order_id: str = ""
    status: str = "failed"  # "filled" | "failed"
    error: str = ""
    timestamp: str = field(
        default_factory=lambda: dt.datetime.now(dt.timezone.utc).isoformat()
    )
    raw_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, raw: dict[str, Any] | None = None) -> "OrderResult":
        return cls(success=False, status="failed", error=error, raw_response=raw or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "status": self.status,
            "error": self.error,
            "timestamp": self.timestamp,
        }


def paper_order_id() -> str:
    return f"PAPER_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class PaperExecutor:
    async def execute(self, token_id: str, price: float, size: float) -> OrderResult:
        order_id = paper_order_id()
        log.info(
            "order_router.paper_fill",
            order_id=order_id,
            token_id=token_id[:16],
            price=price,
            size=round(size, 4),
        )
        metrics.incr("orders.paper")
        return OrderResult(success=True, order_id=order_id, status="filled")


class LiveExecutor:
    """Signed FOK BUY orders against the CLOB."""

    def __init__(self, clob: CLOBClient, config: ExecutionConfig):
        self._clob = clob
        self._config = config
        self._first_order = True

    async def execute(self, token_id: str, price: float, size: float) -> OrderResult:
        if not is_live_trading_enabled():
            return OrderResult.failure("live trading disabled: set ENABLE_LIVE_TRADING=true")

        dollars = size * price
        cap = self._config.max_live_trade_amount
        if dollars > cap:
            return OrderResult.failure(
                f"trade amount ${dollars:.2f} exceeds max_live_trade_amount ${cap:.2f}"
            )

        if self._first_order:
            log.warning(
                "order_router.live_first_order",
                message="REAL MONEY AT RISK: submitting first live order",
                amount=round(dollars, 2),
            )
            self._first_order = False

        try:
            resp = await asyncio.to_thread(
                self._clob.post_fok_buy,
                token_id,
                price,
                size,
                self._config.tick_size,
                self._config.neg_risk,
            )
        except Exception as e:
            log.error("order_router.live_exception", token_id=token_id[:16], error=str(e))
            metrics.incr("orders.live_failed")
            return OrderResult.failure(str(e))

        if resp.get("success"):
            order_id = str(resp.get("orderID") or resp.get("orderId") or "")
            log.info("order_router.live_filled", order_id=order_id, amount=round(dollars, 2))
            metrics.incr("orders.live_filled")
            return OrderResult(success=True, order_id=order_id, status="filled", raw_response=resp)

        error = str(resp.get("errorMsg") or "unknown CLOB error")
        log.error("order_router.live_rejected", error=error)
        metrics.incr("orders.live_failed")
        return OrderResult.failure(error, raw=resp)


class OrderRouter:
    """Dispatch to paper simulation or the market API's live submission by mode."""

    def __init__(self, market_api: MarketAPI, paper: PaperExecutor | None = None):
        self._api = market_api
        self._paper = paper or PaperExecutor()

    async def submit(self, mode: str, token_id: str, price: float, amount: float) -> OrderResult:
        if price <= 0:
            return OrderResult.failure(f"invalid price {price}")
        size = amount / price
        if mode == "live":
            return await self._api.submit_order(token_id, price, size)
        return await self._paper.execute(token_id, price, size)
