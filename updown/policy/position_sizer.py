"""Capped half-Kelly stake for one trade decision.

  - Aligned edge: composite score signed toward the chosen outcome
  - Estimated win probability: market price + aligned edge, clamped
  - Full Kelly for a binary token bought at ``price``:
        odds = 1 / price, f* = (p * (odds - 1) - (1 - p)) / (odds - 1)
  - Half Kelly, capped at ``kelly_cap`` of bankroll
  - Dollar amount clamped to [min_trade_usd, max_trade_multiplier * base]
"""

from __future__ import annotations

from dataclasses import dataclass

from updown.config import RiskConfig
from updown.observability.logger import get_logger

log = get_logger(__name__)

_EPS = 1e-9


@dataclass
class PositionSize:
    """``amount`` is None when the sizer declines the trade; ``reason`` says why."""
    amount: float | None
    reason: str = ""
    aligned_edge: float = 0.0
    estimated_prob: float = 0.0
    kelly_fraction: float = 0.0
    size_fraction: float = 0.0

    @property
    def is_trade(self) -> bool:
        return self.amount is not None and self.amount > 0


def _reject(reason: str, **extra: float) -> PositionSize:
    return PositionSize(amount=None, reason=reason, **extra)


def calculate_position_size(
    outcome: str,
    composite_score: float,
    price: float,
    bankroll: float,
    base_amount: float,
    risk_config: RiskConfig | None = None,
) -> PositionSize:
    """Size a BUY of ``outcome`` at ``price``. Never returns a positive amount without edge."""
    cfg = risk_config or RiskConfig()

    if not 0 < price < 1:
        return _reject(f"price {price:.4f} outside (0, 1)")

    direction = 1.0 if outcome == "YES" else -1.0
    aligned_edge = composite_score * direction
    if aligned_edge <= 0:
        return _reject(
            f"signal misaligned: score={composite_score:.3f} for {outcome}",
            aligned_edge=aligned_edge,
        )

    p = min(cfg.prob_ceiling, max(cfg.prob_floor, price + aligned_edge))
    net_odds = 1 / price - 1
    if abs(net_odds) < _EPS:
        return _reject("degenerate odds", aligned_edge=aligned_edge, estimated_prob=p)

    kelly = (p * net_odds - (1 - p)) / net_odds
    if kelly <= 0:
        return _reject(
            f"kelly shows no edge (fraction={kelly:.4f})",
            aligned_edge=aligned_edge, estimated_prob=p, kelly_fraction=kelly,
        )

    size_fraction = min(cfg.kelly_cap, max(0.0, kelly / 2))
    max_trade = base_amount * cfg.max_trade_multiplier
    amount = min(max_trade, max(cfg.min_trade_usd, size_fraction * bankroll))

    log.info(
        "position_sizer.sized",
        outcome=outcome,
        price=round(price, 4),
        edge=round(aligned_edge, 4),
        prob=round(p, 4),
        kelly=round(kelly, 4),
        fraction=round(size_fraction, 4),
        amount=round(amount, 2),
    )
    return PositionSize(
        amount=amount,
        aligned_edge=aligned_edge,
        estimated_prob=p,
        kelly_fraction=kelly,
        size_fraction=size_fraction,
    )
