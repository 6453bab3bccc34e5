"""Pre-sizing trade guards.

Each guard returns ``(ok, reason)``; ``reason`` is empty when the trade passes.
"""

from __future__ import annotations


def check_odds_range(price: float, odds_min: float, odds_max: float) -> tuple[bool, str]:
    """Reject token prices outside [odds_min, odds_max]."""
    if price < odds_min or price > odds_max:
        return False, f"price {price:.4f} outside odds range [{odds_min:.2f}-{odds_max:.2f}]"
    return True, ""


def risk_reward_ratio(price: float) -> float:
    """Loss per dollar risked over gain per dollar won for a token at ``price``."""
    if price >= 1:
        return float("inf")
    return price / (1 - price)


def check_risk_reward(price: float, max_ratio: float) -> tuple[bool, str]:
    ratio = risk_reward_ratio(price)
    if ratio > max_ratio:
        return False, f"risk/reward {ratio:.1f}:1 exceeds max {max_ratio:g}:1"
    return True, ""
