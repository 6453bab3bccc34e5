"""Tests for policy: guards, position sizing and budget allocation."""

from __future__ import annotations

import pytest

from updown.config import RiskConfig
from updown.connectors.polymarket_clob import PriceQuote
from updown.policy.allocator import BUDGET_EXHAUSTED, TradeCandidate, allocate_budget
from updown.policy.guards import check_odds_range, check_risk_reward, risk_reward_ratio
from updown.policy.position_sizer import calculate_position_size

from factories import make_analysis, make_market


# ─── helpers ────────────────────────────────────────────────────────────

def _candidate(
    market_id: str,
    amount: float,
    score: float = 0.6,
    confidence: float = 0.8,
    outcome: str = "YES",
) -> TradeCandidate:
    market = make_market(market_id)
    return TradeCandidate(
        market=market,
        analysis=make_analysis(score=score, confidence=confidence, outcome=outcome),
        quote=PriceQuote(0.6, 0.4, market.up_token_id, market.down_token_id),
        outcome=outcome,
        price=0.6,
        token_id=market.up_token_id,
        kelly_amount=amount,
    )


# ─── guards ─────────────────────────────────────────────────────────────

class TestGuards:
    def test_odds_inside_band(self) -> None:
        ok, reason = check_odds_range(0.5, 0.30, 0.75)
        assert ok and reason == ""

    def test_odds_band_inclusive(self) -> None:
        assert check_odds_range(0.30, 0.30, 0.75)[0]
        assert check_odds_range(0.75, 0.30, 0.75)[0]

    def test_odds_outside_band(self) -> None:
        ok, reason = check_odds_range(0.8, 0.30, 0.75)
        assert not ok
        assert "outside odds range" in reason

    def test_risk_reward_ratio(self) -> None:
        assert risk_reward_ratio(0.6) == pytest.approx(1.5)
        assert risk_reward_ratio(1.0) == float("inf")

    def test_risk_reward_rejects_expensive_token(self) -> None:
        ok, reason = check_risk_reward(0.9, 5.0)
        assert not ok
        assert "risk/reward" in reason

    def test_risk_reward_accepts_cheap_token(self) -> None:
        assert check_risk_reward(0.6, 5.0) == (True, "")


# ─── position sizing ────────────────────────────────────────────────────

class TestPositionSizer:
    def test_half_kelly_capped_then_clamped_to_twice_base(self) -> None:
        size = calculate_position_size("YES", 0.5, 0.60, bankroll=100, base_amount=10)
        assert size.aligned_edge == pytest.approx(0.5)
        assert size.estimated_prob == pytest.approx(0.95)
        assert size.kelly_fraction == pytest.approx(0.875, abs=1e-3)
        assert size.size_fraction == pytest.approx(0.25)
        assert size.amount == pytest.approx(20.0)
        assert size.is_trade

    def test_no_outcome_uses_negated_score(self) -> None:
        size = calculate_position_size("NO", -0.3, 0.45, bankroll=100, base_amount=10)
        assert size.aligned_edge == pytest.approx(0.3)
        assert size.is_trade

    def test_misaligned_edge_rejected(self) -> None:
        size = calculate_position_size("NO", 0.4, 0.5, bankroll=100, base_amount=10)
        assert size.amount is None
        assert "misaligned" in size.reason

    def test_zero_edge_rejected(self) -> None:
        size = calculate_position_size("YES", 0.0, 0.5, bankroll=100, base_amount=10)
        assert not size.is_trade

    @pytest.mark.parametrize("price", [0.0, 1.0, -0.1, 1.5])
    def test_price_outside_unit_interval_rejected(self, price: float) -> None:
        size = calculate_position_size("YES", 0.5, price, bankroll=100, base_amount=10)
        assert size.amount is None

    def test_no_kelly_edge_when_probability_clamped(self) -> None:
        # p is capped at 0.95, below a 0.97 price
        size = calculate_position_size("YES", 0.1, 0.97, bankroll=100, base_amount=10)
        assert size.amount is None
        assert "kelly" in size.reason

    def test_small_stake_raised_to_minimum(self) -> None:
        size = calculate_position_size("YES", 0.01, 0.5, bankroll=50, base_amount=10)
        assert size.amount == pytest.approx(1.0)

    def test_amount_within_bounds(self) -> None:
        for score in (0.05, 0.1, 0.2, 0.4, 0.8):
            for price in (0.3, 0.45, 0.6, 0.75):
                size = calculate_position_size("YES", score, price, bankroll=1000, base_amount=10)
                if size.is_trade:
                    assert 1.0 <= size.amount <= 20.0

    def test_custom_risk_config(self) -> None:
        cfg = RiskConfig(kelly_cap=0.05, max_trade_multiplier=3.0)
        size = calculate_position_size("YES", 0.5, 0.6, bankroll=100, base_amount=10, risk_config=cfg)
        assert size.amount == pytest.approx(5.0)


# ─── budget allocation ─────────────────────────────────────────────────

class TestAllocator:
    def test_second_candidate_shrinks_to_remaining(self) -> None:
        high = _candidate("a", 30.0, score=0.7, confidence=0.9)
        low = _candidate("b", 25.0, score=0.4, confidence=0.6)
        plan = allocate_budget([low, high], budget=40.0)

        assert [a.candidate.market.id for a in plan.funded] == ["a", "b"]
        assert [a.amount for a in plan.funded] == pytest.approx([30.0, 10.0])
        assert plan.allocated == pytest.approx(40.0)
        assert plan.skipped == []

    def test_exhausted_budget_skips(self) -> None:
        cands = [_candidate("a", 30.0, score=0.9), _candidate("b", 20.0, score=0.5),
                 _candidate("c", 20.0, score=0.3)]
        plan = allocate_budget(cands, budget=40.0)
        assert len(plan.funded) == 2
        assert [(c.market.id, reason) for c, reason in plan.skipped] == [("c", BUDGET_EXHAUSTED)]

    def test_remainder_below_minimum_counts_as_exhausted(self) -> None:
        cands = [_candidate(str(i), 5.0) for i in range(12)]
        plan = allocate_budget(cands, budget=100.0 * 0.55, min_amount=1.0)
        assert len(plan.funded) == 11
        assert all(a.amount >= 1.0 for a in plan.funded)
        assert [(c.market.id, reason) for c, reason in plan.skipped] == [("11", BUDGET_EXHAUSTED)]

    def test_partial_remainder_at_minimum_still_funded(self) -> None:
        plan = allocate_budget(
            [_candidate("a", 9.0, score=0.9), _candidate("b", 5.0, score=0.4)],
            budget=10.0,
            min_amount=1.0,
        )
        assert [a.amount for a in plan.funded] == pytest.approx([9.0, 1.0])

    def test_never_exceeds_budget(self) -> None:
        cands = [_candidate(str(i), 7.5, score=0.1 * (i + 1)) for i in range(8)]
        plan = allocate_budget(cands, budget=25.0)
        assert plan.allocated <= 25.0 + 1e-9

    def test_priority_order_descending(self) -> None:
        cands = [_candidate("a", 5.0, score=0.4), _candidate("b", 5.0, score=-0.9, outcome="NO"),
                 _candidate("c", 5.0, score=0.6)]
        plan = allocate_budget(cands, budget=100.0)
        priorities = [a.candidate.priority for a in plan.funded]
        assert priorities == sorted(priorities, reverse=True)
        assert plan.funded[0].candidate.market.id == "b"

    def test_ties_keep_input_order(self) -> None:
        cands = [_candidate("x", 5.0), _candidate("y", 5.0), _candidate("z", 5.0)]
        plan = allocate_budget(cands, budget=100.0)
        assert [a.candidate.market.id for a in plan.funded] == ["x", "y", "z"]

    def test_dedup_key(self) -> None:
        assert _candidate("m9", 5.0, outcome="NO", score=-0.5).dedup_key == ("m9", "NO")
