"""Cross-candidate budget allocation.

All BUY candidates from one opportunity cycle compete for a single budget
of ``bankroll * max_exposure``. Candidates are ranked by
``|composite_score| * confidence`` and funded greedily: each gets its
Kelly amount or whatever budget remains, whichever is smaller.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from updown.connectors.polymarket_clob import PriceQuote
from updown.connectors.polymarket_gamma import Market
from updown.observability.logger import get_logger
from updown.strategy.composite import CompositeAnalysis

log = get_logger(__name__)

BUDGET_EXHAUSTED = "budget exhausted"


@dataclass
class TradeCandidate:
    market: Market
    analysis: CompositeAnalysis
    quote: PriceQuote
    outcome: str
    price: float
    token_id: str
    kelly_amount: float

    @property
    def priority(self) -> float:
        return self.analysis.priority

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.market.id, self.outcome)


@dataclass
class Allocation:
    candidate: TradeCandidate
    amount: float


@dataclass
class AllocationPlan:
    budget: float
    funded: list[Allocation] = field(default_factory=list)
    skipped: list[tuple[TradeCandidate, str]] = field(default_factory=list)

    @property
    def allocated(self) -> float:
        return sum(a.amount for a in self.funded)


def allocate_budget(
    candidates: list[TradeCandidate],
    budget: float,
    min_amount: float = 0.0,
) -> AllocationPlan:
    """Fund candidates by descending priority until the budget runs out.

    Ties keep their input order. The sum of funded amounts never exceeds
    ``budget``. A remainder below ``min_amount`` counts as exhausted.
    """
    plan = AllocationPlan(budget=budget)
    remaining = budget
    for cand in sorted(candidates, key=lambda c: c.priority, reverse=True):
        if remaining <= 0 or remaining < min_amount:
            plan.skipped.append((cand, BUDGET_EXHAUSTED))
            continue
        amount = min(cand.kelly_amount, remaining)
        remaining -= amount
        plan.funded.append(Allocation(candidate=cand, amount=amount))

    log.info(
        "allocator.planned",
        candidates=len(candidates),
        funded=len(plan.funded),
        skipped=len(plan.skipped),
        budget=round(budget, 2),
        allocated=round(plan.allocated, 2),
    )
    return plan
