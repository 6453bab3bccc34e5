"""Combine the three signal providers into one trading decision.

Providers run concurrently. A provider that raises or reports an error
contributes a score of 0 and its weight is redistributed proportionally
across the providers that succeeded. If none succeed the configured
weights are kept, which yields a composite of 0 and therefore HOLD.

Outcome mapping: YES = Up = bullish, NO = Down = bearish.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from updown.config import DecisionConfig, StrategyWeights
from updown.observability.logger import get_logger
from updown.signals.models import SignalResult, clamp
from updown.signals.news_sentiment import NewsSentimentSignal
from updown.signals.order_flow import OrderFlowSignal
from updown.signals.technical import TechnicalSignal

log = get_logger(__name__)

PROVIDERS = ("technical", "news", "order_flow")


@dataclass
class CompositeAnalysis:
    composite_score: float = 0.0
    confidence: float = 0.0
    decision: str = "HOLD"  # BUY | HOLD
    outcome: str | None = None  # YES | NO
    trade_amount_hint: str = "normal"  # normal | increased | reduced
    breakdown: dict[str, SignalResult] = field(default_factory=dict)
    weights: dict[str, float] = field(default_factory=dict)
    original_weights: dict[str, float] = field(default_factory=dict)
    error: str = ""

    @property
    def is_buy(self) -> bool:
        return self.decision == "BUY" and self.outcome in ("YES", "NO")

    @property
    def priority(self) -> float:
        return abs(self.composite_score) * self.confidence

    def to_dict(self) -> dict[str, Any]:
        return {
            "composite_score": round(self.composite_score, 4),
            "confidence": round(self.confidence, 4),
            "decision": self.decision,
            "outcome": self.outcome,
            "trade_amount_hint": self.trade_amount_hint,
            "breakdown": {k: v.to_dict() for k, v in self.breakdown.items()},
            "weights": {k: round(v, 4) for k, v in self.weights.items()},
            "original_weights": dict(self.original_weights),
            "error": self.error or None,
        }


def redistribute_weights(
    weights: dict[str, float], succeeded: set[str],
) -> dict[str, float]:
    """Scale successful providers' weights to sum to 1; zero the rest.

    With no successes, or no positive weight among them, the input
    weights are returned unchanged.
    """
    total = sum(weights[name] for name in succeeded)
    if not succeeded or total <= 0:
        return dict(weights)
    return {
        name: (weights[name] / total if name in succeeded else 0.0)
        for name in weights
    }


def _sign(x: float) -> int:
    return (x > 0) - (x < 0)


def agreement_confidence(scores: list[float], composite: float, all_agree: float = 0.9) -> float:
    """``all_agree`` when every score shares a strict sign, else the agreeing fraction."""
    if all(s > 0 for s in scores) or all(s < 0 for s in scores):
        return all_agree
    direction = _sign(composite)
    return sum(1 for s in scores if _sign(s) == direction) / len(scores)


def decide(
    score: float,
    confidence: float,
    order_flow_confidence: float,
    cfg: DecisionConfig,
) -> tuple[str, str | None, str]:
    """Map score and confidence to (decision, outcome, amount hint)."""
    decision, outcome, hint = "HOLD", None, "normal"

    if score > cfg.strong_score and confidence > cfg.strong_confidence:
        decision, outcome, hint = "BUY", "YES", "increased"
    elif score > cfg.min_score and confidence > cfg.min_confidence:
        decision, outcome, hint = "BUY", "YES", "normal"
    elif score < -cfg.strong_score and confidence > cfg.strong_confidence:
        decision, outcome, hint = "BUY", "NO", "increased"
    elif score < -cfg.min_score and confidence > cfg.min_confidence:
        decision, outcome, hint = "BUY", "NO", "normal"

    # Thin books: step an increased trade down, drop a normal one
    if decision == "BUY" and order_flow_confidence < cfg.low_liquidity_confidence:
        if hint == "increased":
            hint = "normal"
        else:
            decision, outcome = "HOLD", None

    return decision, outcome, hint


class CompositeAnalyzer:
    """Runs the providers for one market and turns them into a CompositeAnalysis."""

    def __init__(
        self,
        technical: TechnicalSignal,
        news: NewsSentimentSignal,
        order_flow: OrderFlowSignal,
        decision_config: DecisionConfig | None = None,
    ):
        self._technical = technical
        self._news = news
        self._order_flow = order_flow
        self._cfg = decision_config or DecisionConfig()

    async def _gather(self, coin: str, yes_token: str, no_token: str) -> dict[str, SignalResult]:
        raw = await asyncio.gather(
            self._technical.analyze(coin),
            self._news.analyze(coin),
            self._order_flow.analyze(yes_token, no_token),
            return_exceptions=True,
        )
        results: dict[str, SignalResult] = {}
        for name, res in zip(PROVIDERS, raw):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                results[name] = SignalResult.failed(str(res) or type(res).__name__)
            elif not isinstance(res, SignalResult):
                results[name] = SignalResult.failed(f"unexpected result type {type(res).__name__}")
            else:
                results[name] = res
        return results

    async def analyze(
        self,
        coin: str,
        yes_token: str,
        no_token: str,
        weights: StrategyWeights | dict[str, float] | None = None,
    ) -> CompositeAnalysis:
        """Never raises; an internal failure yields a neutral HOLD with ``error`` set."""
        if weights is None:
            weights = StrategyWeights()
        original = weights.as_dict() if isinstance(weights, StrategyWeights) else dict(weights)

        try:
            breakdown = await self._gather(coin, yes_token, no_token)
            succeeded = {name for name, res in breakdown.items() if res.succeeded}
            for name, res in breakdown.items():
                if not res.succeeded:
                    log.warning("composite.provider_failed", provider=name, coin=coin, error=res.error)

            effective = redistribute_weights(original, succeeded)
            scores = [
                breakdown[name].score if name in succeeded else 0.0
                for name in PROVIDERS
            ]
            composite = clamp(sum(s * effective[n] for s, n in zip(scores, PROVIDERS)))

            of = breakdown["order_flow"]
            of_confidence = (of.confidence or 0.0) if of.succeeded else 0.0

            confidence = agreement_confidence(scores, composite, self._cfg.all_agree_confidence)
            confidence = (
                confidence * self._cfg.agreement_blend
                + of_confidence * self._cfg.order_flow_blend
            )

            decision, outcome, hint = decide(composite, confidence, of_confidence, self._cfg)

            analysis = CompositeAnalysis(
                composite_score=composite,
                confidence=confidence,
                decision=decision,
                outcome=outcome,
                trade_amount_hint=hint,
                breakdown=breakdown,
                weights=effective,
                original_weights=original,
            )
        except Exception as e:
            log.error("composite.analysis_failed", coin=coin, error=str(e))
            return CompositeAnalysis(
                breakdown={name: SignalResult.failed(str(e)) for name in PROVIDERS},
                weights=dict(original),
                original_weights=original,
                error=str(e),
            )

        log.info(
            "composite.analyzed",
            coin=coin,
            score=round(analysis.composite_score, 3),
            confidence=round(analysis.confidence, 3),
            decision=analysis.decision,
            outcome=analysis.outcome,
            providers_ok=len(succeeded),
        )
        return analysis
