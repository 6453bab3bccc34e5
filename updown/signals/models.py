"""Signal provider result type."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any


@dataclass
class SignalResult:
    """Directional read from one provider.

    ``score`` is in [-1, 1]: positive favours YES (price up), negative NO.
    ``confidence`` is only reported by providers that measure it.
    """
    score: float = 0.0
    confidence: float | None = None
    error: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return (
            not self.error
            and isinstance(self.score, (int, float))
            and math.isfinite(self.score)
        )

    @classmethod
    def failed(cls, error: str) -> "SignalResult":
        return cls(score=0.0, confidence=None, error=error or "unknown error")

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": round(self.score, 4),
            "confidence": self.confidence,
            "error": self.error or None,
            "details": self.details,
        }


def clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))
