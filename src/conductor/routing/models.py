"""
Routing Data Models

Requests, worker profiles, scored candidates and routing decisions.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be in [0.0, 1.0], got {value}")


@dataclass(frozen=True)
class Classification:
    """Classifier output for one piece of free text."""

    type: str
    confidence: float
    keywords: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)


@dataclass(frozen=True)
class Request:
    """A classified unit of work derived from free-form input."""

    raw_text: str
    classified_type: str
    confidence: float
    keywords: tuple[str, ...] = ()
    id: str = field(default_factory=lambda: f"req-{uuid.uuid4().hex[:12]}")

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)

    @classmethod
    def from_classification(
        cls, text: str, classification: Classification, request_id: str | None = None
    ) -> Request:
        kwargs: dict[str, Any] = {}
        if request_id:
            kwargs["id"] = request_id
        return cls(
            raw_text=text,
            classified_type=classification.type,
            confidence=classification.confidence,
            keywords=tuple(classification.keywords),
            **kwargs,
        )


@dataclass(frozen=True)
class WorkerProfile:
    """
    A specialist as listed by the directory.

    ``base_confidence``, ``token_efficiency`` and ``seed_success_rate`` are
    seed values; observed outcomes in the history store take over once a
    worker has been used.
    """

    worker_id: str
    capabilities: tuple[str, ...] = ()
    current_load: int = 0
    capacity: int = 3
    base_confidence: float = 0.5
    token_efficiency: float = 0.5
    seed_success_rate: float = 0.8
    average_latency_ms: float = 4000.0
    user_preference: float = 0.5

    def __post_init__(self) -> None:
        for name in ("base_confidence", "token_efficiency", "seed_success_rate", "user_preference"):
            _check_unit(name, getattr(self, name))
        if self.capacity < 0 or self.current_load < 0:
            raise ValueError("capacity and current_load must be >= 0")

    @property
    def available(self) -> bool:
        return self.current_load < self.capacity


@dataclass(frozen=True)
class Candidate:
    """A worker scored for one request."""

    worker_id: str
    base_confidence: float
    token_efficiency_score: float
    historical_success_rate: float
    user_preference_weight: float
    composite_score: float = 0.0
    average_latency_ms: float = 0.0
    current_load: int = 0
    capacity: int = 3

    def __post_init__(self) -> None:
        for name in (
            "base_confidence",
            "token_efficiency_score",
            "historical_success_rate",
            "user_preference_weight",
            "composite_score",
        ):
            _check_unit(name, getattr(self, name))

    @property
    def available(self) -> bool:
        return self.current_load < self.capacity


@dataclass(frozen=True)
class WorkerStats:
    """Decayed performance of one worker. Immutable; replaced on every update."""

    worker_id: str
    success_rate: float
    avg_tokens: float = 0.0
    avg_latency_ms: float = 0.0
    samples: int = 0
    updated_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RoutingDecision:
    """Audit record of one routing decision."""

    request_id: str
    selected: str
    score: float
    confidence: float
    reasoning: str
    options_considered: int
    fallback: bool = False
    fallback_reason: str | None = None
    alternatives: tuple[str, ...] = ()
    co_workers: tuple[str, ...] = ()
    ranking: tuple[tuple[str, float], ...] = ()
    timestamp: float = field(default_factory=time.time, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "selected": self.selected,
            "score": self.score,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "options_considered": self.options_considered,
            "fallback": self.fallback,
            "fallback_reason": self.fallback_reason,
            "alternatives": list(self.alternatives),
            "co_workers": list(self.co_workers),
            "ranking": [list(item) for item in self.ranking],
            "timestamp": self.timestamp,
        }
