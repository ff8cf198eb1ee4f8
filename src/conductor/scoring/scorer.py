"""Routing Scorer - Composite ranking score for candidate workers.

Measures: confidence (0.35) + token efficiency (0.15, 0.30 when optimizing
for cost) + historical performance (0.20) + user preference (0.15).

Weights are normalized to sum to 1 before use, so the default profile and
the cost profile are both valid weightings.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Final

from loguru import logger

from conductor.config import RoutingConfig
from conductor.errors import ConfigurationError
from conductor.routing.history import HistorySnapshot
from conductor.routing.models import Candidate, Request, WorkerProfile

# Confidence bonus per unit of capability match
CAPABILITY_MATCH_BONUS: Final[float] = 0.2


@dataclass(frozen=True)
class ScoringWeights:
    """Weights for the composite score components."""

    confidence: float = 0.35
    token_efficiency: float = 0.15
    historical: float = 0.20
    user_preference: float = 0.15

    def __post_init__(self) -> None:
        values = (self.confidence, self.token_efficiency, self.historical, self.user_preference)
        if any(v < 0 for v in values):
            raise ConfigurationError(f"Scoring weights must be >= 0, got {values}")
        if sum(values) <= 0:
            raise ConfigurationError("Scoring weights must not all be zero")

    @property
    def total(self) -> float:
        return self.confidence + self.token_efficiency + self.historical + self.user_preference

    def normalized(self) -> ScoringWeights:
        """Same proportions, summing to 1."""
        total = self.total
        return ScoringWeights(
            confidence=self.confidence / total,
            token_efficiency=self.token_efficiency / total,
            historical=self.historical / total,
            user_preference=self.user_preference / total,
        )

    @classmethod
    def from_config(cls, config: RoutingConfig, optimize_for_cost: bool = False) -> ScoringWeights:
        return cls(
            confidence=config.confidence_weight,
            token_efficiency=(
                config.cost_token_efficiency_weight
                if optimize_for_cost
                else config.token_efficiency_weight
            ),
            historical=config.historical_weight,
            user_preference=config.user_preference_weight,
        )

    @classmethod
    def for_cost(cls) -> ScoringWeights:
        return cls(token_efficiency=0.30)


DEFAULT_WEIGHTS: Final[ScoringWeights] = ScoringWeights()


def _clip(value: float) -> float:
    return max(0.0, min(1.0, value))


def capability_match(request: Request, capabilities: Iterable[str]) -> float:
    """Fraction of the request's terms covered by a worker's capabilities."""
    terms = {k.lower() for k in request.keywords}
    if request.classified_type:
        terms.add(request.classified_type.lower())
    caps = {c.lower() for c in capabilities}
    if not terms or not caps:
        return 0.0
    return len(terms & caps) / len(terms)


class RoutingScorer:
    """Computes composite scores for candidates given a classified request."""

    def __init__(self, weights: ScoringWeights | None = None) -> None:
        self.weights = weights or DEFAULT_WEIGHTS

    def score(
        self, request: Request, candidate: Candidate, weights: ScoringWeights | None = None
    ) -> float:
        """
        Composite score for one candidate, clipped to [0, 1].

        Args:
            request: The classified request being routed
            candidate: Candidate with its component scores
            weights: Override weights (normalized before use)

        Returns:
            Composite score
        """
        w = (weights or self.weights).normalized()
        composite = (
            candidate.base_confidence * w.confidence
            + candidate.token_efficiency_score * w.token_efficiency
            + candidate.historical_success_rate * w.historical
            + candidate.user_preference_weight * w.user_preference
        )
        result = _clip(composite)
        logger.debug(
            "Scored {} for {}: {:.4f}", candidate.worker_id, request.id, result
        )
        return result

    def build_candidates(
        self,
        request: Request,
        profiles: Sequence[WorkerProfile],
        snapshot: HistorySnapshot,
        weights: ScoringWeights | None = None,
        user_preferences: Mapping[str, float] | None = None,
    ) -> list[Candidate]:
        """
        Turn directory profiles into scored candidates.

        Historical success rate and latency come from the history snapshot
        when the worker has been observed, otherwise from the profile seeds.
        A per-request preference in [0, 1] replaces the profile's default.
        """
        preferences = user_preferences or {}
        candidates: list[Candidate] = []
        for profile in profiles:
            stats = snapshot.get(profile.worker_id)
            match = capability_match(request, profile.capabilities)
            historical = stats.success_rate if stats else profile.seed_success_rate
            latency = (
                stats.avg_latency_ms if stats and stats.avg_latency_ms > 0 else profile.average_latency_ms
            )
            candidate = Candidate(
                worker_id=profile.worker_id,
                base_confidence=_clip(profile.base_confidence + CAPABILITY_MATCH_BONUS * match),
                token_efficiency_score=profile.token_efficiency,
                historical_success_rate=_clip(historical),
                user_preference_weight=preferences.get(profile.worker_id, profile.user_preference),
                average_latency_ms=latency,
                current_load=profile.current_load,
                capacity=profile.capacity,
            )
            candidates.append(
                replace(candidate, composite_score=self.score(request, candidate, weights))
            )
        return candidates
