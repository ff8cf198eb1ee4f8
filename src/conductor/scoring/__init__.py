"""Candidate scoring."""

from .scorer import DEFAULT_WEIGHTS, RoutingScorer, ScoringWeights, capability_match

__all__ = [
    "DEFAULT_WEIGHTS",
    "RoutingScorer",
    "ScoringWeights",
    "capability_match",
]
