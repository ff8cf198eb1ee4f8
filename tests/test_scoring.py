"""Tests for the composite routing scorer."""

from __future__ import annotations

from types import MappingProxyType

import pytest

from conductor.config import RoutingConfig
from conductor.errors import ConfigurationError
from conductor.routing.models import Candidate, Request, WorkerProfile, WorkerStats
from conductor.scoring import DEFAULT_WEIGHTS, RoutingScorer, ScoringWeights, capability_match


def _request(**kwargs) -> Request:
    defaults = {
        "raw_text": "make the login page look pretty",
        "classified_type": "frontend",
        "confidence": 0.95,
        "keywords": ("look", "pretty", "page"),
        "id": "req-1",
    }
    defaults.update(kwargs)
    return Request(**defaults)


def _candidate(**kwargs) -> Candidate:
    defaults = {
        "worker_id": "w",
        "base_confidence": 0.5,
        "token_efficiency_score": 0.5,
        "historical_success_rate": 0.5,
        "user_preference_weight": 0.5,
    }
    defaults.update(kwargs)
    return Candidate(**defaults)


class TestScoringWeights:
    """Weight profiles and normalization."""

    def test_default_profile_sums_to_085(self):
        assert DEFAULT_WEIGHTS.total == pytest.approx(0.85)

    def test_normalized_sums_to_one(self):
        normalized = DEFAULT_WEIGHTS.normalized()
        assert normalized.total == pytest.approx(1.0)
        assert normalized.confidence == pytest.approx(0.35 / 0.85)

    def test_cost_profile_doubles_efficiency(self):
        cost = ScoringWeights.for_cost()
        assert cost.token_efficiency == 0.30
        assert cost.confidence == DEFAULT_WEIGHTS.confidence

    def test_from_config(self):
        config = RoutingConfig()
        assert ScoringWeights.from_config(config) == DEFAULT_WEIGHTS
        assert ScoringWeights.from_config(config, optimize_for_cost=True) == ScoringWeights.for_cost()

    def test_negative_weight_rejected(self):
        with pytest.raises(ConfigurationError):
            ScoringWeights(confidence=-0.1)

    def test_all_zero_rejected(self):
        with pytest.raises(ConfigurationError):
            ScoringWeights(0, 0, 0, 0)


class TestScore:
    """Composite score computation."""

    def test_all_ones_scores_one(self):
        scorer = RoutingScorer()
        candidate = _candidate(
            base_confidence=1.0,
            token_efficiency_score=1.0,
            historical_success_rate=1.0,
            user_preference_weight=1.0,
        )
        assert scorer.score(_request(), candidate) == pytest.approx(1.0)

    def test_all_zeros_scores_zero(self):
        scorer = RoutingScorer()
        candidate = _candidate(
            base_confidence=0.0,
            token_efficiency_score=0.0,
            historical_success_rate=0.0,
            user_preference_weight=0.0,
        )
        assert scorer.score(_request(), candidate) == 0.0

    def test_score_always_in_unit_interval(self):
        scorer = RoutingScorer(ScoringWeights(5.0, 0.0, 0.0, 0.0))
        score = scorer.score(_request(), _candidate(base_confidence=1.0))
        assert 0.0 <= score <= 1.0

    def test_cost_profile_favors_efficient_worker(self):
        scorer = RoutingScorer()
        lean = _candidate(worker_id="lean", base_confidence=0.6, token_efficiency_score=1.0)
        sharp = _candidate(worker_id="sharp", base_confidence=0.9, token_efficiency_score=0.4)

        default_gap = scorer.score(_request(), sharp) - scorer.score(_request(), lean)
        cost = ScoringWeights.for_cost()
        cost_gap = scorer.score(_request(), sharp, cost) - scorer.score(_request(), lean, cost)

        assert default_gap > 0
        assert cost_gap < 0


class TestCapabilityMatch:
    def test_partial_match(self):
        request = _request()
        caps = ("frontend", "ui", "page")
        # terms: look, pretty, page, frontend -> 2 of 4
        assert capability_match(request, caps) == pytest.approx(0.5)

    def test_no_capabilities(self):
        assert capability_match(_request(), ()) == 0.0


class TestBuildCandidates:
    """Profiles + history snapshot -> scored candidates."""

    PROFILE = WorkerProfile(
        worker_id="frontend-specialist",
        capabilities=("frontend", "page"),
        base_confidence=0.75,
        token_efficiency=0.45,
        seed_success_rate=0.92,
        average_latency_ms=3000.0,
    )

    def test_seeds_used_without_history(self):
        scorer = RoutingScorer()
        [candidate] = scorer.build_candidates(_request(), [self.PROFILE], MappingProxyType({}))

        assert candidate.historical_success_rate == 0.92
        assert candidate.average_latency_ms == 3000.0
        assert candidate.base_confidence == pytest.approx(0.85)
        assert candidate.composite_score == pytest.approx(0.7341, abs=1e-4)

    def test_history_overrides_seeds(self):
        scorer = RoutingScorer()
        snapshot = MappingProxyType(
            {
                "frontend-specialist": WorkerStats(
                    worker_id="frontend-specialist",
                    success_rate=0.2,
                    avg_latency_ms=1200.0,
                    samples=4,
                )
            }
        )
        [candidate] = scorer.build_candidates(_request(), [self.PROFILE], snapshot)

        assert candidate.historical_success_rate == 0.2
        assert candidate.average_latency_ms == 1200.0

    def test_cost_weights_passed_through(self):
        scorer = RoutingScorer()
        [default] = scorer.build_candidates(_request(), [self.PROFILE], {})
        [cost] = scorer.build_candidates(_request(), [self.PROFILE], {}, ScoringWeights.for_cost())
        assert default.composite_score != cost.composite_score

    def test_user_preference_overrides_profile_default(self):
        scorer = RoutingScorer()
        [default] = scorer.build_candidates(_request(), [self.PROFILE], {})
        [preferred] = scorer.build_candidates(
            _request(), [self.PROFILE], {}, user_preferences={"frontend-specialist": 1.0}
        )

        assert default.user_preference_weight == 0.5
        assert preferred.user_preference_weight == 1.0
        assert preferred.composite_score == pytest.approx(
            default.composite_score + 0.5 * 0.15 / 0.85, abs=1e-4
        )

    def test_preferences_for_other_workers_ignored(self):
        scorer = RoutingScorer()
        [candidate] = scorer.build_candidates(
            _request(), [self.PROFILE], {}, user_preferences={"backend-specialist": 0.9}
        )
        assert candidate.user_preference_weight == 0.5

    def test_out_of_range_preference_rejected(self):
        with pytest.raises(ValueError):
            RoutingScorer().build_candidates(
                _request(), [self.PROFILE], {}, user_preferences={"frontend-specialist": 1.5}
            )
