"""Tests for classification, the specialist directory and the decision engine."""

from __future__ import annotations

import pytest

from conductor.config import RoutingConfig
from conductor.routing import Candidate, Request, RoutingDecisionEngine, ranking_key
from conductor.routing.classifier import UNCLASSIFIED, KeywordClassifier, KeywordRule
from conductor.routing.directory import StaticDirectory
from conductor.routing.engine import LOW_SCORE
from conductor.routing.history import InMemoryHistoryStore
from conductor.scoring import RoutingScorer

pytestmark = pytest.mark.anyio


def _request(confidence: float = 0.9, request_type: str = "frontend") -> Request:
    return Request(
        raw_text="make the login page look pretty",
        classified_type=request_type,
        confidence=confidence,
        keywords=("page",),
        id="req-1",
    )


def _candidate(worker_id: str, score: float, **kwargs) -> Candidate:
    defaults = {
        "base_confidence": 0.8,
        "token_efficiency_score": 0.5,
        "historical_success_rate": 0.8,
        "user_preference_weight": 0.5,
        "average_latency_ms": 1000.0,
    }
    defaults.update(kwargs)
    return Candidate(worker_id=worker_id, composite_score=score, **defaults)


# ═══════════════════════════════════════════════════════════════════════════
# DECISION ENGINE
# ═══════════════════════════════════════════════════════════════════════════


class TestRanking:
    """Deterministic ordering."""

    def test_ties_broken_by_worker_id(self):
        engine = RoutingDecisionEngine()
        ranked = engine.rank(
            [_candidate("b", 0.92), _candidate("a", 0.91), _candidate("c", 0.91)]
        )
        assert [c.worker_id for c in ranked] == ["b", "a", "c"]

    def test_ties_broken_by_latency_first(self):
        engine = RoutingDecisionEngine()
        ranked = engine.rank(
            [
                _candidate("a", 0.8, average_latency_ms=5000.0),
                _candidate("b", 0.8, average_latency_ms=2000.0),
            ]
        )
        assert [c.worker_id for c in ranked] == ["b", "a"]

    def test_ranking_is_input_order_independent(self):
        pool = [_candidate("x", 0.7), _candidate("y", 0.7), _candidate("z", 0.9)]
        assert sorted(pool, key=ranking_key) == sorted(reversed(pool), key=ranking_key)

    def test_low_confidence_and_full_workers_dropped(self):
        engine = RoutingDecisionEngine()
        ranked = engine.rank(
            [
                _candidate("weak", 0.9, base_confidence=0.3),
                _candidate("busy", 0.9, current_load=3, capacity=3),
                _candidate("ok", 0.6),
            ]
        )
        assert [c.worker_id for c in ranked] == ["ok"]

    def test_availability_check_can_be_disabled(self):
        engine = RoutingDecisionEngine()
        ranked = engine.rank(
            [_candidate("busy", 0.9, current_load=5, capacity=3)], check_availability=False
        )
        assert [c.worker_id for c in ranked] == ["busy"]


class TestDecide:
    """Selection and fallback."""

    def test_selects_best_and_lists_alternatives(self):
        engine = RoutingDecisionEngine()
        decision = engine.decide(
            _request(),
            [_candidate("b", 0.92), _candidate("a", 0.91), _candidate("c", 0.91)],
        )

        assert decision.selected == "b"
        assert not decision.fallback
        assert decision.alternatives == ("a", "c")
        assert decision.options_considered == 3
        assert decision.ranking[0] == ("b", 0.92)

    def test_tie_noted_in_reasoning(self):
        engine = RoutingDecisionEngine()
        decision = engine.decide(_request(), [_candidate("b", 0.8), _candidate("a", 0.8)])
        assert decision.selected == "a"
        assert "tie with b" in decision.reasoning

    def test_co_workers_limited_to_compatible(self):
        engine = RoutingDecisionEngine()
        decision = engine.decide(
            _request(),
            [_candidate("front", 0.9), _candidate("back", 0.8), _candidate("ops", 0.7)],
            compatible={"front": ["back"]},
        )
        assert decision.co_workers == ("back",)

    def test_low_classifier_confidence_falls_back(self):
        engine = RoutingDecisionEngine()
        decision = engine.decide(_request(confidence=0.3), [_candidate("a", 0.9)])

        assert decision.fallback
        assert decision.selected == "project-manager"
        assert decision.fallback_reason == "CLASSIFICATION_LOW_CONFIDENCE"
        assert decision.alternatives == ("a",)

    def test_no_candidates_falls_back(self):
        engine = RoutingDecisionEngine()
        decision = engine.decide(_request(), [])

        assert decision.fallback
        assert decision.fallback_reason == "NO_CANDIDATE_AVAILABLE"
        assert decision.score == 0.0

    def test_all_candidates_busy_falls_back(self):
        engine = RoutingDecisionEngine()
        decision = engine.decide(_request(), [_candidate("a", 0.9, current_load=3, capacity=3)])
        assert decision.fallback_reason == "NO_CANDIDATE_AVAILABLE"

    def test_low_top_score_falls_back(self):
        engine = RoutingDecisionEngine()
        decision = engine.decide(_request(), [_candidate("a", 0.4)])

        assert decision.fallback
        assert decision.fallback_reason == LOW_SCORE
        assert decision.score == 0.4

    def test_custom_fallback_worker(self):
        engine = RoutingDecisionEngine(RoutingConfig(fallback_worker="triage"))
        assert engine.decide(_request(), []).selected == "triage"

    def test_decision_is_deterministic(self):
        pool = [_candidate("b", 0.85), _candidate("a", 0.85), _candidate("c", 0.6)]
        first = RoutingDecisionEngine().decide(_request(), pool)
        second = RoutingDecisionEngine().decide(_request(), list(reversed(pool)))
        assert first.selected == second.selected == "a"
        assert first.ranking == second.ranking


class TestStatistics:
    def test_empty(self):
        stats = RoutingDecisionEngine().statistics()
        assert stats["total_decisions"] == 0
        assert stats["worker_distribution"] == {}

    def test_fallback_rate_and_distribution(self):
        engine = RoutingDecisionEngine()
        engine.decide(_request(), [_candidate("a", 0.9)])
        engine.decide(_request(), [_candidate("a", 0.9)])
        engine.decide(_request(), [])
        engine.decide(_request(), [_candidate("b", 0.9)])

        stats = engine.statistics()
        assert stats["total_decisions"] == 4
        assert stats["fallback_rate"] == 0.25
        assert stats["worker_distribution"] == {"a": 2, "project-manager": 1, "b": 1}
        assert len(engine.decisions(limit=2)) == 2


# ═══════════════════════════════════════════════════════════════════════════
# CLASSIFIER
# ═══════════════════════════════════════════════════════════════════════════


class TestKeywordClassifier:
    async def test_frontend_request(self):
        result = await KeywordClassifier().classify("make the login page look pretty")
        assert result.type == "frontend"
        assert result.confidence == 0.95
        assert result.keywords == ("look", "pretty", "page")

    async def test_single_hit_scales_confidence(self):
        result = await KeywordClassifier().classify("deploy it")
        assert result.type == "deployment"
        assert result.confidence == pytest.approx(0.7125)

    async def test_unmatched_text(self):
        result = await KeywordClassifier().classify("hello there")
        assert result.type == UNCLASSIFIED
        assert result.confidence == 0.0

    async def test_tie_goes_to_earlier_rule(self):
        rules = (KeywordRule("one", ("alpha",), 0.8), KeywordRule("two", ("beta",), 0.8))
        result = await KeywordClassifier(rules).classify("alpha beta")
        assert result.type == "one"


# ═══════════════════════════════════════════════════════════════════════════
# DIRECTORY
# ═══════════════════════════════════════════════════════════════════════════


class TestStaticDirectory:
    async def test_lists_roster_for_type(self):
        directory = StaticDirectory()
        profiles = await directory.list_candidates("frontend")
        assert [p.worker_id for p in profiles] == ["frontend-specialist", "backend-specialist"]

    async def test_unknown_type_is_empty(self):
        assert await StaticDirectory().list_candidates("astrology") == []

    async def test_load_overrides(self):
        directory = StaticDirectory()
        directory.set_load("frontend-specialist", 3)
        [front, _] = await directory.list_candidates("frontend")
        assert front.current_load == 3
        assert not front.available

    def test_negative_load_rejected(self):
        with pytest.raises(ValueError):
            StaticDirectory().set_load("frontend-specialist", -1)


# ═══════════════════════════════════════════════════════════════════════════
# END TO END
# ═══════════════════════════════════════════════════════════════════════════


class TestRoutingPipeline:
    """Classifier -> directory -> scorer -> engine."""

    async def test_login_page_routes_to_frontend(self):
        classification = await KeywordClassifier().classify("make the login page look pretty")
        request = Request.from_classification("make the login page look pretty", classification)
        profiles = await StaticDirectory().list_candidates(request.classified_type)
        snapshot = await InMemoryHistoryStore().snapshot()
        candidates = RoutingScorer().build_candidates(request, profiles, snapshot)

        decision = RoutingDecisionEngine().decide(request, candidates)

        assert decision.selected == "frontend-specialist"
        assert decision.score == pytest.approx(0.7341, abs=1e-4)
        # backend-specialist has base confidence 0.45 and is filtered
        assert decision.alternatives == ()
