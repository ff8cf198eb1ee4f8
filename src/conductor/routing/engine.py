"""
Routing Decision Engine: Filter, Rank, Select or Fall Back

Selection rules:
    1. Drop candidates below the minimum confidence or at load capacity
    2. Rank by composite score descending
    3. Ties: lower average latency, then lexical worker id
    4. Nothing left, low classifier confidence, or low top score -> fallback worker

Given the same request and the same history snapshot the decision is the
same on every run.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping, Sequence
from typing import Any

from loguru import logger

from conductor.config import RoutingConfig
from conductor.errors import ClassificationLowConfidence, NoCandidateAvailable
from conductor.routing.models import Candidate, Request, RoutingDecision

# Scores equal to this many decimals count as a tie
SCORE_PRECISION = 9

LOW_SCORE = "LOW_SCORE"


def ranking_key(candidate: Candidate) -> tuple[float, float, str]:
    return (
        -round(candidate.composite_score, SCORE_PRECISION),
        candidate.average_latency_ms,
        candidate.worker_id,
    )


class RoutingDecisionEngine:
    """Selects a primary worker (plus compatible co-workers) for a request."""

    def __init__(self, config: RoutingConfig | None = None) -> None:
        self.config = config or RoutingConfig()
        self._decisions: deque[RoutingDecision] = deque(maxlen=self.config.max_decision_log)

    def rank(self, candidates: Sequence[Candidate], check_availability: bool = True) -> list[Candidate]:
        """Filter ineligible candidates and order the rest deterministically."""
        eligible = [
            c
            for c in candidates
            if c.base_confidence >= self.config.min_confidence
            and (c.available or not check_availability)
        ]
        return sorted(eligible, key=ranking_key)

    def decide(
        self,
        request: Request,
        candidates: Sequence[Candidate],
        compatible: Mapping[str, Sequence[str]] | None = None,
        check_availability: bool = True,
    ) -> RoutingDecision:
        """
        Route a request to the best candidate.

        Args:
            request: Classified request
            candidates: Scored candidates for the request type
            compatible: worker -> workers that may run alongside it
            check_availability: Drop workers at or over their load capacity

        Returns:
            RoutingDecision (fallback=True when the fallback worker was chosen)
        """
        ranked = self.rank(candidates, check_availability)
        ranking = tuple((c.worker_id, c.composite_score) for c in ranked)

        if request.confidence < self.config.min_confidence:
            signal = ClassificationLowConfidence(
                f"Classifier confidence {request.confidence:.2f} below "
                f"{self.config.min_confidence:.2f}",
                context={"request_id": request.id},
            )
            logger.info("Routing {} to fallback: {}", request.id, signal.message)
            decision = self._fallback(
                request, candidates, ranked, signal.code, signal.message, ranking
            )
        elif not ranked:
            signal = NoCandidateAvailable(
                f"No candidate passed criteria ({len(candidates)} considered)",
                context={"request_id": request.id},
            )
            logger.warning("Routing {} to fallback: {}", request.id, signal.message)
            decision = self._fallback(
                request, candidates, ranked, signal.code, signal.message, ranking
            )
        elif ranked[0].composite_score < self.config.fallback_threshold:
            top = ranked[0]
            message = (
                f"Low confidence in {top.worker_id} ({round(top.composite_score * 100)}%)"
            )
            logger.warning("Routing {} to fallback: {}", request.id, message)
            decision = self._fallback(request, candidates, ranked, LOW_SCORE, message, ranking)
        else:
            best = ranked[0]
            allowed = set((compatible or {}).get(best.worker_id, ()))
            co_workers = tuple(c.worker_id for c in ranked[1:] if c.worker_id in allowed)
            decision = RoutingDecision(
                request_id=request.id,
                selected=best.worker_id,
                score=best.composite_score,
                confidence=request.confidence,
                reasoning=self._reasoning(best, ranked),
                options_considered=len(candidates),
                alternatives=tuple(c.worker_id for c in ranked[1:4]),
                co_workers=co_workers,
                ranking=ranking,
            )
            logger.info(
                "Routed {} -> {} (score {:.3f})", request.id, best.worker_id, best.composite_score
            )

        self._decisions.append(decision)
        return decision

    def _fallback(
        self,
        request: Request,
        candidates: Sequence[Candidate],
        ranked: Sequence[Candidate],
        reason_code: str,
        message: str,
        ranking: tuple[tuple[str, float], ...],
    ) -> RoutingDecision:
        top_score = ranked[0].composite_score if ranked else 0.0
        return RoutingDecision(
            request_id=request.id,
            selected=self.config.fallback_worker,
            score=top_score,
            confidence=request.confidence,
            reasoning=f"{message} - routing to {self.config.fallback_worker} for analysis",
            options_considered=len(candidates),
            fallback=True,
            fallback_reason=reason_code,
            alternatives=tuple(c.worker_id for c in ranked[:3]),
            ranking=ranking,
        )

    @staticmethod
    def _reasoning(best: Candidate, ranked: Sequence[Candidate]) -> str:
        reasons = [f"Selected {best.worker_id} with {round(best.composite_score * 100)}% score"]
        reasons.append(
            f"confidence {best.base_confidence:.2f}, efficiency {best.token_efficiency_score:.2f}, "
            f"history {best.historical_success_rate:.2f}, preference {best.user_preference_weight:.2f}"
        )
        if len(ranked) > 1:
            runner_up = ranked[1]
            if round(runner_up.composite_score, SCORE_PRECISION) == round(
                best.composite_score, SCORE_PRECISION
            ):
                reasons.append(f"tie with {runner_up.worker_id} broken by latency/id")
            reasons.append(f"compared {len(ranked)} viable options")
        return ", ".join(reasons)

    def decisions(self, limit: int = 100) -> list[RoutingDecision]:
        return list(self._decisions)[-limit:]

    def statistics(self, window: int = 100) -> dict[str, Any]:
        """Fallback rate, average confidence and selection distribution."""
        recent = self.decisions(window)
        if not recent:
            return {
                "total_decisions": 0,
                "recent_decisions": 0,
                "fallback_rate": 0.0,
                "average_confidence": 0.0,
                "worker_distribution": {},
            }

        distribution: dict[str, int] = {}
        for decision in recent:
            distribution[decision.selected] = distribution.get(decision.selected, 0) + 1

        return {
            "total_decisions": len(self._decisions),
            "recent_decisions": len(recent),
            "fallback_rate": sum(1 for d in recent if d.fallback) / len(recent),
            "average_confidence": sum(d.confidence for d in recent) / len(recent),
            "worker_distribution": distribution,
        }
