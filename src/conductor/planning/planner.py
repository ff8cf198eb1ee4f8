"""
Dependency-Aware Parallel Planner

Lays a primary worker and its compatible co-workers out into phases:

    Phase 1   = workers whose requirements are empty or already available
    Phase k+1 = workers whose requirements are met by phases 1..k

A plan is rejected (and execution downgrades to the primary worker alone)
when the dependency graph has a cycle, a requirement has no provider, the
estimated speedup is below the minimum, or coordination overhead outweighs
the estimated savings.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from conductor.config import PlannerConfig
from conductor.errors import (
    CycleDetected,
    InsufficientSpeedup,
    NegativeTokenImpact,
    PlanRejected,
    UnsatisfiableRequirement,
)
from conductor.routing.models import Request


@dataclass(frozen=True)
class WorkerDependencies:
    """Artifacts a worker type needs before starting, and what it produces."""

    requires: tuple[str, ...] = ()
    provides: tuple[str, ...] = ()


# ═══════════════════════════════════════════════════════════════════════════
# DEFAULT COORDINATION RULES
# ═══════════════════════════════════════════════════════════════════════════

DEFAULT_COMPATIBLE: dict[str, tuple[str, ...]] = {
    "frontend-specialist": ("backend-specialist", "database-specialist"),
    "backend-specialist": ("frontend-specialist", "database-specialist", "testing-specialist"),
    "database-specialist": ("frontend-specialist", "backend-specialist"),
    "testing-specialist": ("deployment-specialist",),
    "deployment-specialist": ("testing-specialist",),
}

DEFAULT_DEPENDENCIES: dict[str, WorkerDependencies] = {
    "frontend-specialist": WorkerDependencies(
        provides=("ui-components", "user-interface"),
    ),
    "backend-specialist": WorkerDependencies(
        provides=("api-endpoints", "business-logic", "data-processing"),
    ),
    "database-specialist": WorkerDependencies(
        provides=("data-models", "database-schema"),
    ),
    "testing-specialist": WorkerDependencies(
        requires=("ui-components", "api-endpoints"),
        provides=("test-coverage", "quality-assurance"),
    ),
    "deployment-specialist": WorkerDependencies(
        requires=("ui-components", "api-endpoints", "database-schema"),
        provides=("live-deployment", "production-environment"),
    ),
}

DEFAULT_RELEVANCE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "frontend-specialist": ("ui", "interface", "design", "visual", "component", "user"),
    "backend-specialist": ("api", "server", "data", "logic", "endpoint", "auth"),
    "database-specialist": ("store", "save", "query", "model", "schema", "data"),
    "testing-specialist": ("test", "verify", "check", "validate", "quality"),
    "deployment-specialist": ("deploy", "live", "production", "hosting", "publish"),
}


@dataclass(frozen=True)
class PlanningRules:
    """Which workers may run together and how their artifacts chain."""

    compatible: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_COMPATIBLE)
    )
    dependencies: Mapping[str, WorkerDependencies] = field(
        default_factory=lambda: dict(DEFAULT_DEPENDENCIES)
    )
    keywords: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_RELEVANCE_KEYWORDS)
    )
    savings: Mapping[str, float] = field(default_factory=dict)

    def deps(self, worker_id: str) -> WorkerDependencies:
        return self.dependencies.get(worker_id, WorkerDependencies())


@dataclass(frozen=True)
class Phase:
    """Workers executed concurrently, gated on earlier phases."""

    number: int
    workers: tuple[str, ...]
    duration: float


@dataclass(frozen=True)
class ParallelPlan:
    primary: str
    phases: tuple[Phase, ...]
    dependencies: Mapping[str, WorkerDependencies]
    estimated_speedup: float
    serial_duration: float
    plan_duration: float
    savings: float
    overhead: float

    @property
    def net_token_impact(self) -> float:
        return self.savings - self.overhead

    @property
    def workers(self) -> list[str]:
        return [w for phase in self.phases for w in phase.workers]

    @property
    def is_serial(self) -> bool:
        return len(self.workers) == 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary": self.primary,
            "phases": [
                {"phase": p.number, "workers": list(p.workers), "duration": p.duration}
                for p in self.phases
            ],
            "estimated_speedup": round(self.estimated_speedup, 2),
            "savings": self.savings,
            "overhead": self.overhead,
            "net_token_impact": self.net_token_impact,
        }


@dataclass(frozen=True)
class PlanOutcome:
    """The plan to execute plus why a parallel plan was refused, if it was."""

    plan: ParallelPlan
    rejection: PlanRejected | None = None

    @property
    def mode(self) -> str:
        return "serial" if self.plan.is_serial else "parallel"


class ParallelPlanner:
    """Builds and validates multi-phase plans."""

    def __init__(self, config: PlannerConfig | None = None, rules: PlanningRules | None = None):
        self.config = config or PlannerConfig()
        self.rules = rules or PlanningRules()

    # ═══════════════════════════════════════════════════════════════════════
    # CO-WORKER SELECTION
    # ═══════════════════════════════════════════════════════════════════════

    def relevance(self, worker_id: str, request: Request) -> float:
        """Fraction of a worker's keywords that appear in the request."""
        keywords = self.rules.keywords.get(worker_id, ())
        if not keywords:
            return 0.0
        text = " ".join(
            [request.classified_type, request.raw_text, *request.keywords]
        ).lower()
        matches = sum(1 for k in keywords if k in text)
        return min(matches / len(keywords), 1.0)

    def select_co_workers(self, primary: str, request: Request) -> list[str]:
        """Compatible workers relevant enough to the request, most relevant first."""
        scored = [
            (self.relevance(worker, request), worker)
            for worker in self.rules.compatible.get(primary, ())
        ]
        chosen = [(r, w) for r, w in scored if r > self.config.min_relevance]
        chosen.sort(key=lambda item: (-item[0], item[1]))
        return [w for _, w in chosen]

    # ═══════════════════════════════════════════════════════════════════════
    # PLAN CONSTRUCTION
    # ═══════════════════════════════════════════════════════════════════════

    def serial_plan(self, primary: str, durations: Mapping[str, float] | None = None) -> ParallelPlan:
        duration = self._duration(primary, durations)
        return ParallelPlan(
            primary=primary,
            phases=(Phase(1, (primary,), duration),),
            dependencies={},
            estimated_speedup=1.0,
            serial_duration=duration,
            plan_duration=duration,
            savings=0.0,
            overhead=0.0,
        )

    def plan(
        self,
        primary: str,
        co_workers: Sequence[str] = (),
        durations: Mapping[str, float] | None = None,
        available_artifacts: Iterable[str] = (),
    ) -> PlanOutcome:
        """Build a parallel plan, falling back to serial when it is rejected."""
        if not co_workers:
            return PlanOutcome(self.serial_plan(primary, durations))
        try:
            plan = self.build(primary, co_workers, durations, available_artifacts)
        except PlanRejected as exc:
            logger.info("Parallel plan for {} rejected ({}): {}", primary, exc.code, exc.message)
            return PlanOutcome(self.serial_plan(primary, durations), rejection=exc)
        logger.info(
            "Parallel plan for {}: {} phases, {:.2f}x speedup",
            primary,
            len(plan.phases),
            plan.estimated_speedup,
        )
        return PlanOutcome(plan)

    def build(
        self,
        primary: str,
        co_workers: Sequence[str] = (),
        durations: Mapping[str, float] | None = None,
        available_artifacts: Iterable[str] = (),
    ) -> ParallelPlan:
        """
        Build and validate a plan; raise on any rejection.

        Args:
            primary: The routed worker
            co_workers: Workers to run alongside it
            durations: Estimated seconds per worker (default from config)
            available_artifacts: Artifacts that exist before phase 1

        Returns:
            Accepted ParallelPlan

        Raises:
            UnsatisfiableRequirement, CycleDetected, InsufficientSpeedup,
            NegativeTokenImpact
        """
        workers = list(dict.fromkeys([primary, *co_workers]))
        available = set(available_artifacts)
        deps = {w: self.rules.deps(w) for w in workers}

        self._check_satisfiable(deps, available)
        graph = self._provider_graph(deps, available)
        cycle = self._find_cycle(graph)
        if cycle:
            raise CycleDetected(cycle, context={"primary": primary})

        layers = self._layer(deps, available)
        phases = tuple(
            Phase(i, tuple(layer), max(self._duration(w, durations) for w in layer))
            for i, layer in enumerate(layers, start=1)
        )
        serial_duration = sum(self._duration(w, durations) for w in workers)
        plan_duration = max(p.duration for p in phases)
        speedup = serial_duration / plan_duration if plan_duration > 0 else 1.0

        savings = sum(self.rules.savings.get(w, self.config.savings_per_worker) for w in workers)
        overhead = self.config.overhead_per_phase * len(phases)

        plan = ParallelPlan(
            primary=primary,
            phases=phases,
            dependencies=deps,
            estimated_speedup=speedup,
            serial_duration=serial_duration,
            plan_duration=plan_duration,
            savings=savings,
            overhead=overhead,
        )

        if speedup < self.config.min_speedup:
            raise InsufficientSpeedup(
                f"Insufficient speedup: {speedup:.2f}x (minimum: {self.config.min_speedup}x)",
                context={"speedup": speedup},
            )
        if plan.net_token_impact < 0:
            raise NegativeTokenImpact(
                f"Coordination overhead {overhead:g} exceeds savings {savings:g}",
                context={"net_token_impact": plan.net_token_impact},
            )
        return plan

    def _duration(self, worker_id: str, durations: Mapping[str, float] | None) -> float:
        if durations and worker_id in durations:
            return float(durations[worker_id])
        return self.config.default_duration

    @staticmethod
    def _check_satisfiable(deps: Mapping[str, WorkerDependencies], available: set[str]) -> None:
        provided = set(available)
        for d in deps.values():
            provided.update(d.provides)
        for worker in sorted(deps):
            missing = [a for a in deps[worker].requires if a not in provided]
            if missing:
                raise UnsatisfiableRequirement(
                    f"{worker} requires {', '.join(missing)} which no selected worker provides",
                    context={"worker": worker, "missing": missing},
                )

    @staticmethod
    def _provider_graph(
        deps: Mapping[str, WorkerDependencies], available: set[str]
    ) -> dict[str, list[str]]:
        """Edges provider -> consumer for every artifact not already available."""
        graph: dict[str, list[str]] = {w: [] for w in deps}
        for consumer in sorted(deps):
            for artifact in deps[consumer].requires:
                if artifact in available:
                    continue
                for provider in sorted(deps):
                    if artifact in deps[provider].provides and consumer not in graph[provider]:
                        graph[provider].append(consumer)
        return graph

    @staticmethod
    def _find_cycle(graph: Mapping[str, list[str]]) -> list[str] | None:
        """Depth-first search; returns the first cycle path found, e.g. [A, B, C, A]."""
        visiting: set[str] = set()
        done: set[str] = set()
        path: list[str] = []

        def visit(node: str) -> list[str] | None:
            visiting.add(node)
            path.append(node)
            for nxt in graph.get(node, ()):
                if nxt in visiting:
                    return path[path.index(nxt):] + [nxt]
                if nxt not in done:
                    found = visit(nxt)
                    if found:
                        return found
            visiting.discard(node)
            done.add(node)
            path.pop()
            return None

        for node in sorted(graph):
            if node not in done:
                found = visit(node)
                if found:
                    return found
        return None

    @staticmethod
    def _layer(deps: Mapping[str, WorkerDependencies], available: set[str]) -> list[list[str]]:
        """Assign every worker to exactly one phase, preserving input order within a phase."""
        satisfied = set(available)
        remaining = list(deps)
        layers: list[list[str]] = []
        while remaining:
            ready = [w for w in remaining if set(deps[w].requires) <= satisfied]
            if not ready:
                # Unreachable once cycles and missing providers are ruled out
                raise CycleDetected(remaining + remaining[:1])
            layers.append(ready)
            for w in ready:
                satisfied.update(deps[w].provides)
            remaining = [w for w in remaining if w not in ready]
        return layers
