"""Dependency-aware parallel planning."""

from conductor.planning.planner import (
    DEFAULT_COMPATIBLE,
    DEFAULT_DEPENDENCIES,
    DEFAULT_RELEVANCE_KEYWORDS,
    ParallelPlan,
    ParallelPlanner,
    Phase,
    PlanningRules,
    PlanOutcome,
    WorkerDependencies,
)

__all__ = [
    "DEFAULT_COMPATIBLE",
    "DEFAULT_DEPENDENCIES",
    "DEFAULT_RELEVANCE_KEYWORDS",
    "ParallelPlan",
    "ParallelPlanner",
    "Phase",
    "PlanOutcome",
    "PlanningRules",
    "WorkerDependencies",
]
