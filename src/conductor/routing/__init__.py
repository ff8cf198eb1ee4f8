"""Request routing: data models, history store and the decision engine."""

from conductor.routing.engine import RoutingDecisionEngine, ranking_key
from conductor.routing.history import (
    DEFAULT_ALPHA,
    NEUTRAL_PRIOR,
    HistorySnapshot,
    InMemoryHistoryStore,
    OutcomeEntry,
    RoutingHistoryStore,
    SqliteHistoryStore,
    decay_update,
)
from conductor.routing.models import (
    Candidate,
    Classification,
    Request,
    RoutingDecision,
    WorkerProfile,
    WorkerStats,
)

__all__ = [
    "DEFAULT_ALPHA",
    "NEUTRAL_PRIOR",
    "Candidate",
    "Classification",
    "HistorySnapshot",
    "InMemoryHistoryStore",
    "OutcomeEntry",
    "Request",
    "RoutingDecision",
    "RoutingDecisionEngine",
    "RoutingHistoryStore",
    "SqliteHistoryStore",
    "WorkerProfile",
    "WorkerStats",
    "decay_update",
    "ranking_key",
]
