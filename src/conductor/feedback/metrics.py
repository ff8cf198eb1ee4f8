"""Metrics/Feedback Collector - Outcome log and history feedback.

Every finished request yields one ExecutionRecord. Recording it appends to
the in-memory log (and optionally the database), then folds each worker's
result into the routing history store, which the scorer reads on the next
request.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from conductor.routing.history import RoutingHistoryStore
from conductor.storage.database import Database

# Health thresholds over recent executions
HEALTHY_SUCCESS_RATE = 0.8
WARNING_SUCCESS_RATE = 0.5
MAX_FALLBACK_RATE = 0.2


@dataclass(frozen=True)
class WorkerResult:
    """What one worker did for one request."""

    worker_id: str
    success: bool
    units_consumed: float = 0.0
    duration_ms: float = 0.0


@dataclass(frozen=True)
class ExecutionRecord:
    request_id: str
    worker_id: str
    score: float
    confidence: float
    fallback: bool
    outcome: str  # success | partial | failed | cancelled
    step_statuses: Mapping[str, str] = field(default_factory=dict)
    worker_results: tuple[WorkerResult, ...] = ()
    units_consumed: float = 0.0
    duration_ms: float = 0.0
    mode: str = "serial"
    timestamp: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.outcome == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "worker_id": self.worker_id,
            "score": self.score,
            "confidence": self.confidence,
            "fallback": self.fallback,
            "outcome": self.outcome,
            "mode": self.mode,
            "step_statuses": dict(self.step_statuses),
            "units_consumed": self.units_consumed,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
        }


class MetricsCollector:
    """Records outcomes and feeds them back into the routing history."""

    def __init__(
        self,
        history: RoutingHistoryStore,
        database: Database | None = None,
        max_records: int = 1000,
    ) -> None:
        self.history = history
        self.database = database
        self._records: deque[ExecutionRecord] = deque(maxlen=max_records)

    async def record(self, record: ExecutionRecord) -> None:
        """Append the record, then update each worker's decayed history."""
        self._records.append(record)
        if self.database is not None:
            self.database.record_execution(record.to_dict())

        for result in record.worker_results:
            stats = await self.history.record_outcome(
                result.worker_id,
                result.success,
                tokens=result.units_consumed,
                latency_ms=result.duration_ms,
            )
            logger.debug(
                "History {}: success_rate={:.3f} samples={}",
                result.worker_id,
                stats.success_rate,
                stats.samples,
            )

    def records(self, limit: int = 100) -> list[ExecutionRecord]:
        return list(self._records)[-limit:]

    def report(self, window: int | None = None) -> dict[str, Any]:
        """Success rate, fallback rate, average confidence, per-worker stats and health."""
        recent = list(self._records) if window is None else self.records(window)
        total = len(recent)
        if total == 0:
            return {
                "total_executions": 0,
                "success_rate": 0.0,
                "fallback_rate": 0.0,
                "average_confidence": 0.0,
                "average_units": 0.0,
                "workers": {},
                "health": "healthy",
            }

        success_rate = sum(1 for r in recent if r.success) / total
        fallback_rate = sum(1 for r in recent if r.fallback) / total

        workers: dict[str, dict[str, Any]] = {}
        for record in recent:
            for result in record.worker_results:
                entry = workers.setdefault(
                    result.worker_id,
                    {"runs": 0, "successes": 0, "units": 0.0, "duration_ms": 0.0},
                )
                entry["runs"] += 1
                entry["successes"] += 1 if result.success else 0
                entry["units"] += result.units_consumed
                entry["duration_ms"] += result.duration_ms

        per_worker = {
            worker_id: {
                "runs": e["runs"],
                "success_rate": e["successes"] / e["runs"],
                "average_units": e["units"] / e["runs"],
                "average_duration_ms": e["duration_ms"] / e["runs"],
            }
            for worker_id, e in sorted(workers.items())
        }

        return {
            "total_executions": total,
            "success_rate": success_rate,
            "fallback_rate": fallback_rate,
            "average_confidence": sum(r.confidence for r in recent) / total,
            "average_units": sum(r.units_consumed for r in recent) / total,
            "workers": per_worker,
            "health": self._health(success_rate, fallback_rate),
        }

    @staticmethod
    def _health(success_rate: float, fallback_rate: float) -> str:
        if success_rate < WARNING_SUCCESS_RATE:
            return "critical"
        if success_rate < HEALTHY_SUCCESS_RATE or fallback_rate > MAX_FALLBACK_RATE:
            return "warning"
        return "healthy"
