"""Specialist directory.

``StaticDirectory`` serves a fixed roster per request type. Its confidence,
efficiency and success figures are seeds only; observed outcomes in the
history store replace the success and latency seeds once a worker has run.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Protocol

from conductor.routing.models import WorkerProfile


class SpecialistDirectory(Protocol):
    async def list_candidates(self, request_type: str) -> list[WorkerProfile]: ...


# worker -> (seed success rate, average latency ms, token efficiency)
_SEEDS: dict[str, tuple[float, float, float]] = {
    "frontend-specialist": (0.92, 3000.0, 0.45),
    "backend-specialist": (0.89, 4000.0, 0.42),
    "database-specialist": (0.91, 3500.0, 0.42),
    "deployment-specialist": (0.87, 5000.0, 0.46),
    "testing-specialist": (0.85, 4500.0, 0.40),
}

_CAPABILITIES: dict[str, tuple[str, ...]] = {
    "frontend-specialist": ("frontend", "ui", "interface", "design", "layout", "style", "page"),
    "backend-specialist": ("backend", "api", "endpoint", "server", "auth", "login", "logic"),
    "database-specialist": ("database", "schema", "query", "model", "table", "migration", "store"),
    "deployment-specialist": ("deployment", "deploy", "hosting", "production", "live", "publish"),
    "testing-specialist": ("testing", "test", "tests", "bug", "verify", "quality", "check"),
}

# request type -> [(worker, base confidence for that type)]
_ROSTER: dict[str, tuple[tuple[str, float], ...]] = {
    "frontend": (("frontend-specialist", 0.75), ("backend-specialist", 0.45)),
    "backend": (
        ("backend-specialist", 0.73),
        ("database-specialist", 0.55),
        ("frontend-specialist", 0.40),
    ),
    "database": (("database-specialist", 0.74), ("backend-specialist", 0.60)),
    "deployment": (("deployment-specialist", 0.70), ("backend-specialist", 0.45)),
    "testing": (("testing-specialist", 0.68), ("backend-specialist", 0.50)),
}


def default_roster() -> dict[str, list[WorkerProfile]]:
    roster: dict[str, list[WorkerProfile]] = {}
    for request_type, entries in _ROSTER.items():
        profiles = []
        for worker_id, confidence in entries:
            success, latency, efficiency = _SEEDS[worker_id]
            profiles.append(
                WorkerProfile(
                    worker_id=worker_id,
                    capabilities=_CAPABILITIES[worker_id],
                    base_confidence=confidence,
                    token_efficiency=efficiency,
                    seed_success_rate=success,
                    average_latency_ms=latency,
                )
            )
        roster[request_type] = profiles
    return roster


class StaticDirectory:
    """In-process directory with mutable load counters."""

    def __init__(self, roster: Mapping[str, Sequence[WorkerProfile]] | None = None) -> None:
        self._roster = {k: list(v) for k, v in (roster or default_roster()).items()}
        self._load: dict[str, int] = {}

    async def list_candidates(self, request_type: str) -> list[WorkerProfile]:
        return [
            replace(p, current_load=self._load.get(p.worker_id, p.current_load))
            for p in self._roster.get(request_type, [])
        ]

    def types(self) -> list[str]:
        return sorted(self._roster)

    def set_load(self, worker_id: str, load: int) -> None:
        if load < 0:
            raise ValueError(f"load must be >= 0, got {load}")
        self._load[worker_id] = load
