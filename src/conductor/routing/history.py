"""
Routing History Store: Decayed Worker Performance

Uses an Exponential Moving Average (EMA) over outcomes so recent results
dominate:

    rate' = alpha * outcome + (1 - alpha) * rate

A worker with no history starts from a neutral prior. Every update appends
the raw outcome first and then recomputes a fresh immutable ``WorkerStats``;
a snapshot handed to a concurrent scorer call is never mutated.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

import aiosqlite

from conductor.routing.models import WorkerStats

DEFAULT_ALPHA = 0.3
NEUTRAL_PRIOR = 0.5

HistorySnapshot = Mapping[str, WorkerStats]


@dataclass(frozen=True)
class OutcomeEntry:
    """One raw outcome in the append log."""

    worker_id: str
    success: bool
    tokens: float
    latency_ms: float
    timestamp: float


def decay_update(
    previous: WorkerStats | None,
    entry: OutcomeEntry,
    alpha: float = DEFAULT_ALPHA,
    prior: float = NEUTRAL_PRIOR,
) -> WorkerStats:
    """Fold one outcome into a worker's stats, returning a new object."""
    outcome = 1.0 if entry.success else 0.0
    if previous is None:
        return WorkerStats(
            worker_id=entry.worker_id,
            success_rate=alpha * outcome + (1 - alpha) * prior,
            avg_tokens=entry.tokens,
            avg_latency_ms=entry.latency_ms,
            samples=1,
            updated_at=entry.timestamp,
        )
    return WorkerStats(
        worker_id=entry.worker_id,
        success_rate=alpha * outcome + (1 - alpha) * previous.success_rate,
        avg_tokens=alpha * entry.tokens + (1 - alpha) * previous.avg_tokens,
        avg_latency_ms=alpha * entry.latency_ms + (1 - alpha) * previous.avg_latency_ms,
        samples=previous.samples + 1,
        updated_at=entry.timestamp,
    )


class RoutingHistoryStore(Protocol):
    """Owned, injected store of per-worker routing history."""

    async def snapshot(self) -> HistorySnapshot: ...

    async def record_outcome(
        self, worker_id: str, success: bool, tokens: float = 0.0, latency_ms: float = 0.0
    ) -> WorkerStats: ...


class InMemoryHistoryStore:
    """Process-scoped history store."""

    def __init__(self, alpha: float = DEFAULT_ALPHA, prior: float = NEUTRAL_PRIOR) -> None:
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0.0, 1.0], got {alpha}")
        self.alpha = alpha
        self.prior = prior
        self._log: list[OutcomeEntry] = []
        self._stats: Mapping[str, WorkerStats] = MappingProxyType({})
        self._lock = asyncio.Lock()

    async def snapshot(self) -> HistorySnapshot:
        return self._stats

    async def record_outcome(
        self, worker_id: str, success: bool, tokens: float = 0.0, latency_ms: float = 0.0
    ) -> WorkerStats:
        entry = OutcomeEntry(worker_id, success, float(tokens), float(latency_ms), time.time())
        async with self._lock:
            self._log.append(entry)
            updated = decay_update(self._stats.get(worker_id), entry, self.alpha, self.prior)
            stats = dict(self._stats)
            stats[worker_id] = updated
            self._stats = MappingProxyType(stats)
        return updated

    def outcomes(self, worker_id: str | None = None) -> list[OutcomeEntry]:
        if worker_id is None:
            return list(self._log)
        return [e for e in self._log if e.worker_id == worker_id]


class SqliteHistoryStore:
    """
    aiosqlite-backed history store.

    The ``worker_outcomes`` table is the append log; ``worker_stats`` holds
    the recomputed decayed view.
    """

    DB_PATH = Path.home() / ".conductor" / "data" / "history.db"

    def __init__(
        self,
        db_path: str | Path | None = None,
        alpha: float = DEFAULT_ALPHA,
        prior: float = NEUTRAL_PRIOR,
    ) -> None:
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.alpha = alpha
        self.prior = prior
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> SqliteHistoryStore:
        await self._init_db()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def _init_db(self) -> None:
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS worker_outcomes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                worker_id TEXT NOT NULL,
                success INTEGER NOT NULL,
                tokens REAL NOT NULL DEFAULT 0.0,
                latency_ms REAL NOT NULL DEFAULT 0.0,
                recorded_at REAL NOT NULL
            )
        """)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS worker_stats (
                worker_id TEXT PRIMARY KEY,
                success_rate REAL NOT NULL,
                avg_tokens REAL NOT NULL DEFAULT 0.0,
                avg_latency_ms REAL NOT NULL DEFAULT 0.0,
                samples INTEGER NOT NULL DEFAULT 0,
                updated_at REAL NOT NULL,
                CHECK (success_rate BETWEEN 0.0 AND 1.0),
                CHECK (samples >= 0)
            )
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_outcomes_worker
            ON worker_outcomes(worker_id, recorded_at DESC)
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @staticmethod
    def _row_to_stats(row: tuple) -> WorkerStats:
        return WorkerStats(
            worker_id=row[0],
            success_rate=row[1],
            avg_tokens=row[2],
            avg_latency_ms=row[3],
            samples=row[4],
            updated_at=row[5],
        )

    async def snapshot(self) -> HistorySnapshot:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT worker_id, success_rate, avg_tokens, avg_latency_ms, samples, updated_at "
            "FROM worker_stats"
        )
        rows = await cursor.fetchall()
        return MappingProxyType({row[0]: self._row_to_stats(row) for row in rows})

    async def record_outcome(
        self, worker_id: str, success: bool, tokens: float = 0.0, latency_ms: float = 0.0
    ) -> WorkerStats:
        assert self._db is not None
        entry = OutcomeEntry(worker_id, success, float(tokens), float(latency_ms), time.time())

        async with self._lock:
            await self._db.execute(
                "INSERT INTO worker_outcomes (worker_id, success, tokens, latency_ms, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (worker_id, 1 if success else 0, entry.tokens, entry.latency_ms, entry.timestamp),
            )
            cursor = await self._db.execute(
                "SELECT worker_id, success_rate, avg_tokens, avg_latency_ms, samples, updated_at "
                "FROM worker_stats WHERE worker_id = ?",
                (worker_id,),
            )
            row = await cursor.fetchone()
            previous = self._row_to_stats(row) if row else None
            updated = decay_update(previous, entry, self.alpha, self.prior)

            await self._db.execute(
                """INSERT INTO worker_stats
                   (worker_id, success_rate, avg_tokens, avg_latency_ms, samples, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(worker_id) DO UPDATE SET
                       success_rate = excluded.success_rate,
                       avg_tokens = excluded.avg_tokens,
                       avg_latency_ms = excluded.avg_latency_ms,
                       samples = excluded.samples,
                       updated_at = excluded.updated_at""",
                (
                    updated.worker_id,
                    updated.success_rate,
                    updated.avg_tokens,
                    updated.avg_latency_ms,
                    updated.samples,
                    updated.updated_at,
                ),
            )
            await self._db.commit()
        return updated

    async def outcome_count(self, worker_id: str) -> int:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT COUNT(*) FROM worker_outcomes WHERE worker_id = ?", (worker_id,)
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0
