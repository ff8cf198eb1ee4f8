"""Tests for the metrics/feedback collector."""

from __future__ import annotations

from pathlib import Path

import pytest

from conductor.feedback import ExecutionRecord, MetricsCollector, WorkerResult
from conductor.routing.history import InMemoryHistoryStore
from conductor.storage.database import Database

pytestmark = pytest.mark.anyio


def _record(
    outcome: str = "success",
    fallback: bool = False,
    results: tuple[WorkerResult, ...] = (),
    confidence: float = 0.9,
) -> ExecutionRecord:
    return ExecutionRecord(
        request_id="req-1",
        worker_id="frontend-specialist",
        score=0.7,
        confidence=confidence,
        fallback=fallback,
        outcome=outcome,
        worker_results=results,
        units_consumed=100.0,
    )


class TestRecording:
    async def test_outcomes_feed_history(self):
        history = InMemoryHistoryStore()
        collector = MetricsCollector(history)

        await collector.record(
            _record(
                outcome="partial",
                results=(
                    WorkerResult("frontend-specialist", True, 80, 1000),
                    WorkerResult("backend-specialist", False, 20, 500),
                ),
            )
        )

        snapshot = await history.snapshot()
        assert snapshot["frontend-specialist"].success_rate == pytest.approx(0.65)
        assert snapshot["backend-specialist"].success_rate == pytest.approx(0.35)
        assert snapshot["frontend-specialist"].avg_latency_ms == 1000

    async def test_records_persisted(self, tmp_path: Path):
        db = Database(data_dir=tmp_path / "cond")
        db.ensure_tables()
        collector = MetricsCollector(InMemoryHistoryStore(), db)

        await collector.record(_record())

        rows = db.recent_executions()
        assert len(rows) == 1
        assert rows[0]["outcome"] == "success"

    async def test_records_bounded(self):
        collector = MetricsCollector(InMemoryHistoryStore(), max_records=2)
        for _ in range(3):
            await collector.record(_record())
        assert len(collector.records()) == 2


class TestReport:
    def test_empty_report(self):
        report = MetricsCollector(InMemoryHistoryStore()).report()
        assert report["total_executions"] == 0
        assert report["health"] == "healthy"

    async def test_rates_and_workers(self):
        collector = MetricsCollector(InMemoryHistoryStore())
        await collector.record(
            _record(results=(WorkerResult("frontend-specialist", True, 100, 2000),))
        )
        await collector.record(
            _record(
                outcome="failed",
                fallback=True,
                confidence=0.3,
                results=(WorkerResult("frontend-specialist", False, 50, 1000),),
            )
        )

        report = collector.report()

        assert report["total_executions"] == 2
        assert report["success_rate"] == 0.5
        assert report["fallback_rate"] == 0.5
        assert report["average_confidence"] == pytest.approx(0.6)
        assert report["workers"]["frontend-specialist"] == {
            "runs": 2,
            "success_rate": 0.5,
            "average_units": 75.0,
            "average_duration_ms": 1500.0,
        }
        assert report["health"] == "warning"

    async def test_critical_health(self):
        collector = MetricsCollector(InMemoryHistoryStore())
        for _ in range(3):
            await collector.record(_record(outcome="failed"))
        assert collector.report()["health"] == "critical"

    async def test_window(self):
        collector = MetricsCollector(InMemoryHistoryStore())
        await collector.record(_record(outcome="failed"))
        await collector.record(_record())
        assert collector.report(window=1)["success_rate"] == 1.0
