"""Tests for the budget ledger."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from conductor.budget import (
    BudgetAlert,
    BudgetLedger,
    BudgetScope,
    ReservationState,
    ScopeKey,
    day_key,
    month_key,
)
from conductor.config import LedgerConfig
from conductor.errors import AdmissionDenied, BudgetLedgerError, UnknownReservation

pytestmark = pytest.mark.anyio

PROJECT = ScopeKey(BudgetScope.PROJECT, "alpha")
SESSION = ScopeKey(BudgetScope.SESSION, "s1")


def _ledger(**kwargs) -> BudgetLedger:
    return BudgetLedger(install_defaults=False, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════
# ADMISSION
# ═══════════════════════════════════════════════════════════════════════════


class TestAdmission:
    async def test_denied_when_reservation_exceeds_remaining(self):
        """amount=1000, used=950, reserve 100 -> denied, remaining stays 50."""
        ledger = _ledger()
        ledger.restore([{"scope": "project", "key": "alpha", "amount": 1000, "used": 950}])

        with pytest.raises(AdmissionDenied) as exc_info:
            await ledger.reserve(100, [PROJECT])

        assert exc_info.value.code == "ADMISSION_DENIED"
        assert exc_info.value.remaining == {"project:alpha": 50}
        assert ledger.get("project", "alpha").remaining == 50
        assert ledger.get("project", "alpha").reserved == 0

    async def test_reservation_that_fills_budget_is_allowed(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        result = await ledger.reserve(1000, [PROJECT])
        assert result.authorized
        assert result.remaining["project:alpha"] == 0

    async def test_remaining_after_reservation(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        before = ledger.get("project", "alpha").remaining
        await ledger.reserve(300, [PROJECT])
        assert ledger.get("project", "alpha").remaining == max(0, before - 300)

    async def test_all_or_nothing_across_scopes(self):
        """A denial on one scope leaves every other scope untouched."""
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        await ledger.set_budget("session", "s1", 50)

        with pytest.raises(AdmissionDenied):
            await ledger.reserve(100, [PROJECT, SESSION])

        assert ledger.get("project", "alpha").reserved == 0
        assert ledger.get("session", "s1").reserved == 0

    async def test_scope_without_budget_is_unconstrained(self):
        ledger = _ledger()
        result = await ledger.reserve(1_000_000, [PROJECT])
        assert result.authorized
        assert result.remaining == {}

    async def test_default_scopes_are_day_and_month(self):
        now = datetime(2026, 10, 19, 12, 0)
        ledger = BudgetLedger(now=now)
        assert ledger.get("day", "2026-10-19").amount == 10_000
        assert ledger.get("month", "2026-10").amount == 300_000
        refs = ledger.default_scopes(now)
        assert [r.budget_id for r in refs] == ["day:2026-10-19", "month:2026-10"]

    async def test_negative_units_rejected(self):
        ledger = _ledger()
        with pytest.raises(ValueError):
            await ledger.reserve(-1, [PROJECT])


# ═══════════════════════════════════════════════════════════════════════════
# COMMIT / ROLLBACK
# ═══════════════════════════════════════════════════════════════════════════


class TestSettlement:
    async def test_commit_releases_unused_difference(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        result = await ledger.reserve(400, [PROJECT])

        reservation = await ledger.commit(result.reservation_id, 250)

        budget = ledger.get("project", "alpha")
        assert reservation.state is ReservationState.COMMITTED
        assert budget.used == 250
        assert budget.reserved == 0
        assert budget.remaining == 750

    async def test_commit_overage_capped_at_amount(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        first = await ledger.reserve(900, [PROJECT])
        await ledger.commit(first.reservation_id, 900)
        second = await ledger.reserve(100, [PROJECT])

        await ledger.commit(second.reservation_id, 400)

        budget = ledger.get("project", "alpha")
        assert budget.used == 1000
        assert budget.used <= budget.amount

    async def test_rollback_releases_everything(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        await ledger.set_budget("session", "s1", 500)
        result = await ledger.reserve(200, [PROJECT, SESSION])

        reservation = await ledger.rollback(result.reservation_id)

        assert reservation.state is ReservationState.ROLLED_BACK
        assert ledger.get("project", "alpha").remaining == 1000
        assert ledger.get("session", "s1").remaining == 500

    async def test_double_settlement_rejected(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        result = await ledger.reserve(100, [PROJECT])
        await ledger.commit(result.reservation_id, 100)

        with pytest.raises(UnknownReservation):
            await ledger.rollback(result.reservation_id)
        with pytest.raises(UnknownReservation):
            await ledger.commit("rsv-missing", 10)

    async def test_concurrent_reservations_never_overbook(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)

        async def attempt() -> bool:
            try:
                await ledger.reserve(150, [PROJECT])
            except AdmissionDenied:
                return False
            return True

        outcomes = await asyncio.gather(*(attempt() for _ in range(10)))

        assert sum(outcomes) == 6
        assert ledger.get("project", "alpha").reserved == 900


# ═══════════════════════════════════════════════════════════════════════════
# CONTENTION
# ═══════════════════════════════════════════════════════════════════════════


class TestContention:
    async def test_contention_surfaces_after_retries(self):
        ledger = _ledger(config=LedgerConfig(lock_timeout=0.01, max_retries=3))
        await ledger._lock.acquire()
        try:
            with pytest.raises(BudgetLedgerError) as exc_info:
                await ledger.reserve(10, [PROJECT])
        finally:
            ledger._lock.release()
        assert exc_info.value.code == "BUDGET_LEDGER_CONTENTION"

    async def test_contention_retried_until_lock_frees(self):
        ledger = _ledger(config=LedgerConfig(lock_timeout=0.05, max_retries=3))
        await ledger.set_budget("project", "alpha", 100)
        await ledger._lock.acquire()
        asyncio.get_running_loop().call_later(0.07, ledger._lock.release)

        result = await ledger.reserve(10, [PROJECT])

        assert result.authorized


# ═══════════════════════════════════════════════════════════════════════════
# ALERTS, STATUS, PERSISTENCE
# ═══════════════════════════════════════════════════════════════════════════


class TestAlertsAndStatus:
    async def test_warning_then_critical_alerts(self):
        seen: list[BudgetAlert] = []
        ledger = _ledger(on_alert=seen.append)
        await ledger.set_budget("project", "alpha", 1000)

        first = await ledger.reserve(850, [PROJECT])
        assert first.authorized
        assert len(first.warnings) == 1
        assert [a.level for a in seen] == ["warning"]

        await ledger.reserve(120, [PROJECT])
        assert [a.level for a in seen] == ["warning", "critical"]
        assert ledger.alerts()[0].level == "critical"

    async def test_alert_callback_errors_do_not_block(self):
        def broken(alert: BudgetAlert) -> None:
            raise RuntimeError("sink down")

        ledger = _ledger(on_alert=broken)
        await ledger.set_budget("project", "alpha", 100)
        result = await ledger.reserve(90, [PROJECT])
        assert result.authorized

    async def test_status_health(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        assert ledger.status()["health"] == "healthy"

        await ledger.reserve(820, [PROJECT])
        status = ledger.status()
        assert status["health"] == "warning"
        assert status["summary"]["pending_reservations"] == 1
        assert status["budgets"][0]["id"] == "project:alpha"

    async def test_rollover_replaces_stale_periods(self):
        ledger = BudgetLedger(now=datetime(2026, 10, 19))
        replaced = await ledger.rollover(datetime(2026, 11, 2))

        assert sorted(replaced) == ["day:2026-10-19", "month:2026-10"]
        assert ledger.get("day", day_key(datetime(2026, 11, 2))) is not None
        assert ledger.get("month", month_key(datetime(2026, 11, 2))).used == 0

    async def test_snapshot_round_trip(self, tmp_path: Path):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        result = await ledger.reserve(300, [PROJECT])
        await ledger.commit(result.reservation_id, 300)

        path = tmp_path / "budgets.json"
        ledger.save(path)
        records = ledger.snapshot()
        assert set(records[0]) == {"scope", "key", "amount", "used", "timestamp"}

        restored = _ledger()
        assert restored.load(path)
        assert restored.get("project", "alpha").used == 300
        assert not restored.load(tmp_path / "missing.json")

    async def test_status_rejects_unknown_scope(self):
        ledger = _ledger()
        with pytest.raises(ValueError):
            ledger.status("decade")


# ═══════════════════════════════════════════════════════════════════════════
# USAGE ANALYTICS
# ═══════════════════════════════════════════════════════════════════════════


class TestAnalytics:
    async def test_usage_by_worker_and_type(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 10_000)

        first = await ledger.reserve(500, [PROJECT])
        await ledger.commit(
            first.reservation_id,
            300,
            request_type="frontend",
            worker_units={"frontend-specialist": 200, "backend-specialist": 100},
        )
        second = await ledger.reserve(500, [PROJECT])
        await ledger.commit(
            second.reservation_id,
            100,
            request_type="backend",
            worker_units={"backend-specialist": 100},
        )

        report = ledger.analytics()
        assert report["total_transactions"] == 2
        assert report["total_units"] == 400
        assert report["average_units"] == 200
        assert report["usage_by_worker"] == {"backend-specialist": 200, "frontend-specialist": 200}
        assert report["usage_by_type"] == {"backend": 100, "frontend": 300}
        assert report["peak_hour"] in range(24)

    async def test_unattributed_usage(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        result = await ledger.reserve(100, [PROJECT])
        await ledger.commit(result.reservation_id, 40)

        [transaction] = ledger.transactions()
        assert transaction.budget_ids == ("project:alpha",)
        assert ledger.analytics()["usage_by_worker"] == {"unknown": 40}
        assert ledger.analytics()["usage_by_type"] == {"unknown": 40}

    async def test_rollbacks_not_recorded(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        result = await ledger.reserve(100, [PROJECT])
        await ledger.rollback(result.reservation_id)

        report = ledger.analytics()
        assert report["total_transactions"] == 0
        assert report["average_units"] == 0.0
        assert report["peak_hour"] is None

    async def test_filter_by_budget(self):
        ledger = _ledger()
        await ledger.set_budget("project", "alpha", 1000)
        await ledger.set_budget("session", "s1", 1000)
        a = await ledger.reserve(10, [PROJECT])
        await ledger.commit(a.reservation_id, 10)
        b = await ledger.reserve(20, [SESSION])
        await ledger.commit(b.reservation_id, 20)

        assert ledger.analytics("session:s1")["total_units"] == 20
        assert ledger.analytics(window=3600)["total_units"] == 30
