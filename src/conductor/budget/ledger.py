"""Budget Ledger - Admission control over shared compute-unit budgets.

Budgets are keyed ``<scope>:<key>`` (``day:2026-10-19``, ``session:abc``).
A reservation debits a pending amount on every named budget or on none; a
later commit turns it into usage and a rollback releases it.

All mutations run under one asyncio lock. Lock acquisition is bounded; a
timed-out acquisition counts as contention and is retried before a
``BudgetLedgerError`` reaches the caller.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from loguru import logger

from conductor.config import LedgerConfig
from conductor.errors import AdmissionDenied, BudgetLedgerError, UnknownReservation


class BudgetScope(StrEnum):
    """Budget scopes."""

    SESSION = "session"
    DAY = "day"
    MONTH = "month"
    PROJECT = "project"


class ReservationState(StrEnum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


def day_key(moment: datetime) -> str:
    """Daily budget key (YYYY-MM-DD)."""
    return moment.strftime("%Y-%m-%d")


def month_key(moment: datetime) -> str:
    """Monthly budget key (YYYY-MM)."""
    return moment.strftime("%Y-%m")


@dataclass(frozen=True)
class ScopeKey:
    """Reference to one budget."""

    scope: BudgetScope
    key: str

    @property
    def budget_id(self) -> str:
        return f"{self.scope}:{self.key}"


@dataclass
class Budget:
    """A budget for one scope/key. Owned by the ledger."""

    scope: BudgetScope
    key: str
    amount: float
    used: float = 0.0
    reserved: float = 0.0
    created_at: float = field(default_factory=time.time)
    warning_alerted: bool = False
    critical_alerted: bool = False

    @property
    def budget_id(self) -> str:
        return f"{self.scope}:{self.key}"

    @property
    def remaining(self) -> float:
        return max(0.0, self.amount - self.used - self.reserved)

    @property
    def utilization(self) -> float:
        if self.amount <= 0:
            return 1.0
        return (self.used + self.reserved) / self.amount


@dataclass
class Reservation:
    """A pending debit across one or more budgets."""

    reservation_id: str
    units: float
    budget_ids: tuple[str, ...]
    state: ReservationState = ReservationState.PENDING
    created_at: float = field(default_factory=time.time)
    committed_units: float = 0.0


@dataclass(frozen=True)
class UsageTransaction:
    """One committed charge, kept for usage analytics."""

    reservation_id: str
    units: float
    budget_ids: tuple[str, ...]
    request_type: str = "unknown"
    worker_units: Mapping[str, float] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of an authorized reservation."""

    authorized: bool
    reservation_id: str
    units: float
    remaining: dict[str, float]
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class BudgetAlert:
    level: str  # warning, critical
    budget_id: str
    utilization: float
    timestamp: float
    message: str


AlertCallback = Callable[[BudgetAlert], None]


class BudgetLedger:
    """
    Tracks and authorizes compute-unit consumption across scopes.

    Policy:
    - Authorized only if every named budget has ``remaining >= units``
    - Utilization at or above the warning threshold alerts but authorizes
    - Scopes without a budget are unconstrained
    """

    def __init__(
        self,
        config: LedgerConfig | None = None,
        on_alert: AlertCallback | None = None,
        install_defaults: bool = True,
        now: datetime | None = None,
    ) -> None:
        self.config = config or LedgerConfig()
        self._on_alert = on_alert
        self._budgets: dict[str, Budget] = {}
        self._reservations: dict[str, Reservation] = {}
        self._alerts: deque[BudgetAlert] = deque(maxlen=self.config.max_alerts)
        self._transactions: deque[UsageTransaction] = deque(maxlen=self.config.max_transactions)
        self._lock = asyncio.Lock()

        if install_defaults:
            moment = now or datetime.now()
            self._install(BudgetScope.DAY, day_key(moment), self.config.default_daily_budget)
            self._install(BudgetScope.MONTH, month_key(moment), self.config.default_monthly_budget)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _mutation(self) -> AsyncIterator[None]:
        """Serialize a ledger mutation, retrying bounded lock contention."""
        for attempt in range(1, self.config.max_retries + 1):
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.config.lock_timeout)
            except asyncio.TimeoutError:
                logger.debug(
                    "Ledger lock contention (attempt {}/{})", attempt, self.config.max_retries
                )
                continue
            try:
                yield
            finally:
                self._lock.release()
            return
        raise BudgetLedgerError(
            f"Ledger busy after {self.config.max_retries} attempts",
            context={"lock_timeout": self.config.lock_timeout},
        )

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    def _install(self, scope: BudgetScope, key: str, amount: float) -> Budget:
        budget = Budget(scope=BudgetScope(scope), key=key, amount=float(amount))
        self._budgets[budget.budget_id] = budget
        return budget

    async def set_budget(self, scope: BudgetScope | str, key: str, amount: float) -> Budget:
        """Create or replace a budget. Existing usage is kept when replacing."""
        if amount < 0:
            raise ValueError(f"amount must be >= 0, got {amount}")
        async with self._mutation():
            ref = ScopeKey(BudgetScope(scope), key)
            existing = self._budgets.get(ref.budget_id)
            if existing is not None:
                existing.amount = float(amount)
                existing.warning_alerted = existing.critical_alerted = False
                return existing
            return self._install(ref.scope, key, amount)

    def get(self, scope: BudgetScope | str, key: str) -> Budget | None:
        return self._budgets.get(ScopeKey(BudgetScope(scope), key).budget_id)

    def default_scopes(self, now: datetime | None = None) -> list[ScopeKey]:
        """Day and month scopes for the current period."""
        moment = now or datetime.now()
        return [ScopeKey(BudgetScope.DAY, day_key(moment)), ScopeKey(BudgetScope.MONTH, month_key(moment))]

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    async def reserve(
        self, estimated_units: float, scopes: Sequence[ScopeKey] | None = None
    ) -> ReservationResult:
        """
        Reserve units on every named scope, all-or-nothing.

        Args:
            estimated_units: Units to hold
            scopes: Budgets to debit (defaults to the current day and month)

        Returns:
            ReservationResult with the reservation id and remaining per scope

        Raises:
            AdmissionDenied: if any named budget cannot cover the units
        """
        if estimated_units < 0:
            raise ValueError(f"estimated_units must be >= 0, got {estimated_units}")
        refs = list(scopes) if scopes is not None else self.default_scopes()

        async with self._mutation():
            budgets = [b for b in (self._budgets.get(r.budget_id) for r in refs) if b is not None]
            blockers = [b for b in budgets if b.remaining < estimated_units]
            if blockers:
                remaining = {b.budget_id: b.remaining for b in budgets}
                detail = ", ".join(f"{b.budget_id} ({b.remaining:g} remaining)" for b in blockers)
                logger.warning("Admission denied for {} units: {}", estimated_units, detail)
                raise AdmissionDenied(
                    f"Would exceed budget: {detail}",
                    remaining=remaining,
                    context={"requested": estimated_units, "blocked": [b.budget_id for b in blockers]},
                )

            for budget in budgets:
                budget.reserved += estimated_units

            reservation = Reservation(
                reservation_id=f"rsv-{uuid.uuid4().hex[:12]}",
                units=float(estimated_units),
                budget_ids=tuple(b.budget_id for b in budgets),
            )
            self._reservations[reservation.reservation_id] = reservation
            warnings = [alert.message for alert in self._check_alerts(budgets)]

            return ReservationResult(
                authorized=True,
                reservation_id=reservation.reservation_id,
                units=reservation.units,
                remaining={b.budget_id: b.remaining for b in budgets},
                warnings=warnings,
            )

    def _pending(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise UnknownReservation(f"Unknown reservation: {reservation_id}")
        if reservation.state is not ReservationState.PENDING:
            raise UnknownReservation(
                f"Reservation {reservation_id} is already {reservation.state}",
                context={"state": str(reservation.state)},
            )
        return reservation

    async def commit(
        self,
        reservation_id: str,
        actual_units: float,
        request_type: str = "unknown",
        worker_units: Mapping[str, float] | None = None,
    ) -> Reservation:
        """
        Finalize a reservation with the units actually consumed.

        Units below the reservation release the difference. Units above it are
        charged only up to each budget's free headroom. The charge is logged
        for ``analytics()``, attributed to ``worker_units`` when given.
        """
        if actual_units < 0:
            raise ValueError(f"actual_units must be >= 0, got {actual_units}")
        async with self._mutation():
            reservation = self._pending(reservation_id)
            touched: list[Budget] = []
            for budget_id in reservation.budget_ids:
                budget = self._budgets.get(budget_id)
                if budget is None:
                    # Rolled over since the reservation was made
                    continue
                budget.reserved = max(0.0, budget.reserved - reservation.units)
                charge = min(float(actual_units), budget.remaining)
                if charge < actual_units:
                    logger.warning(
                        "Overage on {}: {} of {} units not charged",
                        budget_id,
                        actual_units - charge,
                        actual_units,
                    )
                budget.used += charge
                touched.append(budget)

            reservation.state = ReservationState.COMMITTED
            reservation.committed_units = float(actual_units)
            self._transactions.append(
                UsageTransaction(
                    reservation_id=reservation_id,
                    units=float(actual_units),
                    budget_ids=reservation.budget_ids,
                    request_type=request_type,
                    worker_units=dict(worker_units or {"unknown": float(actual_units)}),
                )
            )
            self._check_alerts(touched)
            logger.debug(
                "Committed {} ({} reserved, {} used)", reservation_id, reservation.units, actual_units
            )
            return reservation

    async def rollback(self, reservation_id: str) -> Reservation:
        """Release a pending reservation entirely."""
        async with self._mutation():
            reservation = self._pending(reservation_id)
            for budget_id in reservation.budget_ids:
                budget = self._budgets.get(budget_id)
                if budget is not None:
                    budget.reserved = max(0.0, budget.reserved - reservation.units)
            reservation.state = ReservationState.ROLLED_BACK
            logger.debug("Rolled back {} ({} units)", reservation_id, reservation.units)
            return reservation

    def reservation(self, reservation_id: str) -> Reservation | None:
        return self._reservations.get(reservation_id)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _check_alerts(self, budgets: Iterable[Budget]) -> list[BudgetAlert]:
        raised: list[BudgetAlert] = []
        for budget in budgets:
            utilization = budget.utilization
            if utilization >= self.config.critical_threshold and not budget.critical_alerted:
                budget.critical_alerted = budget.warning_alerted = True
                raised.append(self._alert("critical", budget, utilization))
            elif utilization >= self.config.warning_threshold and not budget.warning_alerted:
                budget.warning_alerted = True
                raised.append(self._alert("warning", budget, utilization))
        return raised

    def _alert(self, level: str, budget: Budget, utilization: float) -> BudgetAlert:
        alert = BudgetAlert(
            level=level,
            budget_id=budget.budget_id,
            utilization=utilization,
            timestamp=time.time(),
            message=f"{level.upper()}: Budget {budget.budget_id} at {round(utilization * 100)}%",
        )
        self._alerts.append(alert)
        logger.warning("Budget alert: {}", alert.message)
        if self._on_alert is not None:
            try:
                self._on_alert(alert)
            except Exception as exc:
                logger.error("Budget alert callback failed: {}", exc)
        return alert

    def alerts(self, limit: int = 10) -> list[BudgetAlert]:
        """Most recent alerts first."""
        return list(reversed(self._alerts))[:limit]

    # ------------------------------------------------------------------
    # Usage analytics
    # ------------------------------------------------------------------

    def transactions(self, budget_id: str | None = None) -> list[UsageTransaction]:
        if budget_id is None:
            return list(self._transactions)
        return [t for t in self._transactions if budget_id in t.budget_ids]

    def analytics(self, budget_id: str | None = None, window: float | None = None) -> dict[str, Any]:
        """
        Committed usage totals, optionally for one budget or the last ``window`` seconds.

        Returns:
            Transaction count, total and average units, units by worker and
            by request type, and the hour of day with the most units.
        """
        cutoff = time.time() - window if window is not None else 0.0
        recent = [t for t in self.transactions(budget_id) if t.timestamp >= cutoff]

        by_worker: dict[str, float] = {}
        by_type: dict[str, float] = {}
        by_hour: dict[int, float] = {}
        for t in recent:
            by_type[t.request_type] = by_type.get(t.request_type, 0.0) + t.units
            for worker_id, units in t.worker_units.items():
                by_worker[worker_id] = by_worker.get(worker_id, 0.0) + units
            hour = datetime.fromtimestamp(t.timestamp).hour
            by_hour[hour] = by_hour.get(hour, 0.0) + t.units

        total = sum(t.units for t in recent)
        return {
            "total_transactions": len(recent),
            "total_units": total,
            "average_units": total / len(recent) if recent else 0.0,
            "usage_by_worker": dict(sorted(by_worker.items())),
            "usage_by_type": dict(sorted(by_type.items())),
            "peak_hour": max(by_hour, key=lambda h: (by_hour[h], -h)) if by_hour else None,
        }

    # ------------------------------------------------------------------
    # Periods
    # ------------------------------------------------------------------

    async def rollover(self, now: datetime | None = None) -> list[str]:
        """
        Reset day/month budgets whose period has ended.

        Returns:
            Budget ids that were replaced
        """
        moment = now or datetime.now()
        current = {BudgetScope.DAY: day_key(moment), BudgetScope.MONTH: month_key(moment)}
        replaced: list[str] = []

        async with self._mutation():
            for budget in list(self._budgets.values()):
                period_key = current.get(budget.scope)
                if period_key is None or budget.key == period_key:
                    continue
                del self._budgets[budget.budget_id]
                replaced.append(budget.budget_id)
                fresh = ScopeKey(budget.scope, period_key)
                if fresh.budget_id not in self._budgets:
                    self._install(budget.scope, period_key, budget.amount)

        if replaced:
            logger.info("Budget rollover: {}", ", ".join(replaced))
        return replaced

    # ------------------------------------------------------------------
    # Reporting and persistence
    # ------------------------------------------------------------------

    def status(self, scope: BudgetScope | str | None = None) -> dict[str, Any]:
        """Per-budget utilization and a summary."""
        budgets: list[dict[str, Any]] = []
        wanted = BudgetScope(scope) if scope is not None else None
        warning_count = critical_count = over_count = 0

        for budget in sorted(self._budgets.values(), key=lambda b: b.budget_id):
            if wanted is not None and budget.scope != wanted:
                continue
            utilization = budget.utilization
            is_warning = utilization >= self.config.warning_threshold
            is_critical = utilization >= self.config.critical_threshold
            is_over = budget.remaining == 0
            warning_count += is_warning
            critical_count += is_critical
            over_count += is_over
            budgets.append(
                {
                    "id": budget.budget_id,
                    "scope": str(budget.scope),
                    "key": budget.key,
                    "amount": budget.amount,
                    "used": budget.used,
                    "reserved": budget.reserved,
                    "remaining": budget.remaining,
                    "utilization": round(utilization, 4),
                    "is_warning": is_warning,
                    "is_critical": is_critical,
                    "is_over_budget": is_over,
                }
            )

        if over_count or critical_count:
            health = "critical"
        elif warning_count:
            health = "warning"
        else:
            health = "healthy"

        return {
            "health": health,
            "budgets": budgets,
            "summary": {
                "total_budgets": len(budgets),
                "warning_count": warning_count,
                "critical_count": critical_count,
                "over_budget_count": over_count,
                "pending_reservations": sum(
                    1 for r in self._reservations.values() if r.state is ReservationState.PENDING
                ),
            },
        }

    def snapshot(self) -> list[dict[str, Any]]:
        """One JSON-ready record per budget: ``{scope, key, amount, used, timestamp}``."""
        now = time.time()
        return [
            {
                "scope": str(b.scope),
                "key": b.key,
                "amount": b.amount,
                "used": b.used,
                "timestamp": now,
            }
            for b in sorted(self._budgets.values(), key=lambda b: b.budget_id)
        ]

    def restore(self, records: Iterable[dict[str, Any]]) -> None:
        """Load budgets from snapshot records, replacing same-id budgets."""
        for record in records:
            budget = self._install(BudgetScope(record["scope"]), record["key"], record["amount"])
            budget.used = min(float(record.get("used", 0.0)), budget.amount)

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.snapshot(), indent=2))

    def load(self, path: Path) -> bool:
        """Restore from a snapshot file. Returns False when the file is missing."""
        if not path.exists():
            return False
        self.restore(json.loads(path.read_text()))
        return True
