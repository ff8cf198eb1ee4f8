"""Orchestrator - Request in, routed and executed workflow out."""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from conductor.budget.ledger import BudgetAlert, BudgetLedger, ScopeKey
from conductor.config import EngineConfig
from conductor.engine.events import EventBus, EventType
from conductor.engine.workflow import (
    ArtifactBoard,
    CancelToken,
    StepStatus,
    WorkerRunner,
    WorkflowExecutor,
    WorkflowResult,
    WorkflowStep,
)
from conductor.errors import ConfigurationError, DependencyTimeout
from conductor.feedback.metrics import ExecutionRecord, MetricsCollector, WorkerResult
from conductor.logger import get_request_logger
from conductor.planning.planner import ParallelPlan, ParallelPlanner, PlanningRules, PlanOutcome
from conductor.routing.classifier import Classifier
from conductor.routing.directory import SpecialistDirectory
from conductor.routing.engine import RoutingDecisionEngine
from conductor.routing.history import InMemoryHistoryStore, RoutingHistoryStore
from conductor.routing.models import Request, RoutingDecision
from conductor.scoring.scorer import RoutingScorer, ScoringWeights
from conductor.storage.database import Database

DEFAULT_ESTIMATED_UNITS = 500.0


@dataclass(frozen=True)
class RouteResult:
    """Routing and planning without execution."""

    request: Request
    decision: RoutingDecision
    plan: PlanOutcome

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": {
                "id": self.request.id,
                "type": self.request.classified_type,
                "confidence": self.request.confidence,
                "keywords": list(self.request.keywords),
            },
            "decision": self.decision.to_dict(),
            "plan": {
                "mode": self.plan.mode,
                "rejection": self.plan.rejection.to_dict() if self.plan.rejection else None,
                **self.plan.plan.to_dict(),
            },
        }


@dataclass
class OrchestrationResult:
    route: RouteResult
    workflow: WorkflowResult
    reservation_id: str
    outcome: str  # success, partial, failed, cancelled
    units_consumed: float
    serial_fallback: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.route.to_dict(),
            "workflow": self.workflow.to_dict(),
            "reservation_id": self.reservation_id,
            "outcome": self.outcome,
            "units_consumed": self.units_consumed,
            "serial_fallback": self.serial_fallback,
            "duration_ms": self.duration_ms,
        }


class Orchestrator:
    """
    Wires the engine together.

    Workflow:
    1. Classify the request
    2. Reserve budget (AdmissionDenied propagates)
    3. Score directory candidates and decide
    4. Plan (parallel or serial)
    5. Execute steps, falling back to serial on dependency timeout
    6. Commit the reservation, or roll it back on cancellation or error
    7. Record the outcome for the next decision
    """

    def __init__(
        self,
        classifier: Classifier,
        directory: SpecialistDirectory,
        runner: WorkerRunner | None = None,
        ledger: BudgetLedger | None = None,
        history: RoutingHistoryStore | None = None,
        config: EngineConfig | None = None,
        events: EventBus | None = None,
        database: Database | None = None,
        planning_rules: PlanningRules | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.classifier = classifier
        self.directory = directory
        self.events = events or EventBus()
        self.database = database
        self.ledger = ledger or BudgetLedger(self.config.ledger, on_alert=self._publish_alert)
        self.history = history or InMemoryHistoryStore(alpha=self.config.routing.history_decay)
        self.scorer = RoutingScorer(ScoringWeights.from_config(self.config.routing))
        self.engine = RoutingDecisionEngine(self.config.routing)
        self.planner = ParallelPlanner(self.config.planner, planning_rules)
        self.executor = (
            WorkflowExecutor(runner, self.config.executor, self.events) if runner else None
        )
        self.metrics = MetricsCollector(self.history, database)

    def _publish_alert(self, alert: BudgetAlert) -> None:
        self.events.emit(EventType.BUDGET_ALERT, **asdict(alert))

    # ═══════════════════════════════════════════════════════════════════════
    # ROUTING
    # ═══════════════════════════════════════════════════════════════════════

    async def classify(
        self,
        text: str,
        session_context: Mapping[str, Any] | None = None,
        request_id: str | None = None,
    ) -> Request:
        classification = await self.classifier.classify(text, session_context or {})
        return Request.from_classification(text, classification, request_id)

    async def route(
        self,
        text: str,
        session_context: Mapping[str, Any] | None = None,
        optimize_for_cost: bool = False,
        parallel: bool = True,
        check_availability: bool = True,
        request: Request | None = None,
        user_preferences: Mapping[str, float] | None = None,
    ) -> RouteResult:
        """Classify, score, decide and plan without reserving or executing."""
        request = request or await self.classify(text, session_context)
        profiles = await self.directory.list_candidates(request.classified_type)
        snapshot = await self.history.snapshot()
        weights = ScoringWeights.from_config(self.config.routing, optimize_for_cost)
        candidates = self.scorer.build_candidates(
            request, profiles, snapshot, weights, user_preferences
        )

        decision = self.engine.decide(
            request,
            candidates,
            compatible=self.planner.rules.compatible,
            check_availability=check_availability,
        )
        if self.database is not None:
            self.database.record_decision(decision.to_dict())

        if decision.fallback or not parallel:
            plan = PlanOutcome(self.planner.serial_plan(decision.selected))
        else:
            co_workers = list(
                dict.fromkeys(
                    [
                        *decision.co_workers,
                        *self.planner.select_co_workers(decision.selected, request),
                    ]
                )
            )
            plan = self.planner.plan(decision.selected, co_workers)
        return RouteResult(request=request, decision=decision, plan=plan)

    # ═══════════════════════════════════════════════════════════════════════
    # EXECUTION
    # ═══════════════════════════════════════════════════════════════════════

    async def handle(
        self,
        text: str,
        session_context: Mapping[str, Any] | None = None,
        estimated_units: float = DEFAULT_ESTIMATED_UNITS,
        scopes: Sequence[ScopeKey] | None = None,
        optimize_for_cost: bool = False,
        parallel: bool = True,
        cancel_token: CancelToken | None = None,
        request_id: str | None = None,
        user_preferences: Mapping[str, float] | None = None,
    ) -> OrchestrationResult:
        """
        Route and execute one request end to end.

        Args:
            text: Free-form request
            session_context: Caller context, copied into every step
            estimated_units: Units to reserve before routing
            scopes: Budgets to reserve against (default: current day and month)
            optimize_for_cost: Use the cost weighting profile
            parallel: Allow a parallel plan
            cancel_token: Cooperative cancellation for the whole request
            request_id: Explicit request id
            user_preferences: Per-worker preference in [0, 1] for this request

        Returns:
            OrchestrationResult

        Raises:
            AdmissionDenied: Budget cannot cover ``estimated_units``
        """
        if self.executor is None:
            raise ConfigurationError("Orchestrator has no worker runner; cannot execute")

        started = time.monotonic()
        request = await self.classify(text, session_context, request_id)
        log = get_request_logger(request.id)
        token = cancel_token or CancelToken()

        reservation = await self.ledger.reserve(estimated_units, scopes)
        log.info("Reserved {} units ({})", estimated_units, reservation.reservation_id)

        try:
            route = await self.route(
                text,
                session_context,
                optimize_for_cost=optimize_for_cost,
                parallel=parallel,
                request=request,
                user_preferences=user_preferences,
            )
            context = dict(session_context or {})
            serial_fallback = False
            abandoned: list[WorkflowStep] = []
            steps = self.materialize(request, route.plan.plan)
            try:
                workflow = await self._execute(steps, context, token)
                units = workflow.units_consumed
            except DependencyTimeout as exc:
                log.warning("{}; falling back to serial {}", exc.message, route.decision.selected)
                abandoned = steps
                partial_units = sum(s.units_consumed for s in steps)
                serial = self.planner.serial_plan(route.decision.selected)
                route = RouteResult(request, route.decision, PlanOutcome(serial, rejection=exc))
                workflow = await self._execute(
                    self.materialize(request, serial, suffix="serial"), context, token
                )
                units = workflow.units_consumed + partial_units
                serial_fallback = True
        except BaseException:
            await self.ledger.rollback(reservation.reservation_id)
            log.warning("Rolled back {} after error", reservation.reservation_id)
            raise

        if workflow.cancelled:
            await self.ledger.rollback(reservation.reservation_id)
            log.info("Request cancelled; rolled back {}", reservation.reservation_id)
        else:
            await self.ledger.commit(
                reservation.reservation_id,
                units,
                request_type=request.classified_type,
                worker_units=self._units_by_worker([*abandoned, *workflow.steps]),
            )

        outcome = self._outcome(workflow)
        duration_ms = (time.monotonic() - started) * 1000
        await self.metrics.record(
            ExecutionRecord(
                request_id=request.id,
                worker_id=route.decision.selected,
                score=route.decision.score,
                confidence=route.decision.confidence,
                fallback=route.decision.fallback,
                outcome=outcome,
                step_statuses=workflow.statuses(),
                worker_results=self._worker_results([*abandoned, *workflow.steps]),
                units_consumed=units,
                duration_ms=duration_ms,
                mode=route.plan.mode,
            )
        )
        log.info("Request finished: {} ({} units)", outcome, units)
        return OrchestrationResult(
            route=route,
            workflow=workflow,
            reservation_id=reservation.reservation_id,
            outcome=outcome,
            units_consumed=units,
            serial_fallback=serial_fallback,
            duration_ms=duration_ms,
        )

    def materialize(
        self, request: Request, plan: ParallelPlan, suffix: str = ""
    ) -> list[WorkflowStep]:
        """One step per planned worker; the primary's step is critical."""
        tag = f"-{suffix}" if suffix else ""
        payload = {
            "request_id": request.id,
            "text": request.raw_text,
            "type": request.classified_type,
            "keywords": list(request.keywords),
        }
        steps = []
        for phase in plan.phases:
            for worker in phase.workers:
                deps = plan.dependencies.get(worker)
                steps.append(
                    WorkflowStep(
                        id=f"{request.id}{tag}-p{phase.number}-{worker}",
                        order=phase.number,
                        worker_id=worker,
                        critical=worker == plan.primary,
                        requires=deps.requires if deps else (),
                        provides=deps.provides if deps else (),
                        payload=dict(payload),
                    )
                )
        return steps

    async def _execute(
        self, steps: list[WorkflowStep], context: dict[str, Any], token: CancelToken
    ) -> WorkflowResult:
        if self.executor is None:
            raise ConfigurationError("Orchestrator has no worker runner; cannot execute")
        return await self.executor.run(steps, context, token, ArtifactBoard())

    @staticmethod
    def _units_by_worker(steps: Sequence[WorkflowStep]) -> dict[str, float]:
        units: dict[str, float] = {}
        for step in steps:
            units[step.worker_id] = units.get(step.worker_id, 0.0) + step.units_consumed
        return units

    @staticmethod
    def _worker_results(steps: Sequence[WorkflowStep]) -> tuple[WorkerResult, ...]:
        """Results of steps whose worker actually ran."""
        return tuple(
            WorkerResult(s.worker_id, s.status == StepStatus.COMPLETED, s.units_consumed, s.duration_ms)
            for s in steps
            if s.status in (StepStatus.COMPLETED, StepStatus.FAILED)
            and s.error_code != "DEPENDENCY_TIMEOUT"
        )

    @staticmethod
    def _outcome(workflow: WorkflowResult) -> str:
        if workflow.cancelled:
            return "cancelled"
        if workflow.success:
            return "success"
        if workflow.halted or workflow.completed == 0:
            return "failed"
        return "partial"
