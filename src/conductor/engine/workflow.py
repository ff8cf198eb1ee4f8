"""
Workflow Executor - Step state machine over phased plans.

Steps sharing an ``order`` form a phase and run concurrently; the executor
waits for the whole phase (barrier) before starting the next one. Each step
sees a private deep copy of the accumulated context and its updates are
merged by step id once the phase is done.

Step lifecycle:
    pending -> running -> completed | failed | skipped
    pending -> skipped
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from itertools import groupby
from typing import Any, Protocol

from loguru import logger

from conductor.config import ExecutorConfig
from conductor.engine.events import EventBus, EventType
from conductor.errors import DependencyTimeout, InvalidStepTransition, WorkerTimeout


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})

_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: TERMINAL_STATES,
}


# ═══════════════════════════════════════════════════════════════════════════
# CONDITIONS
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Always:
    kind = "always"

    def evaluate(self, steps: Mapping[str, WorkflowStep], context: Mapping[str, Any]) -> bool:
        return True


@dataclass(frozen=True)
class DependsOn:
    """Run only once ``step_id`` has finished (successfully, by default)."""

    step_id: str
    require_success: bool = True
    kind = "depends-on"

    def evaluate(self, steps: Mapping[str, WorkflowStep], context: Mapping[str, Any]) -> bool:
        dependency = steps.get(self.step_id)
        if dependency is None:
            return False
        if self.require_success:
            return dependency.status == StepStatus.COMPLETED
        return dependency.status in (StepStatus.COMPLETED, StepStatus.FAILED)


@dataclass(frozen=True)
class ContextFlag:
    """Run only when the context flag ``name`` is truthy (or falsy if expected=False)."""

    name: str
    expected: bool = True
    kind = "context-flag"

    def evaluate(self, steps: Mapping[str, WorkflowStep], context: Mapping[str, Any]) -> bool:
        return bool(context.get(self.name)) == self.expected


Condition = Always | DependsOn | ContextFlag

ALWAYS = Always()


# ═══════════════════════════════════════════════════════════════════════════
# STEPS AND OUTCOMES
# ═══════════════════════════════════════════════════════════════════════════


@dataclass
class WorkflowStep:
    """One unit of work bound to a worker. Status only moves forward."""

    id: str
    order: int
    worker_id: str
    condition: Condition = ALWAYS
    critical: bool = False
    requires: tuple[str, ...] = ()
    provides: tuple[str, ...] = ()
    payload: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    units_consumed: float = 0.0
    started_at: float | None = None
    finished_at: float | None = None

    def transition(self, new_status: StepStatus) -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidStepTransition(
                f"Step {self.id}: {self.status} -> {new_status} not allowed",
                context={"step_id": self.id},
            )
        now = time.time()
        if new_status == StepStatus.RUNNING:
            self.started_at = now
        else:
            self.finished_at = now
        self.status = new_status

    @property
    def duration_ms(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at) * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order": self.order,
            "worker_id": self.worker_id,
            "condition": self.condition.kind,
            "critical": self.critical,
            "status": str(self.status),
            "error": self.error,
            "error_code": self.error_code,
            "units_consumed": self.units_consumed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class WorkerOutcome:
    success: bool
    output: Any = None
    units_consumed: float = 0.0
    duration_ms: float = 0.0
    context_updates: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class CancelToken:
    """Cooperative cancellation shared by the executor and every worker call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class WorkerRunner(Protocol):
    async def execute(
        self, step: WorkflowStep, context: dict[str, Any], cancel_token: CancelToken
    ) -> WorkerOutcome: ...


class ArtifactBoard:
    """Artifacts published by completed steps, awaited by dependent steps."""

    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._artifacts: set[str] = set(initial)

    def publish(self, artifacts: Iterable[str]) -> None:
        self._artifacts.update(artifacts)

    def missing(self, required: Iterable[str]) -> list[str]:
        return [a for a in required if a not in self._artifacts]

    def __contains__(self, artifact: str) -> bool:
        return artifact in self._artifacts

    async def wait_for(
        self,
        required: Sequence[str],
        timeout: float,
        poll_interval: float = 0.1,
        cancel_token: CancelToken | None = None,
    ) -> None:
        """Poll until every artifact is present; DependencyTimeout after ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        while True:
            missing = self.missing(required)
            if not missing:
                return
            if cancel_token is not None and cancel_token.cancelled:
                return
            if time.monotonic() >= deadline:
                raise DependencyTimeout(
                    f"Timed out after {timeout:g}s waiting for {', '.join(missing)}",
                    context={"missing": missing},
                )
            await asyncio.sleep(poll_interval)


@dataclass
class WorkflowResult:
    """Aggregate outcome. Partial failure is reported here, never raised."""

    completed: int
    failed: int
    skipped: int
    total_steps: int
    halted: bool = False
    cancelled: bool = False
    steps: list[WorkflowStep] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    units_consumed: float = 0.0
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.halted and not self.cancelled

    def statuses(self) -> dict[str, str]:
        return {s.id: str(s.status) for s in self.steps}

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_steps": self.total_steps,
            "halted": self.halted,
            "cancelled": self.cancelled,
            "units_consumed": self.units_consumed,
            "duration_ms": self.duration_ms,
            "steps": [s.to_dict() for s in self.steps],
        }


# ═══════════════════════════════════════════════════════════════════════════
# EXECUTOR
# ═══════════════════════════════════════════════════════════════════════════


class WorkflowExecutor:
    """Runs workflow steps phase by phase against a WorkerRunner."""

    def __init__(
        self,
        runner: WorkerRunner,
        config: ExecutorConfig | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.runner = runner
        self.config = config or ExecutorConfig()
        self.events = events or EventBus()

    async def run(
        self,
        steps: Sequence[WorkflowStep],
        context: Mapping[str, Any] | None = None,
        cancel_token: CancelToken | None = None,
        board: ArtifactBoard | None = None,
    ) -> WorkflowResult:
        """
        Execute steps to completion.

        Args:
            steps: Steps in any order; grouped into phases by ``order``
            context: Initial shared context (never mutated)
            cancel_token: Cooperative cancellation token
            board: Artifact board, pre-seeded with already-available artifacts

        Returns:
            WorkflowResult with tallies and final step states

        Raises:
            DependencyTimeout: An upstream artifact never appeared; remaining
                steps are skipped before raising
        """
        ids = [s.id for s in steps]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate step ids in workflow: {ids}")

        by_id = {s.id: s for s in steps}
        for step in steps:
            condition = step.condition
            if isinstance(condition, DependsOn) and condition.step_id in by_id:
                target = by_id[condition.step_id]
                # Conditions are evaluated at the phase barrier
                if target.order >= step.order:
                    raise ValueError(
                        f"Step {step.id!r} depends on {target.id!r}, which is not in an earlier phase"
                    )

        token = cancel_token or CancelToken()
        board = board or ArtifactBoard()
        shared: dict[str, Any] = copy.deepcopy(dict(context or {}))
        ordered = sorted(steps, key=lambda s: (s.order, s.id))
        phases = [list(group) for _, group in groupby(ordered, key=lambda s: s.order)]
        started = time.monotonic()
        halted = False

        for index, phase in enumerate(phases, start=1):
            if halted or token.cancelled:
                reason = "halted" if halted else "cancelled"
                for step in phase:
                    self._skip(step, reason)
                continue

            runnable: list[WorkflowStep] = []
            for step in phase:
                if step.condition.evaluate(by_id, shared):
                    runnable.append(step)
                else:
                    self._skip(step, "condition not met")

            results = await asyncio.gather(
                *(self._run_step(step, copy.deepcopy(shared), token, board) for step in runnable),
                return_exceptions=True,
            )

            timeout_error: DependencyTimeout | None = None
            for step, outcome in sorted(zip(runnable, results), key=lambda item: item[0].id):
                if isinstance(outcome, DependencyTimeout):
                    timeout_error = timeout_error or outcome
                elif isinstance(outcome, BaseException):
                    raise outcome
                elif outcome is not None and step.status == StepStatus.COMPLETED:
                    shared.update(outcome.context_updates)
                    shared.setdefault("results", {})[step.id] = outcome.output

            if timeout_error is not None:
                for step in steps:
                    if step.status == StepStatus.PENDING:
                        self._skip(step, "dependency timeout")
                self.events.emit(
                    EventType.WORKFLOW_ERROR,
                    error=timeout_error.to_dict(),
                    **self._tally(steps),
                )
                raise timeout_error

            if any(s.critical and s.status == StepStatus.FAILED for s in phase):
                halted = True
                logger.warning("Workflow halted by critical failure in phase {}", index)

            self.events.emit(
                EventType.WORKFLOW_PROGRESS,
                phase=index,
                total_phases=len(phases),
                **self._tally(steps),
            )

        result = WorkflowResult(
            **self._tally(steps),
            halted=halted,
            cancelled=token.cancelled,
            steps=list(ordered),
            context=shared,
            units_consumed=sum(s.units_consumed for s in steps),
            duration_ms=(time.monotonic() - started) * 1000,
        )
        if halted:
            self.events.emit(EventType.WORKFLOW_ERROR, error="critical step failed", **self._tally(steps))
        else:
            self.events.emit(
                EventType.WORKFLOW_COMPLETE, cancelled=result.cancelled, **self._tally(steps)
            )
        logger.info(
            "Workflow finished: {} completed, {} failed, {} skipped of {}",
            result.completed,
            result.failed,
            result.skipped,
            result.total_steps,
        )
        return result

    async def _run_step(
        self,
        step: WorkflowStep,
        context: dict[str, Any],
        token: CancelToken,
        board: ArtifactBoard,
    ) -> WorkerOutcome | None:
        if token.cancelled:
            self._skip(step, "cancelled")
            return None

        step.transition(StepStatus.RUNNING)
        self.events.emit(EventType.STEP_START, step_id=step.id, worker_id=step.worker_id)

        if step.requires:
            try:
                await board.wait_for(
                    step.requires,
                    self.config.dependency_timeout,
                    self.config.dependency_poll_interval,
                    token,
                )
            except DependencyTimeout as exc:
                self._fail(step, exc.message, exc.code)
                raise
            if token.cancelled:
                self._skip(step, "cancelled")
                return None

        timeout = step.timeout if step.timeout is not None else self.config.step_timeout
        try:
            outcome = await asyncio.wait_for(self.runner.execute(step, context, token), timeout)
        except TimeoutError:
            err = WorkerTimeout(
                f"{step.worker_id} exceeded {timeout:g}s on step {step.id}",
                context={"step_id": step.id},
            )
            self._fail(step, err.message, err.code)
            return None
        except Exception as exc:
            logger.opt(exception=exc).debug("Worker {} raised on step {}", step.worker_id, step.id)
            self._fail(step, str(exc) or type(exc).__name__, "WORKER_ERROR")
            return None

        step.units_consumed = outcome.units_consumed
        if outcome.success:
            step.result = outcome.output
            step.transition(StepStatus.COMPLETED)
            board.publish(step.provides)
            self.events.emit(
                EventType.STEP_COMPLETE,
                step_id=step.id,
                worker_id=step.worker_id,
                units_consumed=outcome.units_consumed,
                duration_ms=outcome.duration_ms,
            )
        else:
            self._fail(step, outcome.error or "worker reported failure", "WORKER_FAILED")
        return outcome

    def _skip(self, step: WorkflowStep, reason: str) -> None:
        step.transition(StepStatus.SKIPPED)
        step.error = reason
        self.events.emit(EventType.STEP_SKIPPED, step_id=step.id, reason=reason)

    def _fail(self, step: WorkflowStep, message: str, code: str) -> None:
        step.error = message
        step.error_code = code
        step.transition(StepStatus.FAILED)
        logger.warning("Step {} failed ({}): {}", step.id, code, message)
        self.events.emit(
            EventType.STEP_FAILED,
            step_id=step.id,
            worker_id=step.worker_id,
            critical=step.critical,
            error=message,
            code=code,
        )

    @staticmethod
    def _tally(steps: Sequence[WorkflowStep]) -> dict[str, int]:
        return {
            "completed": sum(1 for s in steps if s.status == StepStatus.COMPLETED),
            "failed": sum(1 for s in steps if s.status == StepStatus.FAILED),
            "skipped": sum(1 for s in steps if s.status == StepStatus.SKIPPED),
            "total_steps": len(steps),
        }
