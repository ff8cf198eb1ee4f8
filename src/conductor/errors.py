"""Error taxonomy for the orchestration engine.

Every error carries a stable ``code`` plus a human-readable message so callers
and the HTTP layer can react without parsing text.
"""

from __future__ import annotations

from typing import Any


class ConductorError(Exception):
    """Base exception for all engine errors."""

    code = "CONDUCTOR_ERROR"

    def __init__(
        self, message: str, code: str | None = None, context: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class ConfigurationError(ConductorError):
    """Invalid configuration or weights."""

    code = "CONFIG_ERROR"


# --- Admission ------------------------------------------------------------


class AdmissionDenied(ConductorError):
    """Budget exhausted for at least one scope. Never retried."""

    code = "ADMISSION_DENIED"

    def __init__(
        self, message: str, remaining: dict[str, float] | None = None, **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.remaining = remaining or {}


class BudgetLedgerError(ConductorError):
    """Ledger lock contention; retried internally before surfacing."""

    code = "BUDGET_LEDGER_CONTENTION"


class UnknownReservation(ConductorError):
    """Commit or rollback of a reservation the ledger does not hold."""

    code = "UNKNOWN_RESERVATION"


# --- Routing ----------------------------------------------------------------


class ClassificationLowConfidence(ConductorError):
    """Classifier confidence too low; routing proceeds via the fallback worker."""

    code = "CLASSIFICATION_LOW_CONFIDENCE"


class NoCandidateAvailable(ConductorError):
    """No candidate survived filtering; routing proceeds via the fallback worker."""

    code = "NO_CANDIDATE_AVAILABLE"


# --- Planning ---------------------------------------------------------------


class PlanRejected(ConductorError):
    """A parallel plan failed validation; execution downgrades to serial."""

    code = "PLAN_REJECTED"


class CycleDetected(PlanRejected):
    code = "CYCLE_DETECTED"

    def __init__(self, cycle: list[str], **kwargs: Any) -> None:
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}", **kwargs)
        self.cycle = cycle


class UnsatisfiableRequirement(PlanRejected):
    code = "UNSATISFIABLE_REQUIREMENT"


class InsufficientSpeedup(PlanRejected):
    code = "INSUFFICIENT_SPEEDUP"


class NegativeTokenImpact(PlanRejected):
    code = "NEGATIVE_TOKEN_IMPACT"


# --- Execution --------------------------------------------------------------


class WorkerTimeout(ConductorError):
    """A worker call exceeded its step timeout."""

    code = "WORKER_TIMEOUT"


class DependencyTimeout(ConductorError):
    """An upstream artifact never became available within the wait bound."""

    code = "DEPENDENCY_TIMEOUT"


class InvalidStepTransition(ConductorError):
    """Attempt to move a workflow step backwards or out of a terminal state."""

    code = "INVALID_STEP_TRANSITION"
