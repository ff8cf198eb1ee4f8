"""Workflow execution and end-to-end orchestration."""

from conductor.engine.events import Event, EventBus, EventRecorder, EventType
from conductor.engine.orchestrator import OrchestrationResult, Orchestrator, RouteResult
from conductor.engine.runner import CommandRunner
from conductor.engine.workflow import (
    ALWAYS,
    Always,
    ArtifactBoard,
    CancelToken,
    ContextFlag,
    DependsOn,
    StepStatus,
    WorkerOutcome,
    WorkerRunner,
    WorkflowExecutor,
    WorkflowResult,
    WorkflowStep,
)

__all__ = [
    "ALWAYS",
    "Always",
    "ArtifactBoard",
    "CancelToken",
    "CommandRunner",
    "ContextFlag",
    "DependsOn",
    "Event",
    "EventBus",
    "EventRecorder",
    "EventType",
    "OrchestrationResult",
    "Orchestrator",
    "RouteResult",
    "StepStatus",
    "WorkerOutcome",
    "WorkerRunner",
    "WorkflowExecutor",
    "WorkflowResult",
    "WorkflowStep",
]
