"""Outcome recording and history feedback."""

from conductor.feedback.metrics import ExecutionRecord, MetricsCollector, WorkerResult

__all__ = ["ExecutionRecord", "MetricsCollector", "WorkerResult"]
