"""Typed publish/subscribe channel for workflow progress events."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger


class EventType(StrEnum):
    STEP_START = "step-start"
    STEP_COMPLETE = "step-complete"
    STEP_FAILED = "step-failed"
    STEP_SKIPPED = "step-skipped"
    WORKFLOW_PROGRESS = "workflow-progress"
    WORKFLOW_COMPLETE = "workflow-complete"
    WORKFLOW_ERROR = "workflow-error"
    BUDGET_ALERT = "budget-alert"


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[Event], Any]


class EventBus:
    """
    Fire-and-forget event fan-out.

    Inside a running loop every delivery is queued with ``call_soon`` so the
    publisher returns at once; deliveries keep publish order. Without a loop
    sync subscribers are called inline. Coroutine subscribers are scheduled
    as tasks. A subscriber that raises is logged and never affects the
    publisher.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventType | None, Subscriber]] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, callback: Subscriber, event_type: EventType | None = None) -> None:
        """Register a callback for one event type, or all events when None."""
        self._subscribers.append((event_type, callback))

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(t, cb) for t, cb in self._subscribers if cb is not callback]

    def publish(self, event: Event) -> None:
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for event_type, callback in list(self._subscribers):
            if event_type is not None and event_type != event.type:
                continue
            if loop is None:
                self._deliver(callback, event)
            else:
                loop.call_soon(self._deliver, callback, event)

    def emit(self, event_type: EventType, **payload: Any) -> Event:
        event = Event(event_type, payload)
        self.publish(event)
        return event

    def _deliver(self, callback: Subscriber, event: Event) -> None:
        try:
            result = callback(event)
        except Exception as exc:
            logger.opt(exception=exc).warning("Event subscriber failed on {}", event.type)
            return
        if inspect.isawaitable(result):
            self._schedule(result, event)

    def _schedule(self, awaitable: Any, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("No event loop for async subscriber on {}", event.type)
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).warning("Async event subscriber failed")

    async def drain(self) -> None:
        """Deliver queued events and wait for async subscribers; used on shutdown and in tests."""
        # One loop pass runs every delivery queued before this call
        await asyncio.sleep(0)
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class EventRecorder:
    """Subscriber that keeps every event it sees."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def types(self) -> list[EventType]:
        return [e.type for e in self.events]
