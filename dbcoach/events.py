"""Pipeline event emitter for live generation updates.

Emits structured events while phases stream so that a presentation layer
(CLI, WebSocket bridge, replay view) can render progress. Replay uses the
same event types so live and replayed sessions look identical downstream.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events emitted during a generation run."""

    TASK_START = "task_start"
    CONTENT_CHUNK = "content_chunk"
    TASK_COMPLETE = "task_complete"
    SESSION_COMPLETE = "session_complete"
    INSIGHT = "insight"
    ERROR = "error"


class PipelineEvent(BaseModel):
    """A single pipeline event."""

    type: EventType = Field(description="Event type")
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix timestamp when the event occurred",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event payload, varies by event type",
    )


# Type alias for event listener callbacks
EventListener = Callable[[PipelineEvent], Any]


class PipelineEventEmitter:
    """Broadcasts pipeline events to registered listeners.

    Listeners can be sync or async callables and receive events in emission
    order. A failing listener is logged and never interrupts the run.
    """

    def __init__(self, *, keep_history: bool = True) -> None:
        self._listeners: list[EventListener] = []
        self._history: list[PipelineEvent] = []
        self._keep_history = keep_history

    @property
    def history(self) -> list[PipelineEvent]:
        """All events emitted so far (for late subscribers)."""
        return list(self._history)

    def add_listener(self, listener: EventListener) -> None:
        """Register a listener to receive pipeline events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        """Remove a previously registered listener."""
        self._listeners = [ln for ln in self._listeners if ln != listener]

    def clear_history(self) -> None:
        self._history.clear()

    async def emit(self, event_type: EventType, **data: Any) -> PipelineEvent:
        """Emit an event to all registered listeners.

        Sync listeners are called directly; async listeners are awaited.
        Listener exceptions are logged but never propagate.
        """
        event = PipelineEvent(type=event_type, data=data)
        if self._keep_history:
            self._history.append(event)

        for listener in list(self._listeners):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Event listener error for %s", event_type)
        return event
