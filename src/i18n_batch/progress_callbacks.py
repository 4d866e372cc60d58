"""
Task lifecycle events for batch runs.

The scheduler reports each task's start and finish through these hooks;
the progress monitor and log output subscribe as listeners.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .common_types import OutcomeKind, Priority

logger = logging.getLogger(__name__)


class TaskEventType(Enum):
    """Types of lifecycle events for one task."""
    STARTED = "started"
    FINISHED = "finished"


@dataclass
class TaskEvent:
    """A lifecycle update for one task."""
    type: TaskEventType
    task_id: str
    path: str
    priority: Priority
    timestamp: float
    dispatch_index: int = -1
    total_strings: int = 0
    outcome: OutcomeKind | None = None
    translated_strings: int = 0
    error: str | None = None
    source: str | None = None  # translator | response-cache | string-cache
    extra: dict[str, Any] = field(default_factory=dict)


class TaskListener:
    """Base class for lifecycle listeners."""

    def on_task_event(self, event: TaskEvent) -> None:
        """Handle a lifecycle event."""
        raise NotImplementedError


class LoggingTaskListener(TaskListener):
    """Logs lifecycle events."""

    def on_task_event(self, event: TaskEvent) -> None:
        if event.type == TaskEventType.STARTED:
            logger.debug(f"[PROGRESS] Started {event.path} ({event.priority.value})")
            return

        if event.outcome == OutcomeKind.SUCCESS:
            logger.info(
                f"[PROGRESS] Completed {event.path}: "
                f"{event.translated_strings} strings via {event.source or 'translator'}"
            )
        elif event.outcome == OutcomeKind.CACHE_SKIP:
            logger.info(f"[PROGRESS] Skipped {event.path} (cached)")
        elif event.outcome == OutcomeKind.CANCELLED:
            logger.info(f"[PROGRESS] Cancelled {event.path}")
        else:
            kind = event.outcome.value if event.outcome else "unknown"
            logger.error(f"[PROGRESS] Failed {event.path} ({kind}): {event.error}")


class TaskEventDispatcher:
    """
    Fans events out to listeners.

    A listener that raises is logged and does not affect the run or the
    other listeners.
    """
    def __init__(self, listeners: Optional[list[TaskListener]] = None):
        self.listeners: list[TaskListener] = list(listeners or [])

    def add(self, listener: TaskListener) -> None:
        self.listeners.append(listener)

    def emit(self, event: TaskEvent) -> None:
        for listener in self.listeners:
            try:
                listener.on_task_event(event)
            except Exception as e:
                logger.exception(f"[PROGRESS] Listener {type(listener).__name__} failed: {e}")


class CancellationToken:
    """
    Cooperative cancellation flag shared by the scheduler and translator wrappers.

    Safe to set from any thread.
    """
    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
