"""Event channel between the lifecycle core and the presentation layer.

WHY: The core must report status changes, progress, warnings, and final
outcomes without knowing how they are shown (terminal, GUI, chat bot).
An explicit channel replaces ad-hoc on_status callbacks threaded through
every call.

HOW: TaskEvent is an immutable record. EventChannel keeps an ordered
history and calls subscribers synchronously, in subscription order, as
each event is published. A failing subscriber is logged and skipped so
one broken view cannot stall the poll loop.

RULES:
- Events are delivered in publish order
- Every distinct status a task reaches produces one STATUS event
- Terminal outcomes (COMPLETED / FAILED) may be re-published on request
- Subscribers must not mutate the task snapshot they receive
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    STATUS = "status"
    PROGRESS = "progress"
    WARNING = "warning"
    POLL_ERROR = "poll_error"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class TaskEvent:
    """One notification about a task.

    Attributes:
        kind: What happened.
        task_id: Server-assigned ID, or None before submission succeeded.
        state: TaskState value at publish time.
        message: Human-readable summary for display.
        attempt: Poll attempt count at publish time.
        data: Kind-specific extras (queue position, error kind, reference...).
    """

    kind: EventKind
    task_id: Optional[str]
    state: str
    message: str = ""
    attempt: int = 0
    data: Dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[TaskEvent], None]


class EventChannel:
    """Ordered publish/subscribe channel for TaskEvents."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._history: List[TaskEvent] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: TaskEvent) -> None:
        self._history.append(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber failed on %s event", event.kind.value)

    @property
    def history(self) -> List[TaskEvent]:
        return list(self._history)

    def of_kind(self, kind: EventKind) -> List[TaskEvent]:
        return [e for e in self._history if e.kind is kind]
