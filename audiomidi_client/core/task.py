"""Task entity: one remote conversion job from submission to terminal state.

WHY: The lifecycle controller, the scheduler, the resolver, and the
presentation layer all need the same picture of a job: its ID, where it
is in its lifecycle, how many polls it took, and how it ended. A single
dataclass owned by the state machine keeps that picture consistent.

HOW: TaskState enumerates the local lifecycle (created and submitting
come before the server knows about the task). Task holds counters,
timestamps, and exactly one of TaskResult / TaskFailure once terminal.
Readers get copies via Task.copy(); only the state machine mutates.

RULES:
- id is None until the server assigns one
- result is set only in COMPLETED, failure only in FAILED
- attempt >= 0, consecutive_errors >= 0, consecutive_errors <= attempt
- A retired task is never reused; a retry creates a new Task
"""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

from audiomidi_client.api.models import RemoteStatus
from audiomidi_client.errors import ErrorKind, is_retryable


class TaskState(str, enum.Enum):
    """Local lifecycle states of a task."""

    CREATED = "created"
    SUBMITTING = "submitting"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @classmethod
    def from_remote(cls, status: RemoteStatus) -> TaskState:
        return cls(status.value)


_STATE_RANK = {
    TaskState.CREATED: 0,
    TaskState.SUBMITTING: 0,
    TaskState.QUEUED: 1,
    TaskState.PROCESSING: 2,
    TaskState.COMPLETED: 3,
    TaskState.FAILED: 3,
}


@dataclass(frozen=True)
class TaskResult:
    """Outcome of a completed task."""

    reference: str
    processing_time: Optional[float] = None
    filename: Optional[str] = None


@dataclass(frozen=True)
class TaskFailure:
    """Outcome of a failed task.

    RULES:
    - kind SERVER_FAILURE: the server reported the conversion failed
    - kind TIMEOUT: the client gave up after the poll ceiling
    - any other kind: submission itself was rejected
    """

    kind: ErrorKind
    message: str

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)


@dataclass
class Task:
    """Mutable record of one conversion job. Owned by TaskStateMachine."""

    source_name: str
    id: Optional[str] = None
    state: TaskState = TaskState.CREATED
    submitted_at: Optional[float] = None
    last_polled_at: Optional[float] = None
    attempt: int = 0
    consecutive_errors: int = 0
    result: Optional[TaskResult] = None
    failure: Optional[TaskFailure] = None
    position_in_queue: Optional[int] = None
    message: Optional[str] = None

    @property
    def status(self) -> Optional[RemoteStatus]:
        """The remote-facing status, or None before the server knows the task."""
        if self.state in (TaskState.CREATED, TaskState.SUBMITTING):
            return None
        return RemoteStatus(self.state.value)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def copy(self) -> Task:
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_name": self.source_name,
            "state": self.state.value,
            "attempt": self.attempt,
            "consecutive_errors": self.consecutive_errors,
            "submitted_at": self.submitted_at,
            "last_polled_at": self.last_polled_at,
            "position_in_queue": self.position_in_queue,
            "message": self.message,
            "result": (
                {
                    "reference": self.result.reference,
                    "processing_time": self.result.processing_time,
                    "filename": self.result.filename,
                }
                if self.result
                else None
            ),
            "failure": (
                {"kind": self.failure.kind.value, "message": self.failure.message}
                if self.failure
                else None
            ),
        }
