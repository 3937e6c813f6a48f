"""Task state machine: owns one task from submission to terminal state.

WHY: Server responses arrive out of band, sometimes out of order, and
sometimes not at all. Centralizing every mutation of a Task here gives
one place that enforces the lifecycle rules: terminal states are final,
status never moves backwards, and result / failure are set exactly once.

HOW: TaskStateMachine wraps a private Task. submit() drives the upload
through a transport; begin_poll / apply_snapshot / record_error are fed
by the poll scheduler; fail_timeout and resume are scheduler policy
hooks. Each visible change is published on the EventChannel.

RULES:
- created → submitting → {queued, processing} → {completed, failed}
- submitting → failed when the upload is rejected (no ID is assigned)
- Validation errors fail the task before any network call
- queued < processing < {completed, failed}; regressions are logged and ignored
- Terminal tasks ignore further input and re-publish their outcome
- A successful poll resets consecutive_errors; an error increments it
- Callers read the task only through snapshot() copies
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional, Protocol

from audiomidi_client.api.models import (
    HealthStatus,
    RemoteStatus,
    SubmitResponse,
    TaskSnapshot,
)
from audiomidi_client.config import Credentials
from audiomidi_client.core.clock import Clock, SystemClock
from audiomidi_client.core.events import EventChannel, EventKind, TaskEvent
from audiomidi_client.core.submission import Submission
from audiomidi_client.core.task import Task, TaskFailure, TaskResult, TaskState
from audiomidi_client.errors import (
    AudioMidiError,
    ErrorKind,
    InvalidTransitionError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class TaskTransport(Protocol):
    """The remote operations the core consumes (see AudioMidiClient)."""

    async def submit(self, submission: Submission) -> SubmitResponse: ...

    async def fetch_status(self, task_id: str, credentials: Credentials) -> TaskSnapshot: ...

    def fetch_result(self, reference: str, credentials: Credentials) -> AsyncIterator[bytes]: ...

    async def check_health(self, credentials: Credentials) -> HealthStatus: ...


_STATE_MESSAGES = {
    TaskState.SUBMITTING: "Uploading audio...",
    TaskState.QUEUED: "Task queued",
    TaskState.PROCESSING: "Converting audio to MIDI...",
    TaskState.COMPLETED: "Conversion complete",
    TaskState.FAILED: "Conversion failed",
}


class TaskStateMachine:
    """Lifecycle controller for a single Task."""

    def __init__(
        self,
        submission: Submission,
        channel: Optional[EventChannel] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._submission = submission
        self._task = Task(source_name=submission.name)
        self._channel = channel if channel is not None else EventChannel()
        self._clock = clock if clock is not None else SystemClock()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def submission(self) -> Submission:
        return self._submission

    @property
    def credentials(self) -> Credentials:
        return self._submission.credentials

    @property
    def task_id(self) -> Optional[str]:
        return self._task.id

    @property
    def state(self) -> TaskState:
        return self._task.state

    @property
    def attempt(self) -> int:
        return self._task.attempt

    @property
    def consecutive_errors(self) -> int:
        return self._task.consecutive_errors

    @property
    def is_terminal(self) -> bool:
        return self._task.is_terminal

    def snapshot(self) -> Task:
        """Return a copy of the task; the original is never handed out."""
        return self._task.copy()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, transport: TaskTransport) -> Task:
        """Validate and upload the submission, recording the new task ID.

        RULES:
        - Only allowed from CREATED
        - ValidationError fails the task without touching the transport
        - Any transport error fails the task with that error's kind, then re-raises
        - An OSError while reading the payload fails the task as ValidationError
        - A reported "queued" status maps to QUEUED, anything else to PROCESSING
        """
        if self._task.state is not TaskState.CREATED:
            raise InvalidTransitionError(
                "Task for {} was already submitted (state: {})".format(
                    self._task.source_name, self._task.state.value
                )
            )

        for warning in self._submission.warnings():
            logger.warning("%s: %s", self._submission.name, warning)
            self._publish(EventKind.WARNING, warning)

        try:
            self._submission.validate()
        except ValidationError as exc:
            self._fail(exc.kind, exc.message)
            raise

        self._set_state(TaskState.SUBMITTING)
        try:
            response = await transport.submit(self._submission)
        except AudioMidiError as exc:
            logger.warning("Submission of %s failed: %s", self._submission.name, exc.message)
            self._fail(exc.kind, exc.message)
            raise
        except OSError as exc:
            error = ValidationError("Cannot read audio file {}: {}".format(self._submission.name, exc))
            logger.warning("Submission of %s failed: %s", self._submission.name, error.message)
            self._fail(error.kind, error.message)
            raise error from exc

        self._task.id = response.task_id
        self._task.submitted_at = self._clock.now()
        self._task.message = response.message
        if response.status is RemoteStatus.QUEUED:
            self._set_state(TaskState.QUEUED)
        else:
            self._set_state(TaskState.PROCESSING)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Polling inputs
    # ------------------------------------------------------------------

    def begin_poll(self) -> int:
        """Count a new poll attempt and stamp its time; returns the attempt number."""
        if self._task.id is None or self._task.is_terminal:
            raise InvalidTransitionError(
                "Cannot poll task in state {}".format(self._task.state.value)
            )
        self._task.attempt += 1
        self._task.last_polled_at = self._clock.now()
        return self._task.attempt

    def apply_snapshot(self, snapshot: TaskSnapshot) -> Task:
        """Apply a successful status response."""
        task = self._task
        if task.is_terminal:
            self.replay_outcome()
            return self.snapshot()

        if snapshot.task_id and snapshot.task_id != task.id:
            logger.warning(
                "Status response for %s carried task_id %s", task.id, snapshot.task_id
            )

        task.consecutive_errors = 0
        task.position_in_queue = snapshot.position_in_queue
        if snapshot.message:
            task.message = snapshot.message

        reported = TaskState.from_remote(snapshot.status)
        if reported.rank < task.state.rank:
            logger.info(
                "Ignoring status %r for task %s, already %s",
                snapshot.raw_status,
                task.id,
                task.state.value,
            )
        elif reported is TaskState.COMPLETED:
            self._complete(snapshot)
            return self.snapshot()
        elif reported is TaskState.FAILED:
            self._fail(ErrorKind.SERVER_FAILURE, snapshot.error or snapshot.message or "Unknown error")
            return self.snapshot()
        else:
            self._set_state(reported)

        self._publish_progress(snapshot)
        return self.snapshot()

    def record_error(self, error: AudioMidiError) -> Task:
        """Count a failed poll; the state does not change."""
        if self._task.is_terminal:
            self.replay_outcome()
            return self.snapshot()
        self._task.consecutive_errors += 1
        self._publish(
            EventKind.POLL_ERROR,
            error.message,
            error_kind=error.kind.value,
            consecutive_errors=self._task.consecutive_errors,
        )
        return self.snapshot()

    def fail_timeout(self, max_attempts: int) -> Task:
        """Force the client-side Timeout outcome after the poll ceiling."""
        if not self._task.is_terminal:
            self._fail(
                ErrorKind.TIMEOUT,
                "No result after {} status checks; try a shorter audio clip".format(max_attempts),
            )
        return self.snapshot()

    def abort(self, error: AudioMidiError) -> None:
        """Announce that polling stopped without a terminal outcome."""
        self._publish(EventKind.ABORTED, error.message, error_kind=error.kind.value)

    def resume(self) -> None:
        """Prepare a non-terminal task for a fresh poll loop."""
        if self._task.id is None or self._task.is_terminal:
            raise InvalidTransitionError(
                "Cannot resume task in state {}".format(self._task.state.value)
            )
        self._task.consecutive_errors = 0

    def replay_outcome(self) -> None:
        """Re-publish the stored terminal outcome, if any."""
        task = self._task
        if task.state is TaskState.COMPLETED and task.result is not None:
            self._publish(
                EventKind.COMPLETED,
                _STATE_MESSAGES[TaskState.COMPLETED],
                reference=task.result.reference,
                processing_time=task.result.processing_time,
            )
        elif task.state is TaskState.FAILED and task.failure is not None:
            self._publish(EventKind.FAILED, task.failure.message, error_kind=task.failure.kind.value)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _complete(self, snapshot: TaskSnapshot) -> None:
        if not snapshot.download_url:
            self._fail(
                ErrorKind.SERVER_ERROR,
                "Server reported completion without a download reference",
            )
            return
        self._task.result = TaskResult(
            reference=snapshot.download_url,
            processing_time=snapshot.processing_time,
            filename=snapshot.filename,
        )
        self._set_state(TaskState.COMPLETED)
        self.replay_outcome()

    def _fail(self, kind: ErrorKind, message: str) -> None:
        self._task.failure = TaskFailure(kind=kind, message=message)
        self._set_state(TaskState.FAILED)
        self.replay_outcome()

    def _set_state(self, state: TaskState) -> None:
        previous = self._task.state
        if state is previous:
            return
        self._task.state = state
        logger.debug("Task %s: %s -> %s", self._task.id, previous.value, state.value)
        self._publish(EventKind.STATUS, _STATE_MESSAGES.get(state, state.value))

    def _publish_progress(self, snapshot: TaskSnapshot) -> None:
        task = self._task
        elapsed = None
        if task.submitted_at is not None and task.last_polled_at is not None:
            elapsed = max(0.0, task.last_polled_at - task.submitted_at)
        self._publish(
            EventKind.PROGRESS,
            _STATE_MESSAGES.get(task.state, task.state.value),
            status=snapshot.raw_status,
            position_in_queue=snapshot.position_in_queue,
            elapsed=elapsed,
        )

    def _publish(self, kind: EventKind, message: str, **data: object) -> None:
        self._channel.publish(
            TaskEvent(
                kind=kind,
                task_id=self._task.id,
                state=self._task.state.value,
                message=message,
                attempt=self._task.attempt,
                data=dict(data),
            )
        )
