"""Session controller: the single active task workflow for one client.

WHY: A user can submit, cancel, resubmit, resume, and download in any
order. Without a coordinator, a new upload could race an old poll loop
for the shared UI state. The session owns the one active state machine
and its poll loop, and serializes every command against them.

HOW: Session keeps the current TaskStateMachine, the background poll
loop (an asyncio task running PollScheduler.run), and the last error.
submit() cancels and awaits any running loop before creating a new
machine. wait() awaits the loop and converts its outcome into a
Resolution via the resolver. retrieve() streams the finished artifact
into a caller-supplied writer.

RULES:
- At most one poll loop per session at any time
- submit(), resume() and retry() hold one lock from cancel to loop start
- submit() and retry() always create a new Task; they never revive a retired one
- cancel() is cooperative and returns only after the loop has stopped
- resume() keeps the task ID and counters, clears consecutive errors
- task returns a copy; callers never see the live Task
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from audiomidi_client.api.models import HealthStatus
from audiomidi_client.config import Credentials
from audiomidi_client.core.clock import Clock, SystemClock
from audiomidi_client.core.events import EventChannel
from audiomidi_client.core.resolver import (
    ArtifactReady,
    Resolution,
    resolve_error,
    resolve_task,
)
from audiomidi_client.core.scheduler import PollPolicy, PollScheduler
from audiomidi_client.core.state_machine import TaskStateMachine, TaskTransport
from audiomidi_client.core.submission import Submission
from audiomidi_client.core.task import Task
from audiomidi_client.errors import AudioMidiError, InvalidTransitionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ArtifactWriter = Callable[[str, AsyncIterator[bytes]], Awaitable[T]]
"""Persistence collaborator: receives (filename, chunks) and stores them."""


class Session:
    """Coordinates one task at a time against a transport."""

    def __init__(
        self,
        transport: TaskTransport,
        credentials: Credentials,
        policy: Optional[PollPolicy] = None,
        clock: Optional[Clock] = None,
        channel: Optional[EventChannel] = None,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._policy = policy or PollPolicy()
        self._clock = clock or SystemClock()
        self._channel = channel if channel is not None else EventChannel()
        self._machine: Optional[TaskStateMachine] = None
        self._scheduler: Optional[PollScheduler] = None
        self._poll_task: Optional[asyncio.Future] = None
        self._last_submission: Optional[Submission] = None
        self._last_error: Optional[AudioMidiError] = None
        self._command_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @property
    def task(self) -> Optional[Task]:
        return self._machine.snapshot() if self._machine else None

    @property
    def last_error(self) -> Optional[AudioMidiError]:
        return self._last_error

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def submit(self, submission: Submission) -> Task:
        """Start a new task, cancelling any previous poll loop first.

        Raises the submission's AudioMidiError (ValidationError, AuthError,
        ...) after recording it; the new task is then FAILED.
        """
        async with self._command_lock:
            return await self._submit(submission)

    async def _submit(self, submission: Submission) -> Task:
        await self.cancel()
        machine = TaskStateMachine(submission, channel=self._channel, clock=self._clock)
        self._machine = machine
        self._last_submission = submission
        self._last_error = None

        try:
            task = await machine.submit(self._transport)
        except AudioMidiError as exc:
            self._last_error = exc
            raise

        self._start_polling(machine)
        return task

    async def wait(self) -> Resolution:
        """Wait for the active poll loop and resolve its outcome."""
        machine = self._require_machine()
        poll_task = self._poll_task
        if poll_task is not None:
            try:
                task = await poll_task
            except AudioMidiError as exc:
                self._last_error = exc
                return resolve_error(exc, machine.task_id)
            finally:
                if poll_task.done() and self._poll_task is poll_task:
                    self._poll_task = None
                    self._scheduler = None
            return resolve_task(task)

        task = machine.snapshot()
        if task.is_terminal:
            return resolve_task(task)
        if self._last_error is not None:
            return resolve_error(self._last_error, task.id)
        raise InvalidTransitionError("Task {} is not being polled".format(task.id))

    async def run(self, submission: Submission) -> Resolution:
        """Submit and wait; submission errors come back as ConversionFailed."""
        try:
            await self.submit(submission)
        except AudioMidiError as exc:
            return resolve_error(exc)
        return await self.wait()

    async def cancel(self) -> None:
        """Stop the active poll loop, if any, and wait for it to finish."""
        poll_task = self._poll_task
        if poll_task is None:
            return
        if self._scheduler is not None:
            self._scheduler.cancel()
        try:
            await poll_task
        except AudioMidiError as exc:
            self._last_error = exc
        finally:
            if self._poll_task is poll_task:
                self._poll_task = None
                self._scheduler = None
        logger.debug("Poll loop stopped")

    async def resume(self) -> Task:
        """Restart polling for the current task after an abort or cancel."""
        async with self._command_lock:
            machine = self._require_machine()
            if self.is_polling:
                return machine.snapshot()
            await self.cancel()
            machine.resume()
            self._last_error = None
            logger.info("Resuming polling for task %s", machine.task_id)
            self._start_polling(machine)
            return machine.snapshot()

    async def retry(self) -> Task:
        """Re-submit the last submission as a brand-new task."""
        async with self._command_lock:
            if self._last_submission is None:
                raise InvalidTransitionError("Nothing was submitted yet")
            logger.info("Re-submitting %s", self._last_submission.name)
            return await self._submit(self._last_submission)

    async def retrieve(self, writer: ArtifactWriter) -> T:
        """Stream the completed task's artifact into writer(filename, chunks)."""
        machine = self._require_machine()
        resolution = resolve_task(machine.snapshot())
        if not isinstance(resolution, ArtifactReady):
            raise InvalidTransitionError(
                "Task {} did not complete: {}".format(resolution.task_id, resolution.message)
            )

        chunks = self._transport.fetch_result(resolution.reference, machine.credentials)
        try:
            return await writer(resolution.filename, chunks)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    async def check_health(self) -> HealthStatus:
        return await self._transport.check_health(self._credentials)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_machine(self) -> TaskStateMachine:
        if self._machine is None:
            raise InvalidTransitionError("No task has been submitted in this session")
        return self._machine

    def _start_polling(self, machine: TaskStateMachine) -> None:
        if self.is_polling:
            raise InvalidTransitionError("A poll loop is already running in this session")
        scheduler = PollScheduler(
            machine,
            self._transport,
            policy=self._policy,
            clock=self._clock,
        )
        self._scheduler = scheduler
        self._poll_task = asyncio.ensure_future(scheduler.run())
