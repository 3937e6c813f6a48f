"""Poll scheduler: drives status checks until a task settles.

WHY: Conversion takes anywhere from seconds to ten minutes. The client
has to keep asking without hammering the server, ride out short network
blips, notice when the server lost the task, and eventually give up.
Those policies live here, separate from the state machine that records
their effects.

HOW: PollScheduler.run() loops: pause, check cancellation, count the
attempt, fetch status, discard the result if cancellation arrived
meanwhile, then hand the outcome to the state machine. The pause races
the injected clock's sleep against the CancelToken so cancellation is
prompt without interrupting an in-flight request.

RULES:
- First pause of a run is initial_delay (2s), later pauses are interval (5s)
- One network call at a time; never two loops on one machine
- TransportError: counted; max_consecutive_errors in a row → PollingAbortedError
- TaskNotFoundError within the first not_found_grace_attempts polls: ignored
- Any other classified error: counted and surfaced immediately
- max_attempts polls without a terminal status → task fails with TIMEOUT,
  also when a resumed run starts with the ceiling already reached
- Aborts and surfaced errors leave the task non-terminal (resumable)
- Cancellation → PollingCancelledError, no further transitions applied
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from audiomidi_client.config import (
    POLL_INITIAL_DELAY_S,
    POLL_INTERVAL_S,
    POLL_MAX_ATTEMPTS,
    POLL_MAX_CONSECUTIVE_ERRORS,
)
from audiomidi_client.core.clock import CancelToken, Clock, SystemClock
from audiomidi_client.core.state_machine import TaskStateMachine, TaskTransport
from audiomidi_client.core.task import Task
from audiomidi_client.errors import (
    AudioMidiError,
    InvalidTransitionError,
    PollingAbortedError,
    PollingCancelledError,
    TaskNotFoundError,
    TransportError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollPolicy:
    """Timing and tolerance settings for one poll loop.

    Attributes:
        initial_delay: Seconds before the first status check of a run.
        interval: Seconds between later status checks.
        max_attempts: Poll ceiling per task; reaching it fails the task with TIMEOUT.
        max_consecutive_errors: Back-to-back transport failures tolerated.
        not_found_grace_attempts: Leading attempts on which a 404 is treated
            as "not indexed yet" rather than "task lost".
    """

    initial_delay: float = POLL_INITIAL_DELAY_S
    interval: float = POLL_INTERVAL_S
    max_attempts: int = POLL_MAX_ATTEMPTS
    max_consecutive_errors: int = POLL_MAX_CONSECUTIVE_ERRORS
    not_found_grace_attempts: int = 1

    def __post_init__(self) -> None:
        if self.initial_delay < 0 or self.interval < 0:
            raise ValueError("Poll delays must not be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_consecutive_errors < 1:
            raise ValueError("max_consecutive_errors must be at least 1")
        if self.not_found_grace_attempts < 0:
            raise ValueError("not_found_grace_attempts must not be negative")


class PollScheduler:
    """Runs the status-check loop for one TaskStateMachine."""

    def __init__(
        self,
        machine: TaskStateMachine,
        transport: TaskTransport,
        policy: Optional[PollPolicy] = None,
        clock: Optional[Clock] = None,
        token: Optional[CancelToken] = None,
    ) -> None:
        self._machine = machine
        self._transport = transport
        self._policy = policy or PollPolicy()
        self._clock = clock or SystemClock()
        self._token = token or CancelToken()

    @property
    def token(self) -> CancelToken:
        return self._token

    def cancel(self) -> None:
        self._token.cancel()

    async def run(self) -> Task:
        """Poll until the task is terminal and return its final snapshot.

        Raises:
            PollingAbortedError: too many consecutive transport failures.
            PollingCancelledError: cancel() was called.
            AudioMidiError: any non-retried error (TaskNotFound after the
                grace period, AuthError, ServerError, ...).
        """
        machine = self._machine
        policy = self._policy

        if machine.is_terminal:
            machine.replay_outcome()
            return machine.snapshot()
        if machine.task_id is None:
            raise InvalidTransitionError("Task has no ID; submit it before polling")

        delay = policy.initial_delay
        while True:
            if machine.attempt >= policy.max_attempts:
                logger.warning("Task %s timed out after %d polls", machine.task_id, machine.attempt)
                return machine.fail_timeout(policy.max_attempts)

            await self._pause(delay)
            delay = policy.interval
            self._check_cancelled()

            attempt = machine.begin_poll()
            try:
                snapshot = await self._transport.fetch_status(machine.task_id, machine.credentials)
            except AudioMidiError as exc:
                self._check_cancelled()
                self._handle_error(exc, attempt)
            else:
                self._check_cancelled()
                machine.apply_snapshot(snapshot)
                if machine.is_terminal:
                    logger.info(
                        "Task %s finished as %s after %d polls", machine.task_id, machine.state.value, attempt
                    )
                    return machine.snapshot()

    def _handle_error(self, exc: AudioMidiError, attempt: int) -> None:
        machine = self._machine
        policy = self._policy

        if isinstance(exc, TaskNotFoundError) and attempt <= policy.not_found_grace_attempts:
            logger.info("Task %s not found on poll %d, retrying", machine.task_id, attempt)
            return

        machine.record_error(exc)

        if isinstance(exc, TransportError):
            logger.warning(
                "Poll %d for task %s failed (%d/%d): %s",
                attempt,
                machine.task_id,
                machine.consecutive_errors,
                policy.max_consecutive_errors,
                exc.message,
            )
            if machine.consecutive_errors >= policy.max_consecutive_errors:
                aborted = PollingAbortedError(
                    "Polling stopped after {} consecutive network errors: {}".format(
                        machine.consecutive_errors, exc.message
                    )
                )
                machine.abort(aborted)
                raise aborted from exc
            return

        logger.warning("Poll %d for task %s failed: %s", attempt, machine.task_id, exc.message)
        machine.abort(exc)
        raise exc

    def _check_cancelled(self) -> None:
        if self._token.cancelled:
            logger.info("Polling cancelled for task %s", self._machine.task_id)
            raise PollingCancelledError("Polling cancelled")

    async def _pause(self, seconds: float) -> None:
        """Sleep for seconds, returning early if the token is cancelled."""
        if self._token.cancelled:
            return
        sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
        waiter = asyncio.ensure_future(self._token.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [f for f in (sleeper, waiter) if not f.done()]
            for future in pending:
                future.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
