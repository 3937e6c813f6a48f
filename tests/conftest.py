"""Shared test fixtures for the audiomidi_client test suite.

WHY: The state machine, scheduler, and session tests all need the same
deterministic collaborators: a clock that never really sleeps, a
transport that replays a scripted sequence of server answers, and a
valid submission.

HOW: FakeClock advances virtual time on sleep() and yields to the event
loop once. FakeTransport pops scripted TaskSnapshots or errors from a
list on every fetch_status call and records every call it receives.

RULES:
- No test touches the network or the wall clock
- Async code runs via asyncio.run() inside synchronous tests
- Scripted status items are TaskSnapshot instances or AudioMidiError instances
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional

import pytest

from audiomidi_client.api.models import HealthStatus, RemoteStatus, SubmitResponse, TaskSnapshot
from audiomidi_client.config import Credentials
from audiomidi_client.core.scheduler import PollPolicy
from audiomidi_client.core.submission import Submission

TASK_ID = "3f2a9c1e"
MIDI_BYTES = b"MThd\x00\x00\x00\x06\x00\x01\x00\x01\x01\xe0MTrk"


def snap(status: str, **kwargs: Any) -> TaskSnapshot:
    """Build a TaskSnapshot the way the client would parse it."""
    return TaskSnapshot(
        task_id=kwargs.pop("task_id", TASK_ID),
        status=RemoteStatus.parse(status),
        raw_status=status,
        **kwargs,
    )


def completed(reference: str = "/download/3f2a9c1e.mid", **kwargs: Any) -> TaskSnapshot:
    return snap("completed", download_url=reference, **kwargs)


class FakeClock:
    """Virtual clock: sleep() advances time instantly."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)


class FakeTransport:
    """Scripted stand-in for AudioMidiClient."""

    def __init__(
        self,
        statuses: Optional[List[Any]] = None,
        submit_response: Optional[SubmitResponse] = None,
        submit_error: Optional[Exception] = None,
        default_status: Optional[TaskSnapshot] = None,
        artifact: bytes = MIDI_BYTES,
    ) -> None:
        self.statuses = list(statuses or [])
        self.submit_response = submit_response or SubmitResponse(
            task_id=TASK_ID, status=RemoteStatus.QUEUED, message="queued"
        )
        self.submit_error = submit_error
        self.default_status = default_status or snap("processing")
        self.artifact = artifact
        self.submit_calls: List[Submission] = []
        self.status_calls: List[str] = []
        self.result_calls: List[str] = []

    async def submit(self, submission: Submission) -> SubmitResponse:
        self.submit_calls.append(submission)
        await asyncio.sleep(0)
        if self.submit_error is not None:
            raise self.submit_error
        return self.submit_response

    async def fetch_status(self, task_id: str, credentials: Credentials) -> TaskSnapshot:
        self.status_calls.append(task_id)
        await asyncio.sleep(0)
        item = self.statuses.pop(0) if self.statuses else self.default_status
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_result(self, reference: str, credentials: Credentials):
        self.result_calls.append(reference)
        half = len(self.artifact) // 2
        for chunk in (self.artifact[:half], self.artifact[half:]):
            await asyncio.sleep(0)
            yield chunk

    async def check_health(self, credentials: Credentials) -> HealthStatus:
        return HealthStatus(reachable=True, message="ok", status_code=200)


async def collect(chunks) -> bytes:
    return b"".join([chunk async for chunk in chunks])


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(base_url="http://midi.test", api_key="secret-key")


@pytest.fixture
def submission(credentials) -> Submission:
    return Submission.from_bytes(b"RIFF" + b"\x00" * 60, "take one.wav", credentials)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> PollPolicy:
    return PollPolicy(
        initial_delay=2.0,
        interval=5.0,
        max_attempts=120,
        max_consecutive_errors=4,
        not_found_grace_attempts=1,
    )
