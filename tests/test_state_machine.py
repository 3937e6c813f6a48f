"""Tests for TaskStateMachine lifecycle rules.

WHY: The state machine is the only writer of Task. If it lets a status
move backwards, changes a finished task, or sets a result twice, every
view built on its events shows the wrong thing.

HOW: Drive the machine directly with snapshots and errors, without a
scheduler, and inspect snapshot() copies and the EventChannel history.
"""

from __future__ import annotations

import asyncio

import pytest

from audiomidi_client.api.models import RemoteStatus, SubmitResponse
from audiomidi_client.config import Credentials
from audiomidi_client.core.events import EventChannel, EventKind
from audiomidi_client.core.state_machine import TaskStateMachine
from audiomidi_client.core.submission import Submission
from audiomidi_client.core.task import TaskState
from audiomidi_client.errors import (
    AuthError,
    ErrorKind,
    InvalidTransitionError,
    PayloadTooLargeError,
    TransportError,
    ValidationError,
)

from conftest import TASK_ID, FakeTransport, completed, snap


def _submitted_machine(submission, clock, channel=None, transport=None):
    machine = TaskStateMachine(submission, channel=channel, clock=clock)
    asyncio.run(machine.submit(transport or FakeTransport()))
    return machine


class TestSubmit:
    def test_assigns_id_and_queues(self, submission, clock):
        channel = EventChannel()
        machine = TaskStateMachine(submission, channel=channel, clock=clock)

        task = asyncio.run(machine.submit(FakeTransport()))

        assert task.id == TASK_ID
        assert task.state is TaskState.QUEUED
        assert task.status is RemoteStatus.QUEUED
        assert task.submitted_at == clock.now()
        assert [e.state for e in channel.of_kind(EventKind.STATUS)] == ["submitting", "queued"]

    def test_non_queued_response_maps_to_processing(self, submission, clock):
        transport = FakeTransport(
            submit_response=SubmitResponse(task_id="t9", status=RemoteStatus.PROCESSING)
        )
        machine = _submitted_machine(submission, clock, transport=transport)
        assert machine.state is TaskState.PROCESSING

    def test_rejected_upload_fails_without_id(self, submission, clock):
        machine = TaskStateMachine(submission, clock=clock)
        transport = FakeTransport(submit_error=AuthError("Invalid API key", 401))

        with pytest.raises(AuthError):
            asyncio.run(machine.submit(transport))

        task = machine.snapshot()
        assert task.id is None
        assert task.state is TaskState.FAILED
        assert task.failure.kind is ErrorKind.AUTH
        assert task.failure.retryable is False

    def test_transport_failure_on_upload_is_retryable(self, submission, clock):
        machine = TaskStateMachine(submission, clock=clock)
        transport = FakeTransport(submit_error=TransportError("connection refused"))

        with pytest.raises(TransportError):
            asyncio.run(machine.submit(transport))

        assert machine.snapshot().failure.retryable is True

    def test_payload_too_large_from_server(self, submission, clock):
        machine = TaskStateMachine(submission, clock=clock)
        transport = FakeTransport(submit_error=PayloadTooLargeError("too big", 413))

        with pytest.raises(PayloadTooLargeError):
            asyncio.run(machine.submit(transport))
        assert machine.snapshot().failure.kind is ErrorKind.PAYLOAD_TOO_LARGE

    def test_oversized_payload_never_reaches_transport(self, credentials, clock):
        oversized = Submission(
            name="long.wav",
            size=100 * 1024 * 1024 + 1,
            credentials=credentials,
            content=b"RIFF",
        )
        machine = TaskStateMachine(oversized, clock=clock)
        transport = FakeTransport()

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(machine.submit(transport))

        assert "100 MiB" in exc_info.value.message
        assert transport.submit_calls == []
        assert machine.state is TaskState.FAILED
        assert machine.snapshot().failure.kind is ErrorKind.VALIDATION

    def test_validation_failure_skips_submitting(self, credentials, clock):
        channel = EventChannel()
        empty = Submission.from_bytes(b"", "silence.wav", credentials)
        machine = TaskStateMachine(empty, channel=channel, clock=clock)

        with pytest.raises(ValidationError):
            asyncio.run(machine.submit(FakeTransport()))

        assert [e.state for e in channel.of_kind(EventKind.STATUS)] == ["failed"]
        failed = channel.of_kind(EventKind.FAILED)
        assert len(failed) == 1
        assert failed[0].data["error_kind"] == "validation"

    def test_unreadable_payload_fails_as_validation(self, submission, clock):
        machine = TaskStateMachine(submission, clock=clock)
        transport = FakeTransport(submit_error=PermissionError(13, "Permission denied"))

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(machine.submit(transport))

        task = machine.snapshot()
        assert task.state is TaskState.FAILED
        assert task.failure.kind is ErrorKind.VALIDATION
        assert "Permission denied" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, PermissionError)

    def test_empty_api_key_never_reaches_transport(self, clock):
        creds = Credentials(base_url="http://midi.test", api_key="")
        sub = Submission.from_bytes(b"RIFF0000", "a.wav", creds)
        transport = FakeTransport()

        with pytest.raises(ValidationError):
            asyncio.run(TaskStateMachine(sub, clock=clock).submit(transport))
        assert transport.submit_calls == []

    def test_warnings_are_published(self, credentials, clock):
        channel = EventChannel()
        sub = Submission.from_bytes(b"data", "voice.aiff", credentials)

        asyncio.run(TaskStateMachine(sub, channel=channel, clock=clock).submit(FakeTransport()))

        warnings = channel.of_kind(EventKind.WARNING)
        assert len(warnings) == 1
        assert ".aiff" in warnings[0].message

    def test_second_submit_is_rejected(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        with pytest.raises(InvalidTransitionError):
            asyncio.run(machine.submit(FakeTransport()))


class TestApplySnapshot:
    def test_status_never_moves_backwards(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        machine.begin_poll()
        machine.apply_snapshot(snap("processing"))
        machine.begin_poll()
        machine.apply_snapshot(snap("queued"))

        assert machine.state is TaskState.PROCESSING

    def test_completed_is_final(self, submission, clock):
        channel = EventChannel()
        machine = _submitted_machine(submission, clock, channel)
        machine.begin_poll()
        machine.apply_snapshot(completed())

        machine.apply_snapshot(snap("failed", error="late failure"))
        machine.apply_snapshot(snap("processing"))

        task = machine.snapshot()
        assert task.state is TaskState.COMPLETED
        assert task.failure is None
        assert task.result.reference == "/download/3f2a9c1e.mid"
        assert channel.of_kind(EventKind.FAILED) == []

    def test_failed_is_final(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        machine.begin_poll()
        machine.apply_snapshot(snap("failed", error="bad audio"))
        machine.apply_snapshot(completed())

        task = machine.snapshot()
        assert task.state is TaskState.FAILED
        assert task.result is None
        assert task.failure.message == "bad audio"

    def test_failed_without_detail_uses_message(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        machine.apply_snapshot(snap("failed"))
        assert machine.snapshot().failure.message == "Unknown error"

    def test_completed_without_reference_is_server_error(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        machine.apply_snapshot(snap("completed"))

        task = machine.snapshot()
        assert task.state is TaskState.FAILED
        assert task.failure.kind is ErrorKind.SERVER_ERROR

    def test_progress_reports_queue_position_and_elapsed(self, submission, clock):
        channel = EventChannel()
        machine = _submitted_machine(submission, clock, channel)
        clock.current += 12
        machine.begin_poll()
        machine.apply_snapshot(snap("queued", position_in_queue=3))

        progress = channel.of_kind(EventKind.PROGRESS)[-1]
        assert progress.data["position_in_queue"] == 3
        assert progress.data["elapsed"] == 12
        assert machine.snapshot().position_in_queue == 3

    def test_repeated_status_publishes_one_status_event(self, submission, clock):
        channel = EventChannel()
        machine = _submitted_machine(submission, clock, channel)
        for _ in range(3):
            machine.begin_poll()
            machine.apply_snapshot(snap("processing"))

        processing = [e for e in channel.of_kind(EventKind.STATUS) if e.state == "processing"]
        assert len(processing) == 1


class TestCounters:
    def test_error_increments_and_success_resets(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        for _ in range(2):
            machine.begin_poll()
            machine.record_error(TransportError("blip"))
        assert machine.consecutive_errors == 2

        machine.begin_poll()
        machine.apply_snapshot(snap("processing"))
        assert machine.consecutive_errors == 0
        assert machine.attempt == 3

    def test_consecutive_errors_never_exceed_attempts(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        for _ in range(5):
            machine.begin_poll()
            machine.record_error(TransportError("blip"))
            task = machine.snapshot()
            assert task.consecutive_errors <= task.attempt

    def test_resume_clears_consecutive_errors_only(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        machine.begin_poll()
        machine.record_error(TransportError("blip"))

        machine.resume()

        assert machine.consecutive_errors == 0
        assert machine.attempt == 1
        assert machine.task_id == TASK_ID

    def test_resume_rejects_terminal_task(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        machine.apply_snapshot(completed())
        with pytest.raises(InvalidTransitionError):
            machine.resume()

    def test_begin_poll_requires_id(self, submission, clock):
        machine = TaskStateMachine(submission, clock=clock)
        with pytest.raises(InvalidTransitionError):
            machine.begin_poll()

    def test_fail_timeout(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        task = machine.fail_timeout(120)
        assert task.state is TaskState.FAILED
        assert task.failure.kind is ErrorKind.TIMEOUT


class TestSnapshots:
    def test_snapshot_is_a_copy(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        task = machine.snapshot()
        task.state = TaskState.COMPLETED
        task.attempt = 99

        assert machine.state is TaskState.QUEUED
        assert machine.attempt == 0

    def test_to_dict(self, submission, clock):
        machine = _submitted_machine(submission, clock)
        machine.apply_snapshot(completed(processing_time=3.0))

        data = machine.snapshot().to_dict()
        assert data["id"] == TASK_ID
        assert data["state"] == "completed"
        assert data["result"]["processing_time"] == 3.0
        assert data["failure"] is None

    def test_status_is_none_before_submission(self, submission, clock):
        assert TaskStateMachine(submission, clock=clock).snapshot().status is None
