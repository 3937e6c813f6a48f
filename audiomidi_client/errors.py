"""Typed error taxonomy shared by the transport and the lifecycle core.

WHY: Callers have to decide whether to retry, resume, re-submit, or give
up. That decision depends on what went wrong, not on the HTTP library
that noticed it. Each failure class gets its own exception type and a
stable ErrorKind value that survives into results and events.

HOW: AudioMidiError carries a kind, a human-readable message, and the HTTP
status code when there was one. Subclasses fix the kind. RETRYABLE_KINDS
lists the kinds for which another attempt is sensible.

RULES:
- Transport-level errors are classified once, in api/client.py
- Every subclass sets a class-level ``kind``
- ``retryable`` is derived from the kind, never set per instance
"""

from __future__ import annotations

import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    """Failure classes. Inherits from str so values serialize cleanly."""

    AUTH = "auth"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    SERVER_BUSY = "server_busy"
    SERVER_STORAGE_FULL = "server_storage_full"
    ENDPOINT_MISSING = "endpoint_missing"
    TASK_NOT_FOUND = "task_not_found"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    POLLING_ABORTED = "polling_aborted"
    POLLING_CANCELLED = "polling_cancelled"
    VALIDATION = "validation"
    SERVER_FAILURE = "server_failure"
    INVALID_TRANSITION = "invalid_transition"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.SERVER_BUSY,
        ErrorKind.SERVER_STORAGE_FULL,
        ErrorKind.TASK_NOT_FOUND,
        ErrorKind.SERVER_ERROR,
        ErrorKind.TRANSPORT,
        ErrorKind.TIMEOUT,
        ErrorKind.POLLING_ABORTED,
        ErrorKind.POLLING_CANCELLED,
    }
)


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


class AudioMidiError(Exception):
    """Base class for every classified client error.

    WHY: One catchable type for the CLI and the session, with enough
    structure (kind, status_code) to build a result value.

    RULES:
    - message is always a non-empty human-readable string
    - status_code is None for errors detected without an HTTP response
    """

    kind: ErrorKind = ErrorKind.SERVER_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)


class AuthError(AudioMidiError):
    """The server rejected the API key (401)."""

    kind = ErrorKind.AUTH


class PayloadTooLargeError(AudioMidiError):
    """The server refused the upload size (413)."""

    kind = ErrorKind.PAYLOAD_TOO_LARGE


class ServerBusyError(AudioMidiError):
    """The server is rate limiting or overloaded (429)."""

    kind = ErrorKind.SERVER_BUSY


class ServerStorageFullError(AudioMidiError):
    """The server has no disk space left (507)."""

    kind = ErrorKind.SERVER_STORAGE_FULL


class EndpointMissingError(AudioMidiError):
    """The upload endpoint does not exist (404 on submit), usually a wrong server URL."""

    kind = ErrorKind.ENDPOINT_MISSING


class TaskNotFoundError(AudioMidiError):
    """The server does not know the task ID (404 on status).

    Raised on the first poll this is usually an indexing delay; later it
    means the task was lost (server restart, expiry).
    """

    kind = ErrorKind.TASK_NOT_FOUND


class NotFoundError(AudioMidiError):
    """The artifact does not exist or has expired (404 on download)."""

    kind = ErrorKind.NOT_FOUND


class ServerError(AudioMidiError):
    """Any other non-2xx response, or a 2xx response with an unusable body."""

    kind = ErrorKind.SERVER_ERROR


class TransportError(AudioMidiError):
    """Connection, TLS, or timeout failure below the HTTP layer."""

    kind = ErrorKind.TRANSPORT


class PollTimeoutError(AudioMidiError):
    """The client-side poll ceiling was reached before a terminal status."""

    kind = ErrorKind.TIMEOUT


class PollingAbortedError(AudioMidiError):
    """Too many back-to-back transport failures; the task may still be alive."""

    kind = ErrorKind.POLLING_ABORTED


class PollingCancelledError(AudioMidiError):
    """The poll loop was cancelled by the caller."""

    kind = ErrorKind.POLLING_CANCELLED


class ValidationError(AudioMidiError):
    """Bad input detected locally, before any network call."""

    kind = ErrorKind.VALIDATION


class ServerFailureError(AudioMidiError):
    """The server reported that the conversion itself failed."""

    kind = ErrorKind.SERVER_FAILURE


class InvalidTransitionError(AudioMidiError):
    """A lifecycle operation was attempted from a state that does not allow it."""

    kind = ErrorKind.INVALID_TRANSITION


_ERROR_TYPES: dict[ErrorKind, type[AudioMidiError]] = {
    cls.kind: cls
    for cls in (
        AuthError,
        PayloadTooLargeError,
        ServerBusyError,
        ServerStorageFullError,
        EndpointMissingError,
        TaskNotFoundError,
        NotFoundError,
        ServerError,
        TransportError,
        PollTimeoutError,
        PollingAbortedError,
        PollingCancelledError,
        ValidationError,
        ServerFailureError,
        InvalidTransitionError,
    )
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    status_code: Optional[int] = None,
) -> AudioMidiError:
    """Build the exception instance matching a kind."""
    return _ERROR_TYPES.get(kind, AudioMidiError)(message, status_code)
