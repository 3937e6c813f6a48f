"""Async HTTP client for the audio-to-MIDI conversion server.

WHY: The lifecycle core needs three remote operations (submit a job,
fetch its status, fetch the finished artifact) plus a diagnostic health
check. This module encapsulates the HTTP details and, more importantly,
classifies every failure into the typed taxonomy from errors.py so the
core never sees an httpx exception or a raw status code.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. AudioMidiClient is an
async context manager: enter it to open the connection pool, exit to
close it. Credentials travel with each call (the X-API-Key header and
the base URL), so one client can serve several servers. Artifact bytes
are streamed with client.stream() instead of buffered.

RULES:
- Always use the async context manager (async with AudioMidiClient() as client:)
- No retries here; retry policy lives in the poll scheduler
- 404 is context-sensitive: EndpointMissing (submit), TaskNotFound (status),
  NotFound (download)
- httpx.TransportError (connect, TLS, timeouts) → TransportError
- A 2xx response with an unusable body → ServerError
- Connect timeout short, read/write timeouts long (large uploads, slow server)
- The API key is never logged
"""

from __future__ import annotations

import enum
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional, TypeVar
from urllib.parse import quote

import httpx

from audiomidi_client.api.models import (
    HealthStatus,
    SubmitResponse,
    TaskSnapshot,
    reference_filename,
)
from audiomidi_client.config import (
    API_KEY_HEADER,
    CONNECT_TIMEOUT_S,
    READ_TIMEOUT_S,
    Credentials,
)
from audiomidi_client.core.submission import Submission
from audiomidi_client.errors import (
    AudioMidiError,
    ErrorKind,
    ServerError,
    TransportError,
    ValidationError,
    error_for_kind,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_ERROR_BODY_CHARS = 200
_DOWNLOAD_CHUNK_BYTES = 64 * 1024


class Operation(str, enum.Enum):
    """Which remote call produced a response; decides what a 404 means."""

    SUBMIT = "submit"
    STATUS = "status"
    DOWNLOAD = "download"


_STATUS_KINDS: Dict[int, ErrorKind] = {
    401: ErrorKind.AUTH,
    413: ErrorKind.PAYLOAD_TOO_LARGE,
    429: ErrorKind.SERVER_BUSY,
    507: ErrorKind.SERVER_STORAGE_FULL,
}

_NOT_FOUND_KINDS: Dict[Operation, ErrorKind] = {
    Operation.SUBMIT: ErrorKind.ENDPOINT_MISSING,
    Operation.STATUS: ErrorKind.TASK_NOT_FOUND,
    Operation.DOWNLOAD: ErrorKind.NOT_FOUND,
}

_DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.AUTH: "Invalid API key",
    ErrorKind.PAYLOAD_TOO_LARGE: "File too large for the server (maximum 100 MiB)",
    ErrorKind.SERVER_BUSY: "Server busy, please try again later",
    ErrorKind.SERVER_STORAGE_FULL: "Server is out of disk space",
    ErrorKind.ENDPOINT_MISSING: "Upload endpoint not found, check the server URL",
    ErrorKind.TASK_NOT_FOUND: "Task not found on the server (it may have restarted)",
    ErrorKind.NOT_FOUND: "File does not exist or has expired",
}


def classify_response(status_code: int, body: str, operation: Operation) -> AudioMidiError:
    """Map a non-2xx response to a typed error.

    WHY: The status code alone is ambiguous (404 means three different
    things), so classification needs the operation as well.

    RULES:
    - 401/413/429/507 map to fixed kinds regardless of operation
    - 404 maps per operation (see _NOT_FOUND_KINDS)
    - Everything else → ServerError
    - The message carries the server's "detail" text when it sent one
    """
    if status_code == 404:
        kind = _NOT_FOUND_KINDS[operation]
    else:
        kind = _STATUS_KINDS.get(status_code, ErrorKind.SERVER_ERROR)

    detail = _error_detail(body)
    base = _DEFAULT_MESSAGES.get(kind, "Server error ({})".format(status_code))
    message = "{}: {}".format(base, detail) if detail else base
    return error_for_kind(kind, message, status_code)


def _error_detail(body: str) -> str:
    """Extract a short human-readable detail from an error body."""
    body = (body or "").strip()
    if not body:
        return ""
    try:
        data = json.loads(body)
    except ValueError:
        return body[:_MAX_ERROR_BODY_CHARS]
    if isinstance(data, dict):
        for key in ("detail", "error", "message"):
            if data.get(key):
                return str(data[key])[:_MAX_ERROR_BODY_CHARS]
    return body[:_MAX_ERROR_BODY_CHARS]


def _endpoint(credentials: Credentials, path: str) -> str:
    return "{}{}".format(credentials.base_url.rstrip("/"), path)


def _auth_headers(credentials: Credentials) -> Dict[str, str]:
    return {API_KEY_HEADER: credentials.api_key}


def _transport_error(exc: httpx.TransportError, action: str) -> TransportError:
    if isinstance(exc, httpx.TimeoutException):
        return TransportError("Network timeout while {}: {}".format(action, exc))
    return TransportError("Network connection failed while {}: {}".format(action, exc))


def _parse_json(
    resp: httpx.Response,
    factory: Callable[[Dict[str, Any]], T],
    action: str,
) -> T:
    try:
        return factory(resp.json())
    except (ValueError, KeyError, TypeError) as exc:
        raise ServerError(
            "Unexpected response while {}: {}".format(action, exc),
            resp.status_code,
        ) from exc


class AudioMidiClient:
    """Async client for the conversion server's task API.

    WHY: Gives the lifecycle core a small typed surface (submit,
    fetch_status, fetch_result, check_health) with every failure already
    classified.

    HOW: Wraps httpx.AsyncClient. Use as an async context manager to
    ensure the connection pool is closed. A custom httpx transport can be
    injected (tests use httpx.MockTransport).

    RULES:
    - Use as: async with AudioMidiClient() as client: ...
    - connect_timeout defaults to CONNECT_TIMEOUT_S, read_timeout to READ_TIMEOUT_S
    - Each call raises an AudioMidiError subclass on failure
    """

    def __init__(
        self,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = httpx.Timeout(
            read_timeout if read_timeout is not None else READ_TIMEOUT_S,
            connect=connect_timeout if connect_timeout is not None else CONNECT_TIMEOUT_S,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> AudioMidiClient:
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Return the active httpx client, raising if not in context manager."""
        if self._client is None:
            raise RuntimeError(
                "AudioMidiClient must be used as an async context manager: "
                "async with AudioMidiClient() as client: ..."
            )
        return self._client

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(self, submission: Submission) -> SubmitResponse:
        """Upload the audio payload and return the new task's ID and status.

        HOW: Multipart POST /upload with a single "file" field. The payload
        is streamed from disk (or memory) by httpx.

        RULES:
        - Size is NOT checked here; Submission.validate() runs first
        - 404 → EndpointMissingError (wrong server URL)
        - Payload unreadable (deleted, no permission) → ValidationError
        """
        client = self._ensure_client()
        credentials = submission.credentials
        logger.debug(
            "Uploading %s (%d bytes) to %s", submission.name, submission.size, credentials.base_url
        )
        try:
            with submission.open() as f:
                resp = await client.post(
                    _endpoint(credentials, "/upload"),
                    headers=_auth_headers(credentials),
                    files={"file": (submission.name, f, submission.mime_type)},
                )
        except httpx.TransportError as exc:
            raise _transport_error(exc, "uploading") from exc
        except OSError as exc:
            raise ValidationError(
                "Cannot read audio file {}: {}".format(submission.name, exc)
            ) from exc

        if not resp.is_success:
            raise classify_response(resp.status_code, resp.text, Operation.SUBMIT)

        result = _parse_json(resp, SubmitResponse.from_dict, "uploading")
        logger.info("Submitted %s as task %s (%s)", submission.name, result.task_id, result.status.value)
        return result

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def fetch_status(self, task_id: str, credentials: Credentials) -> TaskSnapshot:
        """Fetch the current status of a task.

        RULES:
        - 404 → TaskNotFoundError (the scheduler decides whether it is benign)
        - Unknown status strings parse as PROCESSING
        """
        client = self._ensure_client()
        try:
            resp = await client.get(
                _endpoint(credentials, "/task/{}".format(quote(task_id, safe=""))),
                headers=_auth_headers(credentials),
            )
        except httpx.TransportError as exc:
            raise _transport_error(exc, "checking task status") from exc

        if not resp.is_success:
            raise classify_response(resp.status_code, resp.text, Operation.STATUS)

        snapshot = _parse_json(resp, TaskSnapshot.from_dict, "checking task status")
        logger.debug("Task %s status: %s", task_id, snapshot.raw_status)
        return snapshot

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    async def fetch_result(
        self,
        reference: str,
        credentials: Credentials,
    ) -> AsyncIterator[bytes]:
        """Stream the artifact a download reference points at.

        WHY: MIDI files are small, but the persistence collaborator should
        not care; streaming keeps memory flat either way.

        HOW: An async generator over GET /download/{filename}. The status
        code is checked before the first chunk is yielded, so errors
        surface on the first iteration.

        RULES:
        - Consume the generator fully (or aclose() it) to release the connection
        - 401 → AuthError, 404 → NotFoundError, network → TransportError
        """
        client = self._ensure_client()
        filename = reference_filename(reference)
        url = _endpoint(credentials, "/download/{}".format(quote(filename, safe="")))
        try:
            async with client.stream("GET", url, headers=_auth_headers(credentials)) as resp:
                if not resp.is_success:
                    await resp.aread()
                    raise classify_response(resp.status_code, resp.text, Operation.DOWNLOAD)
                logger.debug("Downloading %s", filename)
                async for chunk in resp.aiter_bytes(_DOWNLOAD_CHUNK_BYTES):
                    yield chunk
        except httpx.TransportError as exc:
            raise _transport_error(exc, "downloading") from exc

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(self, credentials: Credentials) -> HealthStatus:
        """Best-effort GET /health. Never raises for network or HTTP failures."""
        client = self._ensure_client()
        try:
            resp = await client.get(_endpoint(credentials, "/health"))
        except httpx.HTTPError as exc:
            logger.warning("Health check failed: %s", exc)
            return HealthStatus(reachable=False, message="Health check error: {}".format(exc))

        if resp.is_success:
            return HealthStatus(
                reachable=True,
                message=resp.text or "No response body",
                status_code=resp.status_code,
            )
        return HealthStatus(
            reachable=False,
            message="Health check failed: HTTP {}".format(resp.status_code),
            status_code=resp.status_code,
        )
