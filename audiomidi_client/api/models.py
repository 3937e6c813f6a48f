"""Request and response dataclasses for the conversion server API.

WHY: The server returns flat JSON objects for upload, status, and health
responses. Typed dataclasses make these structures explicit and keep
field-name knowledge (task_id, download_url, ...) in one place.

HOW: Each dataclass maps 1:1 to a server JSON object. Factory methods
(from_dict) parse raw API responses. RemoteStatus.parse folds unknown
status strings into PROCESSING so newer servers do not break old clients.

RULES:
- task_id and status are required on upload and status responses
- Every other status field is optional and defaults to None
- Unknown status values are treated as "processing"
- Status strings are compared case-insensitively
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

from audiomidi_client.errors import ValidationError


class RemoteStatus(str, enum.Enum):
    """Task status as reported by the server.

    Closed set; anything else the server sends parses as PROCESSING.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Optional[str]) -> RemoteStatus:
        """Map a raw status string to a RemoteStatus, defaulting to PROCESSING."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.PROCESSING


@dataclass(frozen=True)
class SubmitResponse:
    """Response body of POST /upload."""

    task_id: str
    status: RemoteStatus
    message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SubmitResponse:
        return cls(
            task_id=str(data["task_id"]),
            status=RemoteStatus.parse(data.get("status")),
            message=data.get("message"),
        )


@dataclass(frozen=True)
class TaskSnapshot:
    """Status response from polling GET /task/{task_id}.

    WHY: The poll loop needs the status plus whatever the server knows
    about the result or the failure. Diagnostic fields (queue position,
    timestamps) are kept for the presentation layer.

    RULES:
    - status is always a RemoteStatus (unknown → PROCESSING)
    - download_url is only meaningful when status is COMPLETED
    - error is only meaningful when status is FAILED
    - raw_status keeps the server's original string for logging
    """

    task_id: Optional[str]
    status: RemoteStatus
    raw_status: str = ""
    download_url: Optional[str] = None
    error: Optional[str] = None
    processing_time: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    position_in_queue: Optional[int] = None
    filename: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TaskSnapshot:
        """Parse a TaskSnapshot from a raw API response dict.

        RULES:
        - status is required (KeyError otherwise, classified by the client)
        - processing_time is coerced to float when present
        """
        raw_status = data["status"]
        processing_time = data.get("processing_time")
        return cls(
            task_id=data.get("task_id"),
            status=RemoteStatus.parse(raw_status),
            raw_status=str(raw_status),
            download_url=data.get("download_url"),
            error=data.get("error"),
            processing_time=float(processing_time) if processing_time is not None else None,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            position_in_queue=data.get("position_in_queue"),
            filename=data.get("filename"),
            message=data.get("message"),
        )


@dataclass(frozen=True)
class HealthStatus:
    """Outcome of the best-effort GET /health check."""

    reachable: bool
    message: str
    status_code: Optional[int] = None


def reference_filename(reference: str) -> str:
    """Return the server-side filename a download reference points at.

    The reference may be an absolute URL, a path (/download/x.mid), or a
    bare filename; in every case the last path segment is the name.
    """
    path = urlparse((reference or "").strip()).path
    segment = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    if not segment:
        raise ValidationError("Download reference is empty: {!r}".format(reference))
    return segment
