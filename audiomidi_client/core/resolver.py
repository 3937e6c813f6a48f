"""Result resolver: turns a settled task or a polling error into a caller-facing value.

WHY: Callers (CLI, GUI) need one of two things at the end of a run: what
to download and what to call it, or what went wrong and whether trying
again makes sense. Server-reported conversion failures (unsupported
audio) are not worth retrying; timeouts and network trouble are.

HOW: resolve_task() maps a Completed task to ArtifactReady (with a
sanitized local filename) and a Failed task to ConversionFailed.
resolve_error() maps an AudioMidiError raised by the scheduler or the
submission to ConversionFailed. sanitize_filename() strips anything
path-like or outside [A-Za-z0-9._-] from the server-supplied name.

RULES:
- Filenames keep only [A-Za-z0-9._-], never start with a dot, and end in .mid/.midi
- retryable comes from the error kind (errors.RETRYABLE_KINDS)
- resolve_task() rejects non-terminal tasks with InvalidTransitionError
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

from audiomidi_client.api.models import reference_filename
from audiomidi_client.config import DEFAULT_ARTIFACT_NAME, MIDI_EXTENSIONS
from audiomidi_client.core.task import Task, TaskState
from audiomidi_client.errors import (
    AudioMidiError,
    ErrorKind,
    InvalidTransitionError,
    ValidationError,
    is_retryable,
)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class ArtifactReady:
    """A completed conversion, ready for retrieval."""

    reference: str
    filename: str
    processing_time: Optional[float] = None
    task_id: Optional[str] = None

    ok = True


@dataclass(frozen=True)
class ConversionFailed:
    """A conversion that did not produce an artifact."""

    kind: ErrorKind
    message: str
    retryable: bool
    task_id: Optional[str] = None

    ok = False

    @property
    def server_reported(self) -> bool:
        return self.kind is ErrorKind.SERVER_FAILURE


Resolution = Union[ArtifactReady, ConversionFailed]


def sanitize_filename(name: Optional[str], default: str = DEFAULT_ARTIFACT_NAME) -> str:
    """Return a safe local filename for a downloaded MIDI artifact.

    Examples:
        "../../evil name?.mid" → "evil_name_.mid"
        "song.wav"             → "song.wav.mid"
        ""                     → "result.mid"
    """
    base = re.split(r"[\\/]", (name or "").strip())[-1]
    base = _UNSAFE_CHARS.sub("_", base).lstrip(".")
    if not base or base.strip("_") == "":
        base = default
    if not base.lower().endswith(MIDI_EXTENSIONS):
        base = base + MIDI_EXTENSIONS[0]
    return base


def artifact_filename(reference: str, server_filename: Optional[str] = None) -> str:
    """Derive the local filename for a download reference."""
    try:
        name = reference_filename(reference)
    except ValidationError:
        name = server_filename or ""
    return sanitize_filename(name)


def resolve_task(task: Task) -> Resolution:
    if task.state is TaskState.COMPLETED and task.result is not None:
        return ArtifactReady(
            reference=task.result.reference,
            filename=artifact_filename(task.result.reference, task.result.filename),
            processing_time=task.result.processing_time,
            task_id=task.id,
        )
    if task.state is TaskState.FAILED and task.failure is not None:
        return ConversionFailed(
            kind=task.failure.kind,
            message=task.failure.message,
            retryable=task.failure.retryable,
            task_id=task.id,
        )
    raise InvalidTransitionError(
        "Task {} has not finished (state: {})".format(task.id, task.state.value)
    )


def resolve_error(error: AudioMidiError, task_id: Optional[str] = None) -> ConversionFailed:
    return ConversionFailed(
        kind=error.kind,
        message=error.message,
        retryable=is_retryable(error.kind),
        task_id=task_id,
    )
