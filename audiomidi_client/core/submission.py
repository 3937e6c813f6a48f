"""Submission value object and local pre-flight validation.

WHY: Oversized or empty uploads and missing credentials must be rejected
before any bytes go over the network. Keeping those checks on the value
object means the state machine can validate without knowing where the
audio came from (recorder or file picker).

HOW: Submission is a frozen dataclass holding either a file path or an
in-memory bytes payload, plus declared name, size, MIME type, and
credentials. validate() raises ValidationError; warnings() returns
advisory messages that never block the upload.

RULES:
- Exactly one of path / content is set
- size is the declared size in bytes; size > max → ValidationError
- Empty API key or base URL → ValidationError
- Unknown extensions and near-limit sizes are warnings, not errors
"""

from __future__ import annotations

import io
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Union

from audiomidi_client.config import (
    AUDIO_EXTENSIONS,
    AUDIO_MIME_TYPES,
    DEFAULT_MIME_TYPE,
    MAX_UPLOAD_BYTES,
    SIZE_WARNING_BYTES,
    Credentials,
)
from audiomidi_client.errors import ValidationError

_MIB = 1024 * 1024


def guess_mime_type(name: str) -> str:
    return AUDIO_MIME_TYPES.get(Path(name).suffix.lower(), DEFAULT_MIME_TYPE)


@dataclass(frozen=True)
class Submission:
    """One audio payload ready for upload."""

    name: str
    size: int
    credentials: Credentials
    path: Optional[Path] = None
    content: Optional[bytes] = None
    mime_type: str = DEFAULT_MIME_TYPE

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        credentials: Credentials,
        name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> Submission:
        """Build a Submission for a file on disk.

        RULES:
        - Missing file → ValidationError (no Submission is built)
        - name defaults to the file's own name
        """
        path = Path(path)
        if not path.is_file():
            raise ValidationError("Audio file not found: {}".format(path))
        name = name or path.name
        return cls(
            name=name,
            size=path.stat().st_size,
            credentials=credentials,
            path=path,
            mime_type=mime_type or guess_mime_type(name),
        )

    @classmethod
    def from_bytes(
        cls,
        content: bytes,
        name: str,
        credentials: Credentials,
        mime_type: Optional[str] = None,
    ) -> Submission:
        """Build a Submission for an in-memory recording."""
        return cls(
            name=name,
            size=len(content),
            credentials=credentials,
            content=content,
            mime_type=mime_type or guess_mime_type(name),
        )

    def validate(self, max_bytes: int = MAX_UPLOAD_BYTES) -> None:
        """Raise ValidationError if this submission must not be sent.

        WHY: The server rejects these anyway, but only after the full
        upload. Checking locally saves the round trip and the bandwidth.

        RULES:
        - Checks payload presence, size, then credentials
        - Never touches the network
        """
        if self.path is None and self.content is None:
            raise ValidationError("No audio payload to upload")
        if self.path is not None and not self.path.is_file():
            raise ValidationError("Audio file not found: {}".format(self.path))
        if self.size <= 0:
            raise ValidationError("Audio payload is empty: {}".format(self.name))
        if self.size > max_bytes:
            raise ValidationError(
                "File too large ({:.1f} MiB), maximum is {} MiB".format(
                    self.size / _MIB, max_bytes // _MIB
                )
            )
        if not self.credentials.api_key.strip():
            raise ValidationError("API key is empty")
        if not self.credentials.base_url.strip():
            raise ValidationError("Server URL is empty")

    def warnings(self) -> List[str]:
        """Return advisory messages about this submission (may be empty)."""
        messages: List[str] = []
        ext = Path(self.name).suffix.lower()
        if ext not in AUDIO_EXTENSIONS:
            messages.append(
                "File type '{}' may not be supported. Known formats: {}".format(
                    ext or "(none)", ", ".join(sorted(AUDIO_EXTENSIONS))
                )
            )
        if SIZE_WARNING_BYTES < self.size <= MAX_UPLOAD_BYTES:
            messages.append(
                "File is close to the {} MiB limit ({:.1f} MiB)".format(
                    MAX_UPLOAD_BYTES // _MIB, self.size / _MIB
                )
            )
        return messages

    @contextmanager
    def open(self) -> Iterator[BinaryIO]:
        """Yield a binary file object over the payload."""
        if self.content is not None:
            yield io.BytesIO(self.content)
            return
        if self.path is None:
            raise ValidationError("No audio payload to upload")
        with open(self.path, "rb") as f:
            yield f
