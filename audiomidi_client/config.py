"""Configuration constants, credential loading, and .env handling.

WHY: Centralizes every tunable value (server address, timeouts, poll
cadence, upload limits) so it is easy to find and override. Credentials
are supplied by the environment, never hardcoded.

HOW: python-dotenv loads the .env file on import. Constants are module-level
values read through os.getenv with sensible defaults. load_credentials()
bundles the base URL and API key into a Credentials value for the core.

RULES:
- API key is loaded from .env / environment via python-dotenv
- Base URL without a scheme gets "http://" prepended; trailing "/" stripped
- MAX_UPLOAD_BYTES is 100 MiB; the server is the final authority
- AUDIO_EXTENSIONS is advisory only (soft warning, never a rejection)
- All defaults can be overridden via environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load .env from the project root (where the script is run from)
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

DEFAULT_BASE_URL = os.getenv("AUDIOMIDI_BASE_URL", "http://localhost:8000")
API_KEY_HEADER = "X-API-Key"

CONNECT_TIMEOUT_S = _env_float("AUDIOMIDI_CONNECT_TIMEOUT", 60.0)
READ_TIMEOUT_S = _env_float("AUDIOMIDI_READ_TIMEOUT", 600.0)
"""Read/write timeout. Long on purpose: uploads are large and the server is slow."""

# ---------------------------------------------------------------------------
# Upload limits
# ---------------------------------------------------------------------------

MAX_UPLOAD_BYTES = 100 * 1024 * 1024
SIZE_WARNING_BYTES = 95 * 1024 * 1024

AUDIO_EXTENSIONS: set[str] = {".wav", ".mp3", ".flac", ".ogg", ".m4a", ".aac"}
"""Audio extensions the server is known to accept (lowercase, with dot)."""

AUDIO_MIME_TYPES: dict[str, str] = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

POLL_INITIAL_DELAY_S = _env_float("AUDIOMIDI_POLL_INITIAL_DELAY", 2.0)
POLL_INTERVAL_S = _env_float("AUDIOMIDI_POLL_INTERVAL", 5.0)
POLL_MAX_ATTEMPTS = _env_int("AUDIOMIDI_POLL_MAX_ATTEMPTS", 120)
POLL_MAX_CONSECUTIVE_ERRORS = _env_int("AUDIOMIDI_POLL_MAX_ERRORS", 4)

# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------

MIDI_EXTENSIONS: tuple[str, ...] = (".mid", ".midi")
DEFAULT_ARTIFACT_NAME = "result.mid"


@dataclass(frozen=True)
class Credentials:
    """Server address and API key used for every remote call.

    WHY: The transport needs both on each request; the core passes them
    around as one value instead of reading globals.

    RULES:
    - base_url is already normalized (scheme present, no trailing slash)
    - repr never shows the API key
    """

    base_url: str
    api_key: str

    def __repr__(self) -> str:
        return "Credentials(base_url={!r}, api_key=***)".format(self.base_url)


def normalize_base_url(url: str) -> str:
    """Return url with a scheme and without a trailing slash.

    WHY: Users type "192.168.1.5:8000" as often as a full URL.

    RULES:
    - Missing scheme → "http://" prefix
    - Trailing slashes removed
    - Surrounding whitespace removed
    """
    url = url.strip()
    if url and not url.startswith(("http://", "https://")):
        url = "http://" + url
    return url.rstrip("/")


def load_api_key() -> str:
    """Load the API key from the environment.

    RULES:
    - Raises ValueError if the key is missing or empty
    - Never returns a default/placeholder value
    """
    key = os.getenv("AUDIOMIDI_API_KEY", "").strip()
    if not key:
        raise ValueError(
            "API key not configured. "
            "Add AUDIOMIDI_API_KEY to the .env file or pass --api-key."
        )
    return key


def load_credentials(
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> Credentials:
    """Build Credentials from explicit values, falling back to the environment."""
    return Credentials(
        base_url=normalize_base_url(base_url or DEFAULT_BASE_URL),
        api_key=(api_key or "").strip() or load_api_key(),
    )
