"""Conversion server API package: async HTTP interface to the remote converter.

WHY: The client needs to upload audio, poll task status, download MIDI
artifacts, and check server health. This package encapsulates all server
communication behind one async client class.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. AudioMidiClient
provides one method per remote operation and classifies failures into
errors.py types. Response data is parsed into dataclasses in models.py.

RULES:
- All HTTP calls go through AudioMidiClient (no direct httpx usage elsewhere)
- Authentication is a static API key in the X-API-Key header
"""

from audiomidi_client.api.client import AudioMidiClient
from audiomidi_client.api.models import HealthStatus, RemoteStatus, SubmitResponse, TaskSnapshot

__all__ = ["AudioMidiClient", "HealthStatus", "RemoteStatus", "SubmitResponse", "TaskSnapshot"]
