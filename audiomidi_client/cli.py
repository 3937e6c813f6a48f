"""Command-line interface for the audio-to-MIDI client.

WHY: Users need a simple way to convert an audio file from the terminal
and to poke at a server (is it up, what is task X doing, fetch that
file). The CLI is also the reference presentation layer: it renders
core events as status lines and persists the downloaded artifact.

HOW: argparse with four subcommands (convert, status, download, health).
Each runs an async coroutine via asyncio.run(). convert builds a
Submission, runs it through a Session, prints events from the session's
channel to stderr, and streams the MIDI file into --output-dir.

RULES:
- Status output goes to stderr; machine-readable output to stdout
- Credentials: --server / --api-key override AUDIOMIDI_BASE_URL / AUDIOMIDI_API_KEY
- Output naming: sanitized server name, numeric suffix on conflict (song-2.mid)
- Exit code 0 on success, 1 on any failure, 130 on Ctrl-C
- Ctrl-C during convert cancels the poll loop cooperatively
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import AsyncIterator, List, Optional

from audiomidi_client.api.client import AudioMidiClient
from audiomidi_client.config import Credentials, load_credentials
from audiomidi_client.core.events import EventKind, TaskEvent
from audiomidi_client.core.resolver import ArtifactReady, artifact_filename
from audiomidi_client.core.session import Session
from audiomidi_client.core.submission import Submission
from audiomidi_client.errors import AudioMidiError, ValidationError, error_for_kind

logger = logging.getLogger(__name__)


def _status(msg: str) -> None:
    """Print a status message to stderr.

    WHY: Status output must not pollute stdout so the CLI can be piped.
    """
    print(msg, file=sys.stderr, flush=True)


def _fail(msg: str) -> None:
    print("Error: {}".format(msg), file=sys.stderr)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Event rendering
# ---------------------------------------------------------------------------


def format_event(event: TaskEvent) -> Optional[str]:
    """Render a TaskEvent as one status line, or None to stay quiet.

    RULES:
    - STATUS lines include the task ID once it is known
    - PROGRESS lines show elapsed time and queue position when available
    - Terminal lines include processing time or the failure reason
    """
    data = event.data
    if event.kind is EventKind.STATUS:
        if event.task_id:
            return "{} (task {})".format(event.message, event.task_id)
        return event.message
    if event.kind is EventKind.PROGRESS:
        parts = []
        elapsed = data.get("elapsed")
        if elapsed is not None:
            parts.append("elapsed: {}m {:02d}s".format(int(elapsed) // 60, int(elapsed) % 60))
        if data.get("position_in_queue") is not None:
            parts.append("queue position: {}".format(data["position_in_queue"]))
        if parts:
            return "  {} ({})".format(event.message, ", ".join(parts))
        return None
    if event.kind is EventKind.WARNING:
        return "Warning: {}".format(event.message)
    if event.kind is EventKind.POLL_ERROR:
        return "  Status check {} failed ({} in a row): {}".format(
            event.attempt, data.get("consecutive_errors", "?"), event.message
        )
    if event.kind is EventKind.COMPLETED:
        processing_time = data.get("processing_time")
        if processing_time is not None:
            return "{} (processing time: {:.1f}s)".format(event.message, processing_time)
        return event.message
    if event.kind is EventKind.FAILED:
        return "Conversion failed: {}".format(event.message)
    if event.kind is EventKind.ABORTED:
        return "Polling stopped: {}".format(event.message)
    return None


def _print_event(event: TaskEvent) -> None:
    line = format_event(event)
    if line:
        _status(line)


# ---------------------------------------------------------------------------
# Artifact persistence
# ---------------------------------------------------------------------------


def resolve_output_path(filename: str, output_dir: Path) -> Path:
    """Resolve the output file path, adding a numeric suffix on conflict.

    WHY: Converting the same recording twice must not overwrite the first
    result.

    RULES:
    - First attempt: {filename}
    - Conflict: insert -N before the extension (song-2.mid), N from 2 upwards
    """
    base_path = output_dir / filename
    if not base_path.exists():
        return base_path

    stem = base_path.stem
    ext = base_path.suffix
    counter = 2
    while True:
        candidate = output_dir / "{}-{}{}".format(stem, counter, ext)
        if not candidate.exists():
            return candidate
        counter += 1


class FileArtifactWriter:
    """Persists a streamed artifact into a directory.

    HOW: Resolves a conflict-free path, writes chunks as they arrive, and
    removes the partial file if the stream fails midway.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    async def __call__(self, filename: str, chunks: AsyncIterator[bytes]) -> Path:
        path = resolve_output_path(filename, self.output_dir)
        try:
            with open(path, "wb") as f:
                async for chunk in chunks:
                    f.write(chunk)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        logger.info("Saved artifact to %s", path)
        return path


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _load_credentials(args: argparse.Namespace) -> Credentials:
    try:
        return load_credentials(base_url=args.server, api_key=args.api_key)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _output_dir(args: argparse.Namespace) -> Path:
    output_dir = Path(args.output_dir).resolve() if args.output_dir else Path.cwd()
    if not output_dir.is_dir():
        raise ValidationError("Output directory does not exist: {}".format(output_dir))
    return output_dir


async def _run_convert(args: argparse.Namespace) -> None:
    """Submit an audio file, wait for the conversion, download the MIDI file."""
    credentials = _load_credentials(args)
    output_dir = _output_dir(args)
    submission = Submission.from_file(args.audio, credentials)
    _status("Selected {} ({:.1f} MiB)".format(submission.name, submission.size / (1024 * 1024)))

    async with AudioMidiClient() as client:
        session = Session(client, credentials)
        session.channel.subscribe(_print_event)
        try:
            resolution = await session.run(submission)
        except asyncio.CancelledError:
            await session.cancel()
            raise

        if not isinstance(resolution, ArtifactReady):
            hint = " (you can try again)" if resolution.retryable else ""
            raise error_for_kind(resolution.kind, resolution.message + hint)

        if args.no_download:
            print(resolution.reference)
            return

        _status("Downloading {}...".format(resolution.filename))
        path = await session.retrieve(FileArtifactWriter(output_dir))
        _status("MIDI file saved: {}".format(path))
        print(path)


async def _run_status(args: argparse.Namespace) -> None:
    credentials = _load_credentials(args)
    async with AudioMidiClient() as client:
        snapshot = await client.fetch_status(args.task_id, credentials)
    data = dataclasses.asdict(snapshot)
    data["status"] = snapshot.status.value
    print(json.dumps(data, indent=2))


async def _run_download(args: argparse.Namespace) -> None:
    credentials = _load_credentials(args)
    output_dir = _output_dir(args)
    writer = FileArtifactWriter(output_dir)
    async with AudioMidiClient() as client:
        chunks = client.fetch_result(args.reference, credentials)
        try:
            path = await writer(artifact_filename(args.reference), chunks)
        finally:
            await chunks.aclose()
    _status("MIDI file saved: {}".format(path))
    print(path)


async def _run_health(args: argparse.Namespace) -> None:
    credentials = _load_credentials(args)
    async with AudioMidiClient() as client:
        health = await client.check_health(credentials)
    print(health.message)
    if not health.reachable:
        sys.exit(1)


_COMMANDS = {
    "convert": _run_convert,
    "status": _run_status,
    "download": _run_download,
    "health": _run_health,
}


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    WHY: Separating parser construction from main() makes the CLI
    testable; tests can inspect the parser without running anything.
    """
    parser = argparse.ArgumentParser(
        prog="audiomidi",
        description="Convert audio files to MIDI using a remote conversion server.",
    )
    parser.add_argument(
        "--server",
        default=None,
        help="Server base URL (default: AUDIOMIDI_BASE_URL or http://localhost:8000).",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="API key (default: AUDIOMIDI_API_KEY from the environment or .env).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    convert = subparsers.add_parser("convert", help="Upload audio and download the MIDI result.")
    convert.add_argument("audio", help="Path to the audio file (wav, mp3, flac, ogg, m4a, aac).")
    convert.add_argument(
        "--output-dir",
        default=None,
        help="Directory to save the MIDI file (default: current directory).",
    )
    convert.add_argument(
        "--no-download",
        action="store_true",
        help="Only print the download reference instead of saving the file.",
    )

    status = subparsers.add_parser("status", help="Show the status of a task.")
    status.add_argument("task_id", help="Task ID returned by the server.")

    download = subparsers.add_parser("download", help="Download a finished MIDI file.")
    download.add_argument("reference", help="Download URL or filename reported by the server.")
    download.add_argument(
        "--output-dir",
        default=None,
        help="Directory to save the MIDI file (default: current directory).",
    )

    subparsers.add_parser("health", help="Check whether the server is reachable.")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        asyncio.run(_COMMANDS[args.command](args))
    except AudioMidiError as exc:
        _fail(exc.message)
    except KeyboardInterrupt:
        _status("Cancelled.")
        sys.exit(130)


if __name__ == "__main__":
    main()
