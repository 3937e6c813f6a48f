"""Clock and cancellation primitives for the poll loop.

WHY: The poll loop waits seconds between checks and stamps tasks with
times. Injecting the clock lets tests run a 120-attempt loop instantly
and deterministically. The cancellation token makes cancellation
cooperative: checked between calls, never tearing down an in-flight
request.

HOW: Clock is a Protocol with now() and async sleep(). SystemClock uses
time.time() and asyncio.sleep(). CancelToken wraps an asyncio.Event so
the loop can race its pause against a cancel request.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time and real asyncio sleeps."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class CancelToken:
    """One-shot cooperative cancellation flag."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
