"""
Time source for the scheduling subsystem.

Every component that reads the current time or sleeps takes a ``Clock``
so that tests can drive the dispatch loop and the completion waiter with
virtual time instead of real sleeps.
"""

import asyncio
import time
from datetime import datetime
from typing import Protocol

from src.utils import utc_now


class Clock(Protocol):
    """Wall-clock, monotonic time and sleeping."""

    def now(self) -> datetime:
        """Current timezone-aware UTC instant."""
        ...

    def monotonic(self) -> float:
        """Seconds from an arbitrary origin, for deadlines."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller; cancellable through the running task."""
        ...


class SystemClock:
    """Real time: ``datetime.now(UTC)``, ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


__all__ = ["Clock", "SystemClock"]
