"""
Background dispatch loop that executes due schedules.

``DispatchLoop`` runs as an asyncio background task.  Every tick it
concurrently runs two independent scans:

1. Due SINGLE schedules (PENDING, ``scheduled_for <= now``).
2. Due RECURRING schedules (ACTIVE, ``next_execution_at <= now``, within
   their end date and execution cap), preceded by a sweep that settles
   ACTIVE schedules left without a next instant or already exhausted.

Inside a scan, schedules run one after another in store order.  Each run
goes through the :class:`ExecutorRegistry` and is recorded with
:meth:`SchedulingSystem.mark_executed`.  A run whose record cannot be
written is logged and the scan moves on to the next schedule; a failing
scan is logged and the next tick proceeds normally.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from src.scheduling.clock import Clock, SystemClock
from src.scheduling.executors import ExecutorRegistry
from src.scheduling.models import Schedule
from src.scheduling.scheduling_system import SchedulingSystem
from src.scheduling.store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    """Outcome of one scan within a tick."""

    name: str
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    error: Optional[str] = None
    # Runs that executed but whose lifecycle write failed.
    unrecorded: List[str] = field(default_factory=list)

    @property
    def executed(self) -> int:
        return self.succeeded + self.failed


@dataclass
class TickReport:
    """Outcome of one dispatch tick."""

    single: ScanReport = field(default_factory=lambda: ScanReport("single"))
    recurring: ScanReport = field(default_factory=lambda: ScanReport("recurring"))
    stalled_resolved: int = 0
    stalled_errors: List[str] = field(default_factory=list)

    @property
    def executed(self) -> int:
        return self.single.executed + self.recurring.executed

    @property
    def errors(self) -> List[str]:
        errors = [s.error for s in (self.single, self.recurring) if s.error]
        for scan in (self.single, self.recurring):
            errors.extend(scan.unrecorded)
        return errors + self.stalled_errors


class DispatchLoop:
    """Polls the schedule store and executes due schedules.

    Args:
        scheduling_system: Lifecycle manager that records each run.
        store: Schedule store queried for due schedules.
        executors: Registry of action executors.
        clock: Time source (defaults to :class:`SystemClock`).
        tick_interval_seconds: Delay between ticks (default 60).
    """

    def __init__(
        self,
        scheduling_system: SchedulingSystem,
        store: ScheduleStore,
        executors: ExecutorRegistry,
        clock: Optional[Clock] = None,
        tick_interval_seconds: float = 60,
    ) -> None:
        self.scheduling_system = scheduling_system
        self.store = store
        self.executors = executors
        self.clock = clock or SystemClock()
        self.tick_interval_seconds = tick_interval_seconds
        self._running: bool = False
        self._tick_count: int = 0

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run ticks until :meth:`stop` is called or the task is cancelled."""
        self._running = True
        self._tick_count = 0
        logger.info(
            "[DISPATCH] Dispatch loop started (interval=%ss)",
            self.tick_interval_seconds,
        )

        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                logger.info("[DISPATCH] Dispatch loop cancelled")
                break
            except Exception:
                logger.exception("[DISPATCH] Unexpected error in dispatch loop")

            if not self._running:
                break
            try:
                await self.clock.sleep(self.tick_interval_seconds)
            except asyncio.CancelledError:
                logger.info("[DISPATCH] Dispatch loop sleep cancelled")
                break

        self._running = False
        logger.info("[DISPATCH] Dispatch loop stopped after %d ticks", self._tick_count)

    async def stop(self) -> None:
        """Ask the loop to exit after the current tick."""
        self._running = False
        logger.info("[DISPATCH] Dispatch loop stop requested")

    @property
    def running(self) -> bool:
        return self._running

    # ================================================================
    # TICK
    # ================================================================

    async def tick(self) -> TickReport:
        """Run both scans once, concurrently."""
        report = TickReport()
        self._tick_count += 1

        await asyncio.gather(
            self._scan_single(report.single),
            self._scan_recurring(report),
        )

        if report.executed or report.errors or report.stalled_resolved:
            logger.info(
                "[DISPATCH] Tick %d: single %d/%d ok, recurring %d/%d ok, stalled %d%s",
                self._tick_count,
                report.single.succeeded,
                report.single.executed,
                report.recurring.succeeded,
                report.recurring.executed,
                report.stalled_resolved,
                f", errors: {'; '.join(report.errors)}" if report.errors else "",
            )
        return report

    async def _scan_single(self, scan: ScanReport) -> None:
        try:
            due = await self.store.due_single(self.clock.now())
            scan.found = len(due)
            if due:
                logger.info("[DISPATCH] %d single schedules due", len(due))
            for schedule in due:
                await self._run(schedule, scan)
        except Exception as e:
            scan.error = f"single scan: {e}"
            logger.exception("[DISPATCH] Single schedule scan failed")

    async def _scan_recurring(self, report: TickReport) -> None:
        scan = report.recurring
        try:
            now = self.clock.now()
            report.stalled_resolved = await self._sweep_stalled(now, report.stalled_errors)

            due = await self.store.due_recurring(now)
            scan.found = len(due)
            if due:
                logger.info("[DISPATCH] %d recurring schedules due", len(due))
            for schedule in due:
                await self._run(schedule, scan)
        except Exception as e:
            scan.error = f"recurring scan: {e}"
            logger.exception("[DISPATCH] Recurring schedule scan failed")

    async def _sweep_stalled(self, now: datetime, errors: List[str]) -> int:
        resolved = 0
        for schedule in await self.store.stalled_recurring(now):
            try:
                if await self.scheduling_system.resolve_stalled(schedule) is not None:
                    resolved += 1
            except Exception as e:
                errors.append(f"stalled {schedule.id}: {e}")
                logger.exception("[DISPATCH] Could not settle stalled schedule %s", schedule.id)
        return resolved

    async def _run(self, schedule: Schedule, scan: ScanReport) -> None:
        result = await self.executors.execute(schedule)
        if result.success:
            scan.succeeded += 1
        else:
            scan.failed += 1

        try:
            await self.scheduling_system.mark_executed(
                schedule.id,
                result,
                expected_execution_count=schedule.execution_count if schedule.is_recurring else None,
            )
        except Exception as e:
            scan.unrecorded.append(f"record {schedule.id}: {e}")
            logger.exception(
                "[DISPATCH] Run of %s executed but could not be recorded", schedule.id
            )


__all__ = ["DispatchLoop", "TickReport", "ScanReport"]
