"""Central structured logger with file and Supabase outputs.

Provides the ``AgentLogger`` class that writes structured log entries to
local JSON-lines files (via ``aiofiles``) and, when a database is attached,
to the ``scheduler_logs`` table.  A bounded in-memory buffer answers
``get_recent()`` without I/O.

Context (schedule id, owner id) is kept in ``contextvars`` so the single
and recurring scans, which run concurrently, never see each other's
context.

Global helpers:
    - ``init_logger()``  -- create and register a singleton ``AgentLogger``
    - ``get_logger()``   -- retrieve the singleton (raises if not initialised)
"""

import asyncio
import contextvars
import logging
import traceback
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import aiofiles

from src.logging.models import LogComponent, LogEntry, LogLevel
from src.utils import utc_now

_schedule_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "schedule_id", default=None
)
_owner_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "owner_id", default=None
)

stdlib_logger = logging.getLogger(__name__)


class AgentLogger:
    """Structured execution log for the scheduler.

    Parameters:
        log_dir: Directory for log files (created if missing).
        db: Optional :class:`~src.database.SupabaseDB` with a
            ``save_execution_log()`` method.
        min_level: Minimum level for database writes.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        db: Any = None,
        min_level: LogLevel = LogLevel.INFO,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.db = db
        self.min_level = min_level

        self._main_log = self.log_dir / "scheduler.log"
        self._error_log = self.log_dir / "errors.log"

        self._recent_logs: Deque[LogEntry] = deque(maxlen=1000)
        self._handlers: List[Callable[[LogEntry], None]] = []

        # Track pending async tasks to prevent garbage collection
        self._pending_tasks: Set["asyncio.Task[None]"] = set()

    # ------------------------------------------------------------------
    # Context management
    # ------------------------------------------------------------------

    def set_context(
        self, schedule_id: Optional[str] = None, owner_id: Optional[str] = None
    ) -> None:
        """Set context for subsequent log entries in the current task."""
        if schedule_id is not None:
            _schedule_id.set(schedule_id)
        if owner_id is not None:
            _owner_id.set(owner_id)

    def clear_context(self) -> None:
        """Clear logging context of the current task."""
        _schedule_id.set(None)
        _owner_id.set(None)

    def add_handler(self, handler: Callable[[LogEntry], None]) -> None:
        """Register a custom synchronous log handler."""
        self._handlers.append(handler)

    # ------------------------------------------------------------------
    # Core log method
    # ------------------------------------------------------------------

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        """Log a structured message to every configured output."""
        entry = LogEntry(
            timestamp=utc_now(),
            level=level,
            component=component,
            message=message,
            schedule_id=_schedule_id.get(),
            owner_id=_owner_id.get(),
            data=data or {},
            duration_ms=duration_ms,
        )

        if error is not None:
            entry.error_type = type(error).__name__
            entry.error_traceback = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        self._recent_logs.append(entry)

        await self._write_to_file(entry)

        if self.db is not None and level.value >= self.min_level.value:
            task = asyncio.create_task(self._write_to_db(entry))
            self._pending_tasks.add(task)
            task.add_done_callback(self._pending_tasks.discard)

        for handler in self._handlers:
            try:
                handler(entry)
            except Exception as exc:
                stdlib_logger.warning("[LOGGING] Log handler failed: %s", exc)

    # ------------------------------------------------------------------
    # Convenience methods
    # ------------------------------------------------------------------

    async def debug(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.DEBUG, component, message, **kwargs)

    async def info(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.INFO, component, message, **kwargs)

    async def warning(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.WARNING, component, message, **kwargs)

    async def error(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.ERROR, component, message, **kwargs)

    async def critical(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.CRITICAL, component, message, **kwargs)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def get_recent(
        self,
        limit: int = 20,
        level: Optional[LogLevel] = None,
        component: Optional[LogComponent] = None,
        schedule_id: Optional[str] = None,
    ) -> List[LogEntry]:
        """Return recent logs from the in-memory buffer, oldest first."""
        logs = list(self._recent_logs)

        if level is not None:
            logs = [entry for entry in logs if entry.level == level]
        if component is not None:
            logs = [entry for entry in logs if entry.component == component]
        if schedule_id is not None:
            logs = [entry for entry in logs if entry.schedule_id == schedule_id]

        return logs[-limit:]

    async def flush(self) -> None:
        """Wait for pending database writes.  Call before shutdown."""
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)
            self._pending_tasks.clear()

    # ------------------------------------------------------------------
    # Private output methods
    # ------------------------------------------------------------------

    async def _write_to_file(self, entry: LogEntry) -> None:
        """Append to ``scheduler.log`` (all) and ``errors.log`` (ERROR+)."""
        json_line = entry.to_json() + "\n"

        async with aiofiles.open(self._main_log, "a", encoding="utf-8") as f:
            await f.write(json_line)

        if entry.level.value >= LogLevel.ERROR.value:
            async with aiofiles.open(self._error_log, "a", encoding="utf-8") as f:
                await f.write(json_line)

    async def _write_to_db(self, entry: LogEntry) -> None:
        try:
            await self.db.save_execution_log(entry.to_dict())
        except Exception as exc:
            stdlib_logger.error("[LOGGING] Failed to write to Supabase: %s", exc)


# ======================================================================
# GLOBAL LOGGER SINGLETON
# ======================================================================

_logger: Optional[AgentLogger] = None


def init_logger(
    log_dir: str = "logs",
    db: Any = None,
    min_level: LogLevel = LogLevel.INFO,
) -> AgentLogger:
    """Initialise and register the global ``AgentLogger`` singleton."""
    global _logger
    _logger = AgentLogger(log_dir=log_dir, db=db, min_level=min_level)
    return _logger


def get_logger() -> AgentLogger:
    """Retrieve the global ``AgentLogger`` singleton.

    Raises:
        RuntimeError: If ``init_logger()`` has not been called yet.
    """
    if _logger is None:
        raise RuntimeError("Logger not initialized. Call init_logger() first.")
    return _logger
