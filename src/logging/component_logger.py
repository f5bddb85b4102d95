"""Per-component logger wrapper and timed-operation context manager.

``ComponentLogger`` binds a fixed ``LogComponent`` to the global
``AgentLogger``.  ``TimedOperation``, returned by
``ComponentLogger.timed()``, logs the start, the duration and the outcome
of a block; the dispatch loop wraps every schedule execution in one.
"""

import time
from typing import Any, Optional

from src.logging.agent_logger import get_logger
from src.logging.models import LogComponent


class ComponentLogger:
    """Wrapper that binds a fixed ``LogComponent`` to the global logger.

    Usage::

        self.log = ComponentLogger(LogComponent.EXECUTOR)
        await self.log.info("Post created", data={"post_id": post.id})
    """

    def __init__(self, component: LogComponent) -> None:
        self.component = component

    async def debug(self, message: str, **kwargs: Any) -> None:
        await get_logger().debug(self.component, message, **kwargs)

    async def info(self, message: str, **kwargs: Any) -> None:
        await get_logger().info(self.component, message, **kwargs)

    async def warning(self, message: str, **kwargs: Any) -> None:
        await get_logger().warning(self.component, message, **kwargs)

    async def error(
        self, message: str, error: Optional[Exception] = None, **kwargs: Any
    ) -> None:
        await get_logger().error(self.component, message, error=error, **kwargs)

    def timed(self, message: str, schedule_id: Optional[str] = None,
              owner_id: Optional[str] = None) -> "TimedOperation":
        """Return an async context manager that logs start/end with duration.

        When *schedule_id* / *owner_id* are given they become the logging
        context of the block.

        Usage::

            async with self.log.timed("Executing schedule", schedule_id=s.id):
                result = await executor.execute(s.action_data, s.owner_id)
        """
        return TimedOperation(self, message, schedule_id=schedule_id, owner_id=owner_id)


class TimedOperation:
    """Async context manager that measures and logs operation duration.

    On entry, logs a DEBUG message (``"Starting: <message>"``).
    On successful exit, logs an INFO message with ``duration_ms``.
    On exception, logs an ERROR message with ``duration_ms`` and the error,
    then re-raises the exception (does **not** suppress it).
    """

    def __init__(
        self,
        logger: ComponentLogger,
        message: str,
        schedule_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> None:
        self.logger = logger
        self.message = message
        self.schedule_id = schedule_id
        self.owner_id = owner_id
        self.start_time: Optional[float] = None
        self.duration_ms: Optional[int] = None

    async def __aenter__(self) -> "TimedOperation":
        if self.schedule_id or self.owner_id:
            get_logger().set_context(schedule_id=self.schedule_id, owner_id=self.owner_id)
        self.start_time = time.monotonic()
        await self.logger.debug(f"Starting: {self.message}")
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> None:
        assert self.start_time is not None
        self.duration_ms = int((time.monotonic() - self.start_time) * 1000)

        try:
            if exc_type is not None:
                await self.logger.error(
                    f"Failed: {self.message}",
                    error=exc_val if isinstance(exc_val, Exception) else None,
                    duration_ms=self.duration_ms,
                )
            else:
                await self.logger.info(
                    f"Completed: {self.message}",
                    duration_ms=self.duration_ms,
                )
        finally:
            if self.schedule_id or self.owner_id:
                get_logger().clear_context()
        # Return None (falsy) so exceptions propagate
