"""
Bounded polling for asynchronously completed generation jobs.

Providers that answer with a job id finish out-of-band: a webhook handler
writes the result into the job store.  ``CompletionWaiter`` polls that
store against an explicit deadline measured on the injected ``Clock``, so
tests drive it with virtual time.  Cancelling the awaiting task stops the
wait at its current sleep.
"""

import logging
from typing import Optional

from src.scheduling.clock import Clock, SystemClock
from src.scheduling.models import GenerationJob, JobStatus
from src.scheduling.protocols import JobStore

logger = logging.getLogger(__name__)


class CompletionWaiter:
    """Waits for a generation job to reach a terminal state.

    Args:
        job_store: Where job records are read from.
        clock: Time source (defaults to :class:`SystemClock`).
        max_wait_seconds: Default deadline per wait (300 s).
        poll_interval_seconds: Default delay between reads (3 s).
    """

    def __init__(
        self,
        job_store: JobStore,
        clock: Optional[Clock] = None,
        max_wait_seconds: float = 300,
        poll_interval_seconds: float = 3,
    ) -> None:
        self.job_store = job_store
        self.clock = clock or SystemClock()
        self.max_wait_seconds = max_wait_seconds
        self.poll_interval_seconds = poll_interval_seconds

    async def await_completion(
        self,
        job_id: str,
        max_wait_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> Optional[GenerationJob]:
        """Poll *job_id* until it completes, fails or the deadline passes.

        A missing record counts as still pending.  A record flagged as
        processed by the webhook is treated as completed once it carries
        at least one artifact.

        Returns:
            The completed job, or ``None`` on failure or timeout.
        """
        max_wait = self.max_wait_seconds if max_wait_seconds is None else max_wait_seconds
        interval = (
            self.poll_interval_seconds
            if poll_interval_seconds is None
            else poll_interval_seconds
        )
        if interval <= 0:
            raise ValueError(f"poll_interval_seconds must be positive, got {interval}")

        deadline = self.clock.monotonic() + max_wait
        polls = 0

        while True:
            polls += 1
            job = await self.job_store.get_job(job_id)

            if job is not None:
                if job.status is JobStatus.COMPLETED and job.artifacts:
                    logger.info("[WAITER] Job %s completed after %d polls", job_id, polls)
                    return job
                if job.status is JobStatus.FAILED:
                    logger.warning(
                        "[WAITER] Job %s failed: %s", job_id, job.error or "no error message"
                    )
                    return None
                if job.webhook_processed and job.artifacts:
                    logger.info("[WAITER] Job %s delivered via webhook", job_id)
                    return job

            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                logger.warning(
                    "[WAITER] Job %s timed out after %.1fs (%d polls)",
                    job_id,
                    max_wait,
                    polls,
                )
                return None

            await self.clock.sleep(min(interval, remaining))


__all__ = ["CompletionWaiter"]
