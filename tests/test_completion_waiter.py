"""Tests for bounded job polling on virtual time."""

import pytest

from src.scheduling.completion_waiter import CompletionWaiter
from src.scheduling.models import GenerationJob, JobStatus


class TestAwaitCompletion:
    @pytest.mark.asyncio
    async def test_failed_job_returns_promptly(self, waiter, job_store, clock):
        job_store.at(0.0, GenerationJob("job-1", JobStatus.PROCESSING))
        job_store.at(2.0, GenerationJob("job-1", JobStatus.FAILED, error="nsfw"))

        result = await waiter.await_completion("job-1", max_wait_seconds=5, poll_interval_seconds=0.5)

        assert result is None
        assert clock.monotonic() <= 2.5

    @pytest.mark.asyncio
    async def test_completed_job_returned(self, waiter, job_store, clock):
        done = GenerationJob(
            "job-1", JobStatus.COMPLETED, artifacts=["https://cdn.example.com/a.png"]
        )
        job_store.at(0.0, GenerationJob("job-1", JobStatus.PENDING))
        job_store.at(6.0, done)

        result = await waiter.await_completion("job-1")

        assert result is done
        assert clock.sleeps == [3, 3]

    @pytest.mark.asyncio
    async def test_completed_without_artifacts_keeps_waiting(self, waiter, job_store, clock):
        job_store.at(0.0, GenerationJob("job-1", JobStatus.COMPLETED))
        job_store.at(3.0, GenerationJob("job-1", JobStatus.COMPLETED, artifacts=["u"]))

        result = await waiter.await_completion("job-1")

        assert result.artifacts == ["u"]
        assert job_store.reads == 2

    @pytest.mark.asyncio
    async def test_webhook_processed_job_returned(self, waiter, job_store):
        job = GenerationJob(
            "job-1", JobStatus.PROCESSING, artifacts=["https://cdn.example.com/v.mp4"],
            webhook_processed=True,
        )
        job_store.at(0.0, job)

        assert await waiter.await_completion("job-1") is job

    @pytest.mark.asyncio
    async def test_missing_job_times_out_at_deadline(self, waiter, job_store, clock):
        result = await waiter.await_completion("ghost", max_wait_seconds=5, poll_interval_seconds=3)

        assert result is None
        assert clock.sleeps == [3, 2]
        assert clock.monotonic() == 5
        assert job_store.reads == 3

    @pytest.mark.asyncio
    async def test_zero_wait_reads_once(self, waiter, job_store, clock):
        assert await waiter.await_completion("ghost", max_wait_seconds=0) is None
        assert job_store.reads == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_non_positive_interval_rejected(self, waiter):
        with pytest.raises(ValueError):
            await waiter.await_completion("job-1", poll_interval_seconds=0)

    @pytest.mark.asyncio
    async def test_defaults_come_from_constructor(self, job_store, clock):
        waiter = CompletionWaiter(job_store, clock, max_wait_seconds=4, poll_interval_seconds=1)
        assert await waiter.await_completion("ghost") is None
        assert clock.sleeps == [1, 1, 1, 1]
