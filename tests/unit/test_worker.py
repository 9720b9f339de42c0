"""Unit tests for the queue worker."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from docgen.exceptions import StageFailed
from docgen.kernel.models import JobKind, JobStatus, QueuedJob
from docgen.schemas.generation import Continuation
from docgen.worker import Worker


class RecordingHandler:
    """Handler double recording run/failed calls."""

    def __init__(self, stage_timeout: float = 5.0, delay: float = 0.0, error=None):
        self.stage_timeout = stage_timeout
        self.delay = delay
        self.error = error
        self.runs = []
        self.failures = []

    async def run(self, continuation):
        self.runs.append(continuation)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def failed(self, continuation, exc):
        self.failures.append(exc)


def chapter_job(chapter_number: int = 1) -> Continuation:
    return Continuation(
        kind=JobKind.GENERATE_CHAPTER,
        run_id=uuid.uuid4(),
        document_id=uuid.uuid4(),
        chapter_number=chapter_number,
    )


async def job_status(session_maker, job_id) -> str:
    async with session_maker() as session:
        return (await session.get(QueuedJob, job_id)).status


class TestWorker:
    """Tests for Worker.run_once and run_until_idle."""

    @pytest.mark.asyncio
    async def test_idle_queue(self, queue, settings):
        worker = Worker(queue, {}, settings)
        assert await worker.run_once() is False
        assert await worker.run_until_idle() == 0

    @pytest.mark.asyncio
    async def test_success_marks_done(self, queue, settings, session_maker):
        handler = RecordingHandler()
        job_id = await queue.enqueue(chapter_job())
        worker = Worker(queue, {JobKind.GENERATE_CHAPTER: handler}, settings)

        assert await worker.run_until_idle() == 1
        assert len(handler.runs) == 1
        assert handler.failures == []
        assert await job_status(session_maker, job_id) == JobStatus.DONE.value

    @pytest.mark.asyncio
    async def test_timeout_fails_stage(self, queue, settings, session_maker):
        """A unit exceeding its stage timeout fails the run through the hook."""
        handler = RecordingHandler(stage_timeout=0.05, delay=5.0)
        job_id = await queue.enqueue(chapter_job(2))
        worker = Worker(queue, {JobKind.GENERATE_CHAPTER: handler}, settings)

        await worker.run_once()

        assert len(handler.failures) == 1
        error = handler.failures[0]
        assert isinstance(error, StageFailed)
        assert error.stage == "chapter_generation_2"
        assert error.chapter_number == 2
        assert await job_status(session_maker, job_id) == JobStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_handler_error_is_not_retried(self, queue, settings, session_maker):
        handler = RecordingHandler(error=RuntimeError("boom"))
        job_id = await queue.enqueue(chapter_job())
        worker = Worker(queue, {JobKind.GENERATE_CHAPTER: handler}, settings)

        assert await worker.run_until_idle() == 1
        assert len(handler.runs) == 1
        assert str(handler.failures[0]) == "boom"
        assert await job_status(session_maker, job_id) == JobStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_unknown_kind(self, queue, settings, session_maker):
        job_id = await queue.enqueue(chapter_job())
        worker = Worker(queue, {}, settings)

        assert await worker.run_once() is True
        assert await job_status(session_maker, job_id) == JobStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_exhausted_job_is_abandoned(self, queue, settings, session_maker):
        """A job reclaimed past its attempt limit fails without running again."""
        settings.job_max_attempts = 1
        job_id = await queue.enqueue(chapter_job())
        await queue.claim_next()
        async with session_maker() as session:
            stored = await session.get(QueuedJob, job_id)
            stored.claimed_at = datetime.now(timezone.utc) - timedelta(days=1)
            await session.commit()

        handler = RecordingHandler()
        worker = Worker(queue, {JobKind.GENERATE_CHAPTER: handler}, settings)
        await worker.run_once()

        assert handler.runs == []
        assert len(handler.failures) == 1
        assert "abandoned" in str(handler.failures[0])
        assert await job_status(session_maker, job_id) == JobStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_run_forever_stops(self, queue, settings):
        settings.worker_poll_interval = 0.01
        worker = Worker(queue, {}, settings)
        stop = asyncio.Event()
        task = asyncio.create_task(worker.run_forever(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
