"""
Durable work queue backed by the queued_jobs table.

Delivery is at-least-once: a job whose worker died is reclaimed once its
lease expires. Handlers are written so that re-running a unit is harmless
(chapters are upserted by number, enqueueing is deduplicated per run and
unit).
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.config import Settings, get_settings
from docgen.kernel.models.job import JobStatus, QueuedJob
from docgen.logging_config import get_logger
from docgen.schemas.generation import Continuation

logger = get_logger(__name__)


@dataclass
class ClaimedJob:
    """A job a worker now holds."""
    id: uuid.UUID
    continuation: Continuation
    attempts: int
    max_attempts: int

    @property
    def exhausted(self) -> bool:
        return self.attempts > self.max_attempts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkQueue:
    """
    Usage:
        queue = WorkQueue(session_maker)
        await queue.enqueue(continuation)
        claimed = await queue.claim_next()
        ...
        await queue.mark_done(claimed.id)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.session_maker = session_maker
        self.settings = settings or get_settings()

    async def enqueue(self, continuation: Continuation) -> uuid.UUID:
        """
        Push a continuation. If the same unit of the same run is already
        queued or running, its id is returned instead of adding a duplicate.
        """
        async with self.session_maker() as session:
            existing = await session.execute(
                select(QueuedJob.id).where(
                    QueuedJob.run_id == continuation.run_id,
                    QueuedJob.kind == continuation.kind.value,
                    _same_chapter(continuation.chapter_number),
                    QueuedJob.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
                )
            )
            job_id = existing.scalars().first()
            if job_id is not None:
                logger.debug("Continuation already queued as %s", job_id)
                return job_id

            job = QueuedJob(
                kind=continuation.kind.value,
                run_id=continuation.run_id,
                document_id=continuation.document_id,
                chapter_number=continuation.chapter_number,
                payload=continuation.model_dump(mode="json"),
                status=JobStatus.QUEUED.value,
                attempts=0,
                max_attempts=self.settings.job_max_attempts,
                available_at=_utcnow(),
            )
            session.add(job)
            await session.commit()
            logger.info(
                "Enqueued %s (chapter=%s) as %s",
                continuation.kind.value, continuation.chapter_number, job.id,
            )
            return job.id

    async def claim_next(self) -> Optional[ClaimedJob]:
        """
        Take the oldest available job, or a running job whose lease expired.
        """
        now = _utcnow()
        lease_cutoff = now - timedelta(seconds=self.settings.job_lease_seconds)
        async with self.session_maker() as session:
            result = await session.execute(
                select(QueuedJob)
                .where(
                    or_(
                        and_(
                            QueuedJob.status == JobStatus.QUEUED.value,
                            QueuedJob.available_at <= now,
                        ),
                        and_(
                            QueuedJob.status == JobStatus.RUNNING.value,
                            QueuedJob.claimed_at < lease_cutoff,
                        ),
                    )
                )
                .order_by(QueuedJob.available_at, QueuedJob.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job = result.scalar_one_or_none()
            if job is None:
                return None

            if job.status == JobStatus.RUNNING.value:
                logger.warning("Reclaiming job %s after expired lease", job.id)
            job.status = JobStatus.RUNNING.value
            job.claimed_at = now
            job.attempts = (job.attempts or 0) + 1
            await session.commit()

            return ClaimedJob(
                id=job.id,
                continuation=Continuation.model_validate(job.payload),
                attempts=job.attempts,
                max_attempts=job.max_attempts,
            )

    async def mark_done(self, job_id: uuid.UUID) -> None:
        await self._finish(job_id, JobStatus.DONE)

    async def mark_failed(self, job_id: uuid.UUID, error: str) -> None:
        """Failed units are not re-queued; a failed run is recovered by resume."""
        await self._finish(job_id, JobStatus.FAILED, error)

    async def pending_count(self, run_id: Optional[uuid.UUID] = None) -> int:
        """Jobs still queued or running, optionally for one run."""
        query = select(func.count(QueuedJob.id)).where(
            QueuedJob.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value])
        )
        if run_id is not None:
            query = query.where(QueuedJob.run_id == run_id)
        async with self.session_maker() as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def _finish(
        self,
        job_id: uuid.UUID,
        status: JobStatus,
        error: Optional[str] = None,
    ) -> None:
        async with self.session_maker() as session:
            job = await session.get(QueuedJob, job_id)
            if job is None:
                logger.warning("Job %s vanished before it could be marked %s", job_id, status.value)
                return
            job.status = status.value
            if error is not None:
                job.last_error = error[:2000]
            await session.commit()


def _same_chapter(chapter_number: Optional[int]):
    if chapter_number is None:
        return QueuedJob.chapter_number.is_(None)
    return QueuedJob.chapter_number == chapter_number
