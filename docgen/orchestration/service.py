"""
Generation service: the trigger surface of the pipeline.

``start_pipeline`` validates the request, creates or reuses a run, enqueues
the coordinator continuation and returns at once. Everything after that is
reported through the progress sink.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.exceptions import (
    DocumentNotFound,
    GenerationAlreadyRunning,
    NoActiveGeneration,
    NothingToResume,
)
from docgen.kernel.models.document import Chapter, ChapterStatus, Document
from docgen.kernel.models.generation import (
    ACTIVE_STATUSES,
    GenerationRun,
    GenerationStage,
    RunStatus,
)
from docgen.kernel.models.job import JobKind
from docgen.logging_config import get_logger
from docgen.orchestration.cancellation import CancellationFlags, DatabaseCancellationFlags
from docgen.orchestration.chapter_chain import parse_structure
from docgen.orchestration.queue import WorkQueue
from docgen.schemas.generation import (
    CancelResponse,
    ChapterStatusResponse,
    Continuation,
    GenerationStatusResponse,
)

logger = get_logger(__name__)

RESUMABLE_STATUSES = (RunStatus.FAILED, RunStatus.CANCELLED)


def _values(statuses) -> List[str]:
    return [s.value for s in statuses]


class GenerationService:
    """
    Usage:
        service = GenerationService(session_maker, WorkQueue(session_maker))
        run_id = await service.start_pipeline(document_id)
        await service.cancel_generation(document_id)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        queue: WorkQueue,
        flags: Optional[CancellationFlags] = None,
    ):
        self.session_maker = session_maker
        self.queue = queue
        self.flags = flags or DatabaseCancellationFlags(session_maker)

    async def start_pipeline(
        self,
        document_id: uuid.UUID,
        resume: bool = False,
        force_literature: bool = False,
    ) -> uuid.UUID:
        """
        Start (or resume) generation for a document.

        Raises:
            DocumentNotFound: unknown document
            GenerationAlreadyRunning: a pending or processing run exists
            NothingToResume: resume requested without a failed/cancelled run
        """
        now = datetime.now(timezone.utc)
        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise DocumentNotFound(f"Document {document_id} not found")

            active = await self._latest_run(session, document_id, ACTIVE_STATUSES)
            if active is not None:
                raise GenerationAlreadyRunning(active.id)

            structure = [
                e.model_dump() for e in parse_structure(document.chapter_structure)
            ]

            if resume:
                run = await self._latest_run(session, document_id, RESUMABLE_STATUSES)
                if run is None:
                    raise NothingToResume(
                        f"No failed or cancelled generation to resume for document {document_id}"
                    )
                metadata = dict(run.run_metadata or {})
                metadata["resumed_at"] = now.isoformat()
                metadata["resume_count"] = int(metadata.get("resume_count", 0)) + 1
                metadata["total_chapters"] = len(structure)
                run.run_metadata = metadata
                run.status = RunStatus.PENDING.value
                run.cancel_requested = False
                run.message = "Resuming generation..."
                details = list(run.details or [])
                details.append({
                    "timestamp": now.isoformat(),
                    "event": "resume_requested",
                    "stage": run.current_stage,
                    "progress": run.progress,
                    "message": "Resume requested",
                })
                run.details = details[-100:]
            else:
                run = GenerationRun(
                    document_id=document_id,
                    status=RunStatus.PENDING.value,
                    current_stage=GenerationStage.INITIALIZING.value,
                    progress=0,
                    message="Generation queued",
                    details=[],
                    run_metadata={
                        "started_at": now.isoformat(),
                        "total_chapters": len(structure),
                    },
                    cancel_requested=False,
                )
                session.add(run)

            await session.commit()
            run_id = run.id

        await self.queue.enqueue(Continuation(
            kind=JobKind.GENERATE_DOCUMENT,
            run_id=run_id,
            document_id=document_id,
            structure=structure,
            resume=resume,
            force_literature=force_literature,
        ))
        logger.info(
            "Generation %s for document %s (run %s)",
            "resumed" if resume else "queued", document_id, run_id,
        )
        return run_id

    async def cancel_generation(self, document_id: uuid.UUID) -> CancelResponse:
        """
        Request cancellation of the active run. The run becomes ``cancelled``
        when its current unit reaches the next checkpoint.
        """
        async with self.session_maker() as session:
            run = await self._latest_run(session, document_id, ACTIVE_STATUSES)
            if run is None:
                raise NoActiveGeneration(f"No active generation for document {document_id}")
            run_id, progress = run.id, run.progress or 0

        await self.flags.request_cancel(run_id)
        logger.info("Cancellation requested for run %s at %d%%", run_id, progress)
        return CancelResponse(run_id=run_id, progress=progress, can_resume=progress > 0)

    async def generation_status(self, document_id: uuid.UUID) -> GenerationStatusResponse:
        """Latest run of the document plus per-chapter status."""
        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise DocumentNotFound(f"Document {document_id} not found")

            run = await self._latest_run(session, document_id)
            result = await session.execute(
                select(Chapter)
                .where(Chapter.document_id == document_id)
                .order_by(Chapter.chapter_number)
            )
            chapters: Dict[int, Chapter] = {c.chapter_number: c for c in result.scalars()}

        chapter_statuses = []
        for entry in parse_structure(document.chapter_structure):
            chapter = chapters.get(entry.number)
            status = chapter.status if chapter is not None else ChapterStatus.DRAFT.value
            chapter_statuses.append(ChapterStatusResponse(
                chapter_number=entry.number,
                title=entry.title or f"Chapter {entry.number}",
                status=status,
                word_count=chapter.word_count if chapter is not None else 0,
                target_word_count=entry.target_word_count,
                is_completed=status == ChapterStatus.COMPLETED.value,
            ))

        if run is None:
            return GenerationStatusResponse(
                status="not_started",
                chapter_statuses=chapter_statuses,
            )

        return GenerationStatusResponse(
            run_id=run.id,
            status=run.status,
            progress=run.progress or 0,
            current_stage=run.current_stage,
            message=run.message,
            cancel_requested=run.cancel_requested,
            details=list(run.details or []),
            metadata=dict(run.run_metadata or {}),
            chapter_statuses=chapter_statuses,
        )

    async def _latest_run(
        self,
        session: AsyncSession,
        document_id: uuid.UUID,
        statuses=None,
    ) -> Optional[GenerationRun]:
        query = select(GenerationRun).where(GenerationRun.document_id == document_id)
        if statuses is not None:
            query = query.where(GenerationRun.status.in_(_values(statuses)))
        query = query.order_by(GenerationRun.created_at.desc()).limit(1)
        result = await session.execute(query)
        return result.scalar_one_or_none()
