"""
Generation coordinator: entry point of a run.

Decides whether literature mining runs or is skipped (resume with a stored
literature set), decides where the chapter chain starts, and enqueues the
first continuation. Setup errors are recorded, broadcast as ``failed`` and
re-raised for the worker; cancellation ends the run without a failure.
"""

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.config import Settings, get_settings
from docgen.exceptions import DocumentNotFound, GenerationCancelled, StageFailed
from docgen.kernel.events.event_store import ActivityRecorder
from docgen.kernel.models.document import Chapter, ChapterStatus, CollectedPaper, Document
from docgen.kernel.models.event_log import ActivityType
from docgen.kernel.models.generation import GenerationStage
from docgen.kernel.models.job import JobKind
from docgen.logging_config import get_logger
from docgen.orchestration.cancellation import CancellationGuard
from docgen.orchestration.chapter_chain import parse_structure
from docgen.orchestration.literature import COMPLETE_PERCENT, LiteratureAggregator
from docgen.orchestration.progress import ProgressBroadcaster
from docgen.orchestration.queue import WorkQueue
from docgen.schemas.generation import Continuation

logger = get_logger(__name__)


def first_incomplete_chapter(completed_numbers: List[int], total_chapters: int) -> Optional[int]:
    """Lowest chapter number in 1..N not yet completed; None if all are."""
    done = set(completed_numbers)
    for number in range(1, total_chapters + 1):
        if number not in done:
            return number
    return None


class GenerationCoordinator:
    """Handler for ``generate_document`` jobs."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        broadcaster: ProgressBroadcaster,
        guard: CancellationGuard,
        aggregator: LiteratureAggregator,
        queue: WorkQueue,
        recorder: Optional[ActivityRecorder] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_maker = session_maker
        self.broadcaster = broadcaster
        self.guard = guard
        self.aggregator = aggregator
        self.queue = queue
        self.recorder = recorder
        self.settings = settings or get_settings()

    @property
    def stage_timeout(self) -> float:
        return self.settings.literature_stage_timeout

    async def run(self, continuation: Continuation) -> Optional[Continuation]:
        return await self.start(
            continuation.run_id,
            continuation.document_id,
            resume=continuation.resume,
            force_literature=continuation.force_literature,
            structure=continuation.structure,
        )

    async def start(
        self,
        run_id: uuid.UUID,
        document_id: uuid.UUID,
        resume: bool,
        force_literature: bool = False,
        structure: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[Continuation]:
        """
        Run the setup stage and enqueue the first chapter (or the finalizer).

        Returns the enqueued continuation, or None if the run was cancelled.
        """
        stage = GenerationStage.INITIALIZING.value
        try:
            async with self.session_maker() as session:
                document = await session.get(Document, document_id)
                if document is None:
                    raise DocumentNotFound(f"Document {document_id} not found")
                papers = await session.execute(
                    select(func.count(CollectedPaper.id))
                    .where(CollectedPaper.document_id == document_id)
                )
                stored_papers = papers.scalar_one()
                completed = await session.execute(
                    select(Chapter.chapter_number).where(
                        Chapter.document_id == document_id,
                        Chapter.status == ChapterStatus.COMPLETED.value,
                    )
                )
                completed_numbers = list(completed.scalars().all())

            raw_structure = structure or document.chapter_structure or []
            entries = parse_structure(raw_structure)
            total = len(entries)

            await self.broadcaster.started(run_id, total_chapters=total, is_resume=resume)
            await self._record(
                ActivityType.GENERATION_STARTED,
                f"Bulk generation started for document: {document.title}",
                run_id, document_id,
                {"resume": resume, "total_chapters": total},
            )
            if total == 0:
                raise StageFailed(stage, "Document has no chapter structure")

            await self.guard.check(run_id, "coordinator_entry")

            stage = GenerationStage.LITERATURE_MINING.value
            if resume and stored_papers > 0 and not force_literature:
                logger.info("Resume: reusing %d stored papers", stored_papers)
                await self.broadcaster.literature_mining(
                    run_id,
                    percentage=COMPLETE_PERCENT,
                    message=f"Using {stored_papers} previously collected papers",
                    papers_total=stored_papers,
                    sub_stage="cached",
                )
            else:
                await self.aggregator.collect(
                    run_id, document_id, document.topic, document.field_of_study,
                )

            await self.guard.check(run_id, "after_literature")

            stage = GenerationStage.CHAPTER_GENERATION.value
            start_at = 1
            if resume:
                start_at = first_incomplete_chapter(completed_numbers, total)

            base = Continuation(
                kind=JobKind.GENERATE_DOCUMENT,
                run_id=run_id,
                document_id=document_id,
                structure=[e.model_dump() for e in entries],
                resume=resume,
                force_literature=force_literature,
            )
            if start_at is None:
                logger.info("Resume: all %d chapters complete, finalizing", total)
                await self.broadcaster.finalizing(
                    run_id,
                    percentage=95,
                    message="All chapters already generated. Converting to HTML...",
                )
                following = base.finalize()
            else:
                if resume and start_at > 1:
                    logger.info("Resume: continuing from chapter %d of %d", start_at, total)
                following = base.next_chapter(start_at)

            await self.queue.enqueue(following)
            await self._record(
                ActivityType.GENERATION_DISPATCHED,
                f"Generation dispatched ({following.kind.value})",
                run_id, document_id,
                {"chapter_number": following.chapter_number, "total_chapters": total},
            )
            return following

        except GenerationCancelled as exc:
            await self.guard.handle(exc, document_id)
            return None
        except Exception as exc:
            logger.error(
                "Generation setup failed for document %s at %s: %s",
                document_id, stage, exc,
                exc_info=True,
            )
            await self._fail(run_id, document_id, stage, exc)
            raise

    async def failed(self, continuation: Continuation, exc: BaseException) -> None:
        """Failure hook used by the worker (timeouts, abandoned jobs)."""
        await self._fail(
            continuation.run_id,
            continuation.document_id,
            getattr(exc, "stage", None) or GenerationStage.LITERATURE_MINING.value,
            exc,
        )

    async def _fail(
        self,
        run_id: uuid.UUID,
        document_id: uuid.UUID,
        stage: str,
        exc: BaseException,
    ) -> None:
        message = str(exc) or exc.__class__.__name__
        event = await self.broadcaster.failed(run_id, stage=stage, message=message)
        if event is not None:
            await self._record(
                ActivityType.GENERATION_FAILED,
                "Bulk generation failed",
                run_id, document_id,
                {"stage": stage, "error": message, "exception": exc.__class__.__name__},
            )

    async def _record(
        self,
        event_type: ActivityType,
        message: str,
        run_id: uuid.UUID,
        document_id: uuid.UUID,
        context: Dict[str, Any],
    ) -> None:
        if self.recorder is None:
            return
        await self.recorder.record(
            event_type,
            message,
            {"run_id": run_id, "document_id": document_id, **context},
        )
