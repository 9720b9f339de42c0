"""
Finalizer: converts every generated chapter to its final representation and
completes the run.

The conversion is a pure per-chapter transform (Markdown to HTML by default)
whose output is stored on the chapter. Progress covers 96-99% while chapters
are converted, then the ``completed`` event is published at 100%.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import markdown
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.config import Settings, get_settings
from docgen.exceptions import GenerationCancelled, RunNotFound
from docgen.kernel.events.event_store import ActivityRecorder
from docgen.kernel.models.document import Chapter, CollectedPaper
from docgen.kernel.models.event_log import ActivityType
from docgen.kernel.models.generation import GenerationRun, GenerationStage
from docgen.logging_config import get_logger
from docgen.orchestration.cancellation import CancellationGuard
from docgen.orchestration.progress import ProgressBroadcaster
from docgen.schemas.generation import CompletedPayload, Continuation

logger = get_logger(__name__)

ChapterTransform = Callable[[str], str]

ARTIFACT_FORMATS = ("docx", "pdf")


def markdown_to_html(text: str) -> str:
    return markdown.markdown(text or "", extensions=["extra"])


def elapsed_seconds(run: GenerationRun, now: Optional[datetime] = None) -> float:
    """
    Wall-clock seconds since the run started.

    Uses ``started_at`` from run metadata (it survives job boundaries and
    resumes), falling back to the run's creation time.
    """
    now = now or datetime.now(timezone.utc)
    started = None
    raw = (run.run_metadata or {}).get("started_at")
    if raw:
        try:
            started = datetime.fromisoformat(str(raw))
        except ValueError:
            logger.warning("Unparseable started_at %r on run %s", raw, run.id)
    if started is None:
        started = run.created_at
    if started is None:
        return 0.0
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return max(0.0, (now - started).total_seconds())


class Finalizer:
    """Handler for ``finalize_document`` jobs."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        broadcaster: ProgressBroadcaster,
        guard: CancellationGuard,
        recorder: Optional[ActivityRecorder] = None,
        transform: Optional[ChapterTransform] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_maker = session_maker
        self.broadcaster = broadcaster
        self.guard = guard
        self.recorder = recorder
        self.transform = transform or markdown_to_html
        self.settings = settings or get_settings()

    @property
    def stage_timeout(self) -> float:
        return self.settings.finalize_stage_timeout

    async def run(self, continuation: Continuation) -> Optional[CompletedPayload]:
        try:
            return await self.finalize(continuation.run_id, continuation.document_id)
        except GenerationCancelled as exc:
            await self.guard.handle(exc, continuation.document_id)
            return None
        except Exception as exc:
            logger.error(
                "Finalization failed for document %s: %s",
                continuation.document_id, exc,
                exc_info=True,
            )
            await self.failed(continuation, exc)
            raise

    async def failed(self, continuation: Continuation, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        event = await self.broadcaster.failed(
            continuation.run_id,
            stage=GenerationStage.HTML_CONVERSION.value,
            message=message,
        )
        if event is not None and self.recorder is not None:
            await self.recorder.record(
                ActivityType.GENERATION_FAILED,
                "Document finalization failed",
                {
                    "run_id": continuation.run_id,
                    "document_id": continuation.document_id,
                    "stage": GenerationStage.HTML_CONVERSION.value,
                    "error": message,
                },
            )

    async def finalize(self, run_id: uuid.UUID, document_id: uuid.UUID) -> Optional[CompletedPayload]:
        """Convert chapters, then publish ``completed`` with the run summary."""
        await self.guard.check(run_id, "finalize_entry")

        async with self.session_maker() as session:
            result = await session.execute(
                select(Chapter)
                .where(Chapter.document_id == document_id)
                .order_by(Chapter.chapter_number)
            )
            chapters = list(result.scalars().all())

        total = len(chapters)
        total_words = 0
        for i, chapter in enumerate(chapters):
            html = self.transform(chapter.content or "")
            async with self.session_maker() as session:
                stored = await session.get(Chapter, chapter.id)
                stored.html_content = html
                await session.commit()
            total_words += chapter.word_count or 0

            await self.broadcaster.finalizing(
                run_id,
                percentage=96 + int((i + 1) / total * 3),
                message=f"Converted chapter {i + 1} of {total}",
                chapter_number=chapter.chapter_number,
            )

        async with self.session_maker() as session:
            run = await session.get(GenerationRun, run_id)
            if run is None:
                raise RunNotFound(f"Generation run {run_id} not found")
            literature = await session.execute(
                select(func.count(CollectedPaper.id))
                .where(CollectedPaper.document_id == document_id)
            )
            literature_count = literature.scalar_one()
            duration = elapsed_seconds(run)

        payload = CompletedPayload(
            total_words=total_words,
            chapter_count=total,
            duration_seconds=round(duration, 1),
            literature_count=literature_count,
            artifact_locators=self.artifact_locators(document_id),
        )

        if self.recorder is not None:
            await self.recorder.record(
                ActivityType.WORDS_CONSUMED,
                f"Document generation consumed {total_words} words",
                {
                    "run_id": run_id,
                    "document_id": document_id,
                    "words": total_words,
                    "chapter_count": total,
                },
            )

        event = await self.broadcaster.completed(run_id, payload)
        if event is not None and self.recorder is not None:
            await self.recorder.record(
                ActivityType.GENERATION_COMPLETED,
                "Document generation completed",
                {
                    "run_id": run_id,
                    "document_id": document_id,
                    "total_words": total_words,
                    "duration_seconds": payload.duration_seconds,
                },
            )
        logger.info(
            "Generation complete: %d chapters, %d words in %.0fs",
            total, total_words, payload.duration_seconds,
        )
        return payload

    def artifact_locators(self, document_id: uuid.UUID) -> Dict[str, str]:
        base = self.settings.artifact_base_url.rstrip("/")
        return {
            fmt: f"{base}/documents/{document_id}/export/{fmt}"
            for fmt in ARTIFACT_FORMATS
        }
