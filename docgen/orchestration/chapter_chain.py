"""
Chapter chain: generates exactly one chapter per unit of work, then enqueues
the next chapter or the finalizer.

Per chapter the local progress runs:
  0        started
  10       building prompt
  20-80    generating (streamed from the content generator)
  85       saving
  100      completed

Cancellation is polled before the prompt, before generation, inside the
progress callback and before dispatching the next unit.
"""

import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.ai.academic_search import LiteratureRecord
from docgen.ai.content_generator import ContentGenerator, ProgressCallback, PromptContext
from docgen.config import Settings, get_settings
from docgen.exceptions import DocumentNotFound, GenerationCancelled, StageFailed
from docgen.kernel.events.event_store import ActivityRecorder
from docgen.kernel.models.document import Chapter, ChapterStatus, CollectedPaper, Document
from docgen.kernel.models.event_log import ActivityType
from docgen.kernel.models.generation import chapter_stage
from docgen.logging_config import get_logger
from docgen.orchestration.cancellation import CancellationGuard
from docgen.orchestration.progress import ProgressBroadcaster
from docgen.orchestration.queue import WorkQueue
from docgen.schemas.generation import ChapterStructureEntry, Continuation

logger = get_logger(__name__)

MAX_PROMPT_REFERENCES = 30

_TAG_RE = re.compile(r"<[^>]+>")
_WORD_RE = re.compile(r"\w")


def count_words(text: Optional[str]) -> int:
    """Whitespace-delimited words after stripping markup tags and bare symbols."""
    if not text:
        return 0
    stripped = _TAG_RE.sub(" ", text)
    return sum(1 for token in stripped.split() if _WORD_RE.search(token))


def parse_structure(raw: Optional[Iterable[Dict[str, Any]]]) -> List[ChapterStructureEntry]:
    """Validate the externally supplied chapter structure, filling in numbers."""
    entries = []
    for index, item in enumerate(raw or [], start=1):
        entry = ChapterStructureEntry.model_validate(item)
        if entry.number is None:
            entry.number = index
        entries.append(entry)
    return entries


def chapter_entry(
    structure: List[ChapterStructureEntry],
    chapter_number: int,
) -> Tuple[str, int]:
    """Title and target word count for a chapter, matched by number."""
    for entry in structure:
        if entry.number == chapter_number:
            return entry.title or f"Chapter {chapter_number}", entry.target_word_count
    return f"Chapter {chapter_number}", 0


class ChapterChain:
    """Handler for ``generate_chapter`` jobs."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        broadcaster: ProgressBroadcaster,
        guard: CancellationGuard,
        generator: ContentGenerator,
        queue: WorkQueue,
        recorder: Optional[ActivityRecorder] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_maker = session_maker
        self.broadcaster = broadcaster
        self.guard = guard
        self.generator = generator
        self.queue = queue
        self.recorder = recorder
        self.settings = settings or get_settings()

    @property
    def stage_timeout(self) -> float:
        return self.settings.chapter_stage_timeout

    async def run(self, continuation: Continuation) -> Optional[Continuation]:
        """
        Generate one chapter and enqueue what comes next.

        Returns the enqueued continuation, or None if the run was cancelled.
        """
        run_id = continuation.run_id
        number = continuation.chapter_number or 1
        structure = parse_structure(continuation.structure)
        total = len(structure)
        if number < 1 or number > total:
            raise StageFailed(
                chapter_stage(number),
                f"Chapter {number} is outside the chapter structure (1..{total})",
                chapter_number=number,
            )
        title, target_words = chapter_entry(structure, number)

        try:
            await self.guard.check(run_id, f"chapter_{number}_before_prompt")
            await self.broadcaster.chapter_started(
                run_id,
                chapter_number=number,
                chapter_title=title,
                total_chapters=total,
            )

            await self.broadcaster.chapter_progress(
                run_id,
                chapter_number=number,
                total_chapters=total,
                local_percent=10,
                message=f"Building prompt for Chapter {number}...",
            )
            context = await self._prompt_context(
                continuation.document_id, number, title, target_words, structure,
            )
            prompt = await self.generator.build_prompt(context)

            await self.guard.check(run_id, f"chapter_{number}_before_generation")
            await self.broadcaster.chapter_progress(
                run_id,
                chapter_number=number,
                total_chapters=total,
                local_percent=20,
                message=f"Generating Chapter {number}: {title}...",
                target_words=target_words,
            )

            started = time.monotonic()
            content = await self.generator.generate(
                prompt,
                target_words,
                self._progress_callback(run_id, number, total, target_words),
            )
            elapsed = time.monotonic() - started

            await self.broadcaster.chapter_progress(
                run_id,
                chapter_number=number,
                total_chapters=total,
                local_percent=85,
                message=f"Saving Chapter {number}...",
            )
            word_count = await self.save_chapter(
                continuation.document_id, number, title, content, target_words,
            )
            await self.broadcaster.chapter_completed(
                run_id,
                chapter_number=number,
                chapter_title=title,
                total_chapters=total,
                word_count=word_count,
                generation_time=elapsed,
            )
            logger.info(
                "Chapter %d/%d saved: %d words in %.1fs", number, total, word_count, elapsed,
            )

            await self.guard.check(run_id, f"chapter_{number}_before_dispatch")
            return await self._dispatch_next(continuation, number, total)

        except GenerationCancelled as exc:
            await self.guard.handle(exc, continuation.document_id)
            return None
        except Exception as exc:
            logger.error(
                "Chapter %d failed for document %s: %s",
                number, continuation.document_id, exc,
                exc_info=True,
            )
            await self.failed(continuation, exc)
            raise

    async def failed(self, continuation: Continuation, exc: BaseException) -> None:
        """Fail the run for this chapter; repeated calls publish nothing."""
        number = continuation.chapter_number or 1
        stage = chapter_stage(number)
        message = str(exc) or exc.__class__.__name__
        event = await self.broadcaster.failed(
            continuation.run_id,
            stage=stage,
            message=message,
            chapter_number=number,
        )
        if event is not None and self.recorder is not None:
            await self.recorder.record(
                ActivityType.GENERATION_FAILED,
                f"Chapter {number} generation failed",
                {
                    "run_id": continuation.run_id,
                    "document_id": continuation.document_id,
                    "stage": stage,
                    "chapter_number": number,
                    "error": message,
                },
            )

    async def save_chapter(
        self,
        document_id: uuid.UUID,
        chapter_number: int,
        title: str,
        content: str,
        target_words: int,
    ) -> int:
        """Upsert the chapter by number in one commit; returns its word count."""
        word_count = count_words(content)
        async with self.session_maker() as session:
            result = await session.execute(
                select(Chapter).where(
                    Chapter.document_id == document_id,
                    Chapter.chapter_number == chapter_number,
                )
            )
            chapter = result.scalar_one_or_none()
            if chapter is None:
                chapter = Chapter(document_id=document_id, chapter_number=chapter_number)
                session.add(chapter)

            chapter.title = title
            chapter.content = content
            chapter.html_content = None
            chapter.word_count = word_count
            chapter.target_word_count = target_words
            chapter.status = ChapterStatus.COMPLETED.value
            chapter.ai_generated = True
            chapter.last_generated_at = datetime.now(timezone.utc)
            await session.commit()
        return word_count

    def _progress_callback(
        self,
        run_id: uuid.UUID,
        chapter_number: int,
        total_chapters: int,
        target_words: int,
    ) -> ProgressCallback:
        throttle = self.settings.progress_throttle_seconds
        last_forwarded: Optional[float] = None

        async def on_progress(words_so_far: int, local_percent: int, description: str) -> None:
            nonlocal last_forwarded
            await self.guard.check(run_id, f"chapter_{chapter_number}_generating")

            now = time.monotonic()
            if last_forwarded is not None and now - last_forwarded < throttle:
                return
            last_forwarded = now
            await self.broadcaster.chapter_progress(
                run_id,
                chapter_number=chapter_number,
                total_chapters=total_chapters,
                local_percent=local_percent,
                message=description,
                words_so_far=words_so_far,
                target_words=target_words,
            )

        return on_progress

    async def _prompt_context(
        self,
        document_id: uuid.UUID,
        chapter_number: int,
        title: str,
        target_words: int,
        structure: List[ChapterStructureEntry],
    ) -> PromptContext:
        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise DocumentNotFound(f"Document {document_id} not found")

            prior = await session.execute(
                select(Chapter)
                .where(
                    Chapter.document_id == document_id,
                    Chapter.chapter_number < chapter_number,
                    Chapter.status == ChapterStatus.COMPLETED.value,
                )
                .order_by(Chapter.chapter_number)
            )
            papers = await session.execute(
                select(CollectedPaper)
                .where(CollectedPaper.document_id == document_id)
                .order_by(CollectedPaper.quality_score.desc())
                .limit(MAX_PROMPT_REFERENCES)
            )

            references = []
            for paper in papers.scalars():
                cite = LiteratureRecord(
                    title=paper.title, authors=paper.authors or [], year=paper.year,
                ).short_cite
                references.append(f"{cite}: {paper.title}")

            return PromptContext(
                topic=document.topic,
                chapter_number=chapter_number,
                chapter_title=title,
                target_word_count=target_words,
                document_title=document.title,
                description=document.description,
                field_of_study=document.field_of_study,
                all_chapter_titles=[
                    e.title or f"Chapter {e.number}" for e in structure
                ],
                prior_content="\n\n".join(c.content or "" for c in prior.scalars()),
                references=references,
            )

    async def _dispatch_next(
        self,
        continuation: Continuation,
        chapter_number: int,
        total_chapters: int,
    ) -> Continuation:
        if chapter_number < total_chapters:
            following = continuation.next_chapter(chapter_number + 1)
            await self.queue.enqueue(following)
            if self.recorder is not None:
                await self.recorder.record(
                    ActivityType.CHAPTER_DISPATCHED,
                    f"Chapter {following.chapter_number} dispatched",
                    {
                        "run_id": continuation.run_id,
                        "document_id": continuation.document_id,
                        "chapter_number": following.chapter_number,
                    },
                )
            return following

        await self.broadcaster.finalizing(
            continuation.run_id,
            percentage=95,
            message="All chapters generated. Converting to HTML...",
        )
        following = continuation.finalize()
        await self.queue.enqueue(following)
        return following
