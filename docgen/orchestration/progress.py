"""
Progress broadcasting for generation runs.

Every event is mirrored onto the GenerationRun row (stage, progress, message,
details, metadata) and then published to a ProgressSink. The broadcaster holds
no state of its own; it reads the run fresh for every event.

Guarantees:
- progress never decreases while the run is active
- once a run is terminal (completed, failed, cancelled) nothing else is
  published for it, so each terminal event is emitted at most once
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.exceptions import RunNotFound
from docgen.kernel.models.generation import (
    GenerationRun,
    GenerationStage,
    RunStatus,
    chapter_stage,
)
from docgen.logging_config import get_logger
from docgen.schemas.generation import (
    CompletedPayload,
    EventKind,
    FailedPayload,
    ProgressEvent,
    ProgressExtra,
)

logger = get_logger(__name__)

MAX_DETAILS = 100

# Global range covered by the chapter stage
CHAPTER_RANGE_START = 20
CHAPTER_RANGE_END = 95


def overall_chapter_progress(chapter_number: int, total_chapters: int, local_percent: int) -> int:
    """
    Map a chapter-local percentage onto the run's 20-95% chapter range.

    Each chapter owns 75/N points; chapter c starts at 20 + (c-1)*75/N.
    """
    if total_chapters <= 0:
        return CHAPTER_RANGE_START
    share = (CHAPTER_RANGE_END - CHAPTER_RANGE_START) / total_chapters
    local = max(0, min(100, local_percent))
    value = CHAPTER_RANGE_START + (chapter_number - 1) * share + share * local / 100
    return min(CHAPTER_RANGE_END, int(value))


class ProgressSink(Protocol):
    """Where progress events go (websocket fan-out, logs, a test recorder)."""

    async def publish(self, event: ProgressEvent) -> None:
        ...


class InMemoryProgressSink:
    """Keeps every event and fans it out to subscriber queues."""

    def __init__(self) -> None:
        self.events: List[ProgressEvent] = []
        self._subscribers: List[asyncio.Queue] = []

    async def publish(self, event: ProgressEvent) -> None:
        self.events.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def for_run(self, run_id: uuid.UUID) -> List[ProgressEvent]:
        return [e for e in self.events if e.run_id == run_id]


class LoggingProgressSink:
    """Writes progress events to the log; the default for the worker process."""

    async def publish(self, event: ProgressEvent) -> None:
        logger.info(
            "[%s] %s %d%% %s",
            event.stage, event.event.value, event.percentage, event.message,
        )


class ProgressBroadcaster:
    """
    Publishes stage/percentage/message events tied to a generation run.

    Usage:
        broadcaster = ProgressBroadcaster(session_maker, sink)
        await broadcaster.started(run_id, total_chapters=5, is_resume=False)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        sink: ProgressSink,
    ):
        self.session_maker = session_maker
        self.sink = sink

    async def started(
        self,
        run_id: uuid.UUID,
        *,
        total_chapters: int,
        is_resume: bool,
    ) -> Optional[ProgressEvent]:
        message = (
            f"Resuming generation of {total_chapters} chapters..."
            if is_resume
            else f"Starting generation of {total_chapters} chapters..."
        )
        return await self._emit(
            run_id,
            EventKind.STARTED,
            stage=GenerationStage.INITIALIZING.value,
            percentage=0,
            message=message,
            extra=ProgressExtra(total_chapters=total_chapters, is_resume=is_resume),
            status=RunStatus.PROCESSING,
        )

    async def literature_mining(
        self,
        run_id: uuid.UUID,
        *,
        percentage: int,
        message: str,
        source: Optional[str] = None,
        papers_found: Optional[int] = None,
        papers_total: Optional[int] = None,
        sub_stage: Optional[str] = None,
    ) -> Optional[ProgressEvent]:
        return await self._emit(
            run_id,
            EventKind.LITERATURE_MINING,
            stage=GenerationStage.LITERATURE_MINING.value,
            percentage=min(CHAPTER_RANGE_START, percentage),
            message=message,
            extra=ProgressExtra(
                source=source,
                papers_found=papers_found,
                papers_total=papers_total,
                sub_stage=sub_stage,
            ),
        )

    async def chapter_started(
        self,
        run_id: uuid.UUID,
        *,
        chapter_number: int,
        chapter_title: str,
        total_chapters: int,
    ) -> Optional[ProgressEvent]:
        return await self._emit(
            run_id,
            EventKind.CHAPTER_STARTED,
            stage=chapter_stage(chapter_number),
            percentage=overall_chapter_progress(chapter_number, total_chapters, 0),
            message=f"Starting Chapter {chapter_number}: {chapter_title}",
            extra=ProgressExtra(
                chapter_number=chapter_number,
                chapter_title=chapter_title,
                total_chapters=total_chapters,
            ),
            metadata={"current_chapter": chapter_number, "total_chapters": total_chapters},
        )

    async def chapter_progress(
        self,
        run_id: uuid.UUID,
        *,
        chapter_number: int,
        total_chapters: int,
        local_percent: int,
        message: str,
        words_so_far: Optional[int] = None,
        target_words: Optional[int] = None,
    ) -> Optional[ProgressEvent]:
        return await self._emit(
            run_id,
            EventKind.CHAPTER_PROGRESS,
            stage=chapter_stage(chapter_number),
            percentage=overall_chapter_progress(chapter_number, total_chapters, local_percent),
            message=message,
            extra=ProgressExtra(
                chapter_number=chapter_number,
                total_chapters=total_chapters,
                words_so_far=words_so_far,
                target_words=target_words,
            ),
        )

    async def chapter_completed(
        self,
        run_id: uuid.UUID,
        *,
        chapter_number: int,
        chapter_title: str,
        total_chapters: int,
        word_count: int,
        generation_time: float,
    ) -> Optional[ProgressEvent]:
        """Record chapter timing in run metadata and publish completion."""
        def add_timing(metadata: Dict[str, Any]) -> Dict[str, Any]:
            timings = dict(metadata.get("chapter_timings") or {})
            timings[str(chapter_number)] = {
                "title": chapter_title,
                "word_count": word_count,
                "generation_time": round(generation_time, 2),
                "completed_at": _now().isoformat(),
            }
            return {
                "chapter_timings": timings,
                "last_completed_chapter": chapter_number,
                "total_word_count": sum(t.get("word_count", 0) for t in timings.values()),
            }

        return await self._emit(
            run_id,
            EventKind.CHAPTER_COMPLETED,
            stage=chapter_stage(chapter_number),
            percentage=overall_chapter_progress(chapter_number, total_chapters, 100),
            message=f"Chapter {chapter_number} completed ({word_count} words)",
            extra=ProgressExtra(
                chapter_number=chapter_number,
                chapter_title=chapter_title,
                total_chapters=total_chapters,
                words_so_far=word_count,
                generation_time=round(generation_time, 2),
            ),
            metadata=add_timing,
        )

    async def finalizing(
        self,
        run_id: uuid.UUID,
        *,
        percentage: int,
        message: str,
        chapter_number: Optional[int] = None,
    ) -> Optional[ProgressEvent]:
        return await self._emit(
            run_id,
            EventKind.HTML_CONVERSION,
            stage=GenerationStage.HTML_CONVERSION.value,
            percentage=min(99, percentage),
            message=message,
            extra=ProgressExtra(chapter_number=chapter_number),
        )

    async def completed(
        self,
        run_id: uuid.UUID,
        payload: CompletedPayload,
    ) -> Optional[ProgressEvent]:
        return await self._emit(
            run_id,
            EventKind.COMPLETED,
            stage=GenerationStage.COMPLETED.value,
            percentage=100,
            message=(
                f"Generation complete: {payload.chapter_count} chapters, "
                f"{payload.total_words} words"
            ),
            status=RunStatus.COMPLETED,
            completed=payload,
            metadata={
                "completed_at": _now().isoformat(),
                "total_word_count": payload.total_words,
                "duration_seconds": payload.duration_seconds,
            },
        )

    async def failed(
        self,
        run_id: uuid.UUID,
        *,
        stage: str,
        message: str,
        chapter_number: Optional[int] = None,
    ) -> Optional[ProgressEvent]:
        """
        Fail the run. Safe to call more than once: only the first call on an
        active run publishes anything.
        """
        def failure_payload(run: GenerationRun) -> FailedPayload:
            metadata = run.run_metadata or {}
            return FailedPayload(
                stage=stage,
                message=message,
                chapter_number=chapter_number,
                can_resume=run.progress > 0,
                last_successful_chapter=metadata.get("last_completed_chapter"),
            )

        return await self._emit(
            run_id,
            EventKind.FAILED,
            stage=stage,
            percentage=None,
            message=f"Generation failed: {message}",
            extra=ProgressExtra(chapter_number=chapter_number),
            status=RunStatus.FAILED,
            run_stage=GenerationStage.FAILED.value,
            failed=failure_payload,
            metadata={"failed_stage": stage, "failed_at": _now().isoformat()},
        )

    async def cancelled(
        self,
        run_id: uuid.UUID,
        *,
        message: str = "Generation cancelled",
    ) -> Optional[ProgressEvent]:
        return await self._emit(
            run_id,
            EventKind.CANCELLED,
            stage=GenerationStage.CANCELLED.value,
            percentage=None,
            message=message,
            status=RunStatus.CANCELLED,
            metadata={"cancelled_at": _now().isoformat()},
        )

    async def _emit(
        self,
        run_id: uuid.UUID,
        kind: EventKind,
        *,
        stage: str,
        percentage: Optional[int],
        message: str,
        extra: Optional[ProgressExtra] = None,
        status: Optional[RunStatus] = None,
        run_stage: Optional[str] = None,
        metadata: Any = None,
        completed: Optional[CompletedPayload] = None,
        failed: Any = None,
    ) -> Optional[ProgressEvent]:
        """
        Apply one event to the run row, commit, then publish.

        ``percentage=None`` keeps the current progress. ``metadata`` and
        ``failed`` may be callables evaluated against the loaded run.
        """
        async with self.session_maker() as session:
            run = await session.get(GenerationRun, run_id)
            if run is None:
                raise RunNotFound(f"Generation run {run_id} not found")

            if run.is_terminal:
                logger.debug(
                    "Run %s is %s; dropping %s event", run_id, run.status, kind.value,
                )
                return None

            if percentage is not None:
                run.progress = max(run.progress or 0, percentage)
            effective = run.progress or 0

            run.current_stage = run_stage or stage
            run.message = message
            if status is not None:
                run.status = status.value

            if metadata is not None:
                current = dict(run.run_metadata or {})
                updates = metadata(current) if callable(metadata) else metadata
                current.update(updates)
                run.run_metadata = current

            details = list(run.details or [])
            details.append({
                "timestamp": _now().isoformat(),
                "event": kind.value,
                "stage": stage,
                "progress": effective,
                "message": message,
            })
            run.details = details[-MAX_DETAILS:]

            event = ProgressEvent(
                run_id=run_id,
                event=kind,
                stage=stage,
                percentage=effective,
                message=message,
                extra=extra or ProgressExtra(),
                completed=completed,
                failed=failed(run) if callable(failed) else failed,
            )
            await session.commit()

        await self.sink.publish(event)
        return event


def _now() -> datetime:
    return datetime.now(timezone.utc)
