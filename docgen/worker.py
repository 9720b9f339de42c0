"""
Queue worker: claims continuations and runs them through their handlers.

    python -m docgen.worker            # poll forever
    python -m docgen.worker --once     # drain the queue and exit
    python -m docgen.worker --init-db  # create tables first

Each unit of work runs under its stage timeout. A handler that raises, times
out, or whose job was abandoned too many times gets its ``failed()`` hook
called, which fails the run exactly once.
"""

import argparse
import asyncio
from typing import Dict, Optional, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.ai.academic_search import LiteratureSource, default_sources
from docgen.ai.content_generator import ContentGenerator, OpenAIContentGenerator
from docgen.config import Settings, get_settings
from docgen.exceptions import StageFailed, UnknownJobKind
from docgen.kernel.events.event_store import ActivityRecorder
from docgen.kernel.models.generation import GenerationStage, chapter_stage
from docgen.kernel.models.job import JobKind
from docgen.logging_config import bind_run_id, configure_logging, get_logger
from docgen.orchestration.cancellation import CancellationGuard, DatabaseCancellationFlags
from docgen.orchestration.chapter_chain import ChapterChain
from docgen.orchestration.coordinator import GenerationCoordinator
from docgen.orchestration.finalizer import ChapterTransform, Finalizer
from docgen.orchestration.literature import LiteratureAggregator
from docgen.orchestration.progress import LoggingProgressSink, ProgressBroadcaster, ProgressSink
from docgen.orchestration.queue import ClaimedJob, WorkQueue
from docgen.schemas.generation import Continuation

logger = get_logger(__name__)


class JobHandler(Protocol):
    stage_timeout: float

    async def run(self, continuation: Continuation) -> object:
        ...

    async def failed(self, continuation: Continuation, exc: BaseException) -> None:
        ...


def _stage_for(continuation: Continuation) -> str:
    if continuation.kind == JobKind.GENERATE_CHAPTER:
        return chapter_stage(continuation.chapter_number or 1)
    if continuation.kind == JobKind.FINALIZE_DOCUMENT:
        return GenerationStage.HTML_CONVERSION.value
    return GenerationStage.LITERATURE_MINING.value


class Worker:
    """Runs queued units of work one at a time."""

    def __init__(
        self,
        queue: WorkQueue,
        handlers: Dict[JobKind, JobHandler],
        settings: Optional[Settings] = None,
    ):
        self.queue = queue
        self.handlers = handlers
        self.settings = settings or get_settings()

    async def run_once(self) -> bool:
        """Process one job. Returns False when nothing was available."""
        claimed = await self.queue.claim_next()
        if claimed is None:
            return False

        continuation = claimed.continuation
        with bind_run_id(continuation.run_id):
            handler = self.handlers.get(continuation.kind)
            if handler is None:
                error = UnknownJobKind(f"No handler for job kind {continuation.kind.value}")
                logger.error("%s", error)
                await self.queue.mark_failed(claimed.id, str(error))
                return True

            if claimed.exhausted:
                await self._abandon(claimed, handler)
                return True

            await self._execute(claimed, handler)
        return True

    async def run_until_idle(self, max_jobs: Optional[int] = None) -> int:
        """Process jobs until the queue is empty; returns how many ran."""
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if not await self.run_once():
                break
            processed += 1
        return processed

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        logger.info("Worker started (poll every %.1fs)", self.settings.worker_poll_interval)
        while not stop.is_set():
            if await self.run_once():
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.settings.worker_poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker stopped")

    async def _execute(self, claimed: ClaimedJob, handler: JobHandler) -> None:
        continuation = claimed.continuation
        stage = _stage_for(continuation)
        logger.info(
            "Running %s (chapter=%s, attempt %d)",
            continuation.kind.value, continuation.chapter_number, claimed.attempts,
        )
        try:
            await asyncio.wait_for(handler.run(continuation), timeout=handler.stage_timeout)
        except asyncio.TimeoutError:
            error = StageFailed(
                stage,
                f"Stage timed out after {handler.stage_timeout:.0f}s",
                chapter_number=continuation.chapter_number,
            )
            logger.error("%s: %s", stage, error)
            try:
                await handler.failed(continuation, error)
            finally:
                await self.queue.mark_failed(claimed.id, str(error))
        except Exception as exc:
            # The handler already reported the failure; the hook is idempotent
            try:
                await handler.failed(continuation, exc)
            finally:
                await self.queue.mark_failed(claimed.id, f"{exc.__class__.__name__}: {exc}")
        else:
            await self.queue.mark_done(claimed.id)

    async def _abandon(self, claimed: ClaimedJob, handler: JobHandler) -> None:
        continuation = claimed.continuation
        error = StageFailed(
            _stage_for(continuation),
            f"Unit of work abandoned after {claimed.max_attempts} attempts",
            chapter_number=continuation.chapter_number,
        )
        logger.error("%s", error)
        await handler.failed(continuation, error)
        await self.queue.mark_failed(claimed.id, str(error))


def build_worker(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    sources: Dict[str, LiteratureSource],
    generator: ContentGenerator,
    sink: Optional[ProgressSink] = None,
    transform: Optional[ChapterTransform] = None,
    settings: Optional[Settings] = None,
) -> Worker:
    """Wire the broadcaster, guard, queue and the three handlers together."""
    settings = settings or get_settings()
    broadcaster = ProgressBroadcaster(session_maker, sink or LoggingProgressSink())
    recorder = ActivityRecorder(session_maker, enabled=settings.activity_bulk_jobs)
    guard = CancellationGuard(DatabaseCancellationFlags(session_maker), broadcaster, recorder)
    queue = WorkQueue(session_maker, settings)

    aggregator = LiteratureAggregator(session_maker, broadcaster, guard, sources, settings)
    handlers: Dict[JobKind, JobHandler] = {
        JobKind.GENERATE_DOCUMENT: GenerationCoordinator(
            session_maker, broadcaster, guard, aggregator, queue, recorder, settings,
        ),
        JobKind.GENERATE_CHAPTER: ChapterChain(
            session_maker, broadcaster, guard, generator, queue, recorder, settings,
        ),
        JobKind.FINALIZE_DOCUMENT: Finalizer(
            session_maker, broadcaster, guard, recorder, transform, settings,
        ),
    }
    return Worker(queue, handlers, settings)


async def _serve(once: bool, init: bool) -> None:
    from docgen.database import async_session_maker, close_db, init_db

    settings = get_settings()
    if init:
        await init_db()
        logger.info("Database initialized")

    headers = {
        "User-Agent": f"docgen/{settings.version} (mailto:{settings.contact_email})",
    }
    try:
        async with httpx.AsyncClient(headers=headers, follow_redirects=True) as client:
            worker = build_worker(
                async_session_maker,
                sources=default_sources(client, settings),
                generator=OpenAIContentGenerator(settings),
                settings=settings,
            )
            if once:
                processed = await worker.run_until_idle()
                logger.info("Processed %d jobs", processed)
            else:
                await worker.run_forever()
    finally:
        await close_db()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Run the document generation worker")
    parser.add_argument("--once", action="store_true", help="drain the queue and exit")
    parser.add_argument("--init-db", action="store_true", help="create tables before starting")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )
    logger.info("Starting %s v%s worker", settings.project_name, settings.version)
    asyncio.run(_serve(args.once, args.init_db))


if __name__ == "__main__":
    main()
