"""
Cooperative, poll-based cancellation.

An external actor sets the run's ``cancel_requested`` flag at any time.
Stages call ``CancellationGuard.check`` at their checkpoints; once the flag is
observed the guard raises ``GenerationCancelled``, which handlers catch and
turn into the ``cancelled`` terminal state. In-flight provider or model calls
are never killed.
"""

import uuid
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.exceptions import GenerationCancelled
from docgen.kernel.events.event_store import ActivityRecorder
from docgen.kernel.models.event_log import ActivityType
from docgen.kernel.models.generation import GenerationRun, RunStatus
from docgen.logging_config import get_logger
from docgen.orchestration.progress import ProgressBroadcaster
from docgen.schemas.generation import ProgressEvent

logger = get_logger(__name__)


class CancellationFlags(Protocol):
    async def is_cancelled(self, run_id: uuid.UUID) -> bool:
        ...

    async def request_cancel(self, run_id: uuid.UUID) -> None:
        ...


class DatabaseCancellationFlags:
    """
    Flag storage backed by the generation_runs table.

    Each read uses a fresh session so a flag written by another process is
    observed at the next checkpoint.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def is_cancelled(self, run_id: uuid.UUID) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                select(GenerationRun.cancel_requested, GenerationRun.status)
                .where(GenerationRun.id == run_id)
            )
            row = result.first()
        if row is None:
            return False
        cancel_requested, status = row
        return bool(cancel_requested) or status == RunStatus.CANCELLED.value

    async def request_cancel(self, run_id: uuid.UUID) -> None:
        # Touch only the flag column; the owning stage keeps writing the rest
        async with self.session_maker() as session:
            await session.execute(
                update(GenerationRun)
                .where(GenerationRun.id == run_id)
                .values(cancel_requested=True)
            )
            await session.commit()


class CancellationGuard:
    """Checks the flag at checkpoints and finishes cancelled runs."""

    def __init__(
        self,
        flags: CancellationFlags,
        broadcaster: ProgressBroadcaster,
        recorder: Optional[ActivityRecorder] = None,
    ):
        self.flags = flags
        self.broadcaster = broadcaster
        self.recorder = recorder

    async def check(self, run_id: uuid.UUID, checkpoint: str) -> None:
        """Raise GenerationCancelled if the run's flag is set."""
        if await self.flags.is_cancelled(run_id):
            logger.info("Cancellation observed at %s", checkpoint)
            raise GenerationCancelled(run_id, checkpoint)

    async def handle(
        self,
        exc: GenerationCancelled,
        document_id: Optional[uuid.UUID] = None,
    ) -> Optional[ProgressEvent]:
        """
        Mark the run cancelled and publish the terminal event.

        No failure is reported; a second call for the same run is a no-op.
        """
        event = await self.broadcaster.cancelled(exc.run_id)
        if event is None:
            return None

        logger.info("Generation %s cancelled at %s", exc.run_id, exc.checkpoint or "entry")
        if self.recorder is not None:
            await self.recorder.record(
                ActivityType.GENERATION_CANCELLED,
                "Generation cancelled",
                {
                    "run_id": exc.run_id,
                    "document_id": document_id,
                    "checkpoint": exc.checkpoint,
                    "progress": event.percentage,
                },
            )
        return event
