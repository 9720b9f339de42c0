"""
Kernel Data Models

SQLAlchemy models the generation pipeline reads and writes.
"""

from docgen.kernel.models.base import Base, TimestampMixin, generate_uuid
from docgen.kernel.models.document import (
    Document,
    Chapter,
    ChapterStatus,
    CollectedPaper,
)
from docgen.kernel.models.generation import (
    GenerationRun,
    GenerationStage,
    RunStatus,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    chapter_stage,
)
from docgen.kernel.models.event_log import ActivityLog, ActivityType
from docgen.kernel.models.job import QueuedJob, JobKind, JobStatus

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "generate_uuid",
    # Document
    "Document",
    "Chapter",
    "ChapterStatus",
    "CollectedPaper",
    # Generation
    "GenerationRun",
    "GenerationStage",
    "RunStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "chapter_stage",
    # Activity
    "ActivityLog",
    "ActivityType",
    # Queue
    "QueuedJob",
    "JobKind",
    "JobStatus",
]
