"""
Kernel Layer

Persistence models and the activity log shared by every pipeline stage.
"""

from docgen.kernel.models import (
    Document,
    Chapter,
    ChapterStatus,
    CollectedPaper,
    GenerationRun,
    GenerationStage,
    RunStatus,
    ActivityLog,
    ActivityType,
    QueuedJob,
    JobKind,
    JobStatus,
)

__all__ = [
    "Document",
    "Chapter",
    "ChapterStatus",
    "CollectedPaper",
    "GenerationRun",
    "GenerationStage",
    "RunStatus",
    "ActivityLog",
    "ActivityType",
    "QueuedJob",
    "JobKind",
    "JobStatus",
]
