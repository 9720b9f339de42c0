"""
Pydantic schemas for progress events and status reports.
"""

from docgen.schemas.generation import (
    EventKind,
    TERMINAL_EVENTS,
    ProgressExtra,
    ProgressEvent,
    CompletedPayload,
    FailedPayload,
    ChapterStructureEntry,
    ChapterStatusResponse,
    GenerationStatusResponse,
    CancelResponse,
    Continuation,
)

__all__ = [
    "EventKind",
    "TERMINAL_EVENTS",
    "ProgressExtra",
    "ProgressEvent",
    "CompletedPayload",
    "FailedPayload",
    "ChapterStructureEntry",
    "ChapterStatusResponse",
    "GenerationStatusResponse",
    "CancelResponse",
    "Continuation",
]
