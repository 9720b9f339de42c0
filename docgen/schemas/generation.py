"""
Generation schemas: progress events, terminal payloads, chapter structure
entries and queue continuations.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from docgen.kernel.models.job import JobKind


class EventKind(str, Enum):
    """Kinds of progress events published to the sink."""
    STARTED = "started"
    LITERATURE_MINING = "literature_mining"
    CHAPTER_STARTED = "chapter_started"
    CHAPTER_PROGRESS = "chapter_progress"
    CHAPTER_COMPLETED = "chapter_completed"
    HTML_CONVERSION = "html_conversion"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EVENTS = (EventKind.COMPLETED, EventKind.FAILED, EventKind.CANCELLED)


class ProgressExtra(BaseModel):
    """Optional context attached to a progress event."""

    source: Optional[str] = None
    papers_found: Optional[int] = None
    papers_total: Optional[int] = None
    sub_stage: Optional[str] = None  # connecting | completed | deduplicating | storing
    chapter_number: Optional[int] = None
    chapter_title: Optional[str] = None
    words_so_far: Optional[int] = None
    target_words: Optional[int] = None
    total_chapters: Optional[int] = None
    is_resume: Optional[bool] = None
    generation_time: Optional[float] = None


class CompletedPayload(BaseModel):
    """Carried by the final ``completed`` event."""

    total_words: int
    chapter_count: int
    duration_seconds: float
    literature_count: int
    artifact_locators: Dict[str, str] = Field(default_factory=dict)


class FailedPayload(BaseModel):
    """Carried by the ``failed`` event."""

    stage: str
    message: str
    chapter_number: Optional[int] = None
    can_resume: bool = False
    last_successful_chapter: Optional[int] = None


class ProgressEvent(BaseModel):
    """One stage/percentage/message tuple published for a run."""

    run_id: uuid.UUID
    event: EventKind
    stage: str
    percentage: int = Field(..., ge=0, le=100)
    message: str
    extra: ProgressExtra = Field(default_factory=ProgressExtra)
    completed: Optional[CompletedPayload] = None
    failed: Optional[FailedPayload] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS


class ChapterStructureEntry(BaseModel):
    """
    One entry of the externally supplied chapter structure.

    Accepts both ``number``/``chapter_number`` and ``title``/``chapter_title``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("number", "chapter_number"),
    )
    title: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("title", "chapter_title"),
    )
    target_word_count: int = Field(
        0,
        validation_alias=AliasChoices("target_word_count", "targetWordCount", "word_count"),
    )


class ChapterStatusResponse(BaseModel):
    """Per-chapter line of a status report."""

    chapter_number: int
    title: str
    status: str
    word_count: int
    target_word_count: int
    is_completed: bool


class GenerationStatusResponse(BaseModel):
    """Snapshot of the latest run of a document."""

    run_id: Optional[uuid.UUID] = None
    status: str
    progress: int = 0
    current_stage: Optional[str] = None
    message: Optional[str] = None
    cancel_requested: bool = False
    details: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    chapter_statuses: List[ChapterStatusResponse] = Field(default_factory=list)


class CancelResponse(BaseModel):
    """Result of a cancellation request."""

    run_id: uuid.UUID
    progress: int
    can_resume: bool


class Continuation(BaseModel):
    """
    Durable description of the next unit of work of a run.

    Stored as the payload of a queued job; a worker turns it back into a
    handler call.
    """

    kind: JobKind
    run_id: uuid.UUID
    document_id: uuid.UUID
    chapter_number: Optional[int] = None
    structure: List[Dict[str, Any]] = Field(default_factory=list)
    resume: bool = False
    force_literature: bool = False

    def next_chapter(self, chapter_number: int) -> "Continuation":
        return self.model_copy(
            update={"kind": JobKind.GENERATE_CHAPTER, "chapter_number": chapter_number},
        )

    def finalize(self) -> "Continuation":
        return self.model_copy(
            update={"kind": JobKind.FINALIZE_DOCUMENT, "chapter_number": None},
        )
