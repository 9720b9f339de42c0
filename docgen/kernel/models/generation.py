"""
Generation run model - one execution of the pipeline for one document.
"""

import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from docgen.kernel.models.base import Base, TimestampMixin, generate_uuid


class RunStatus(str, Enum):
    """Lifecycle status of a generation run."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (RunStatus.PENDING, RunStatus.PROCESSING)
TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class GenerationStage(str, Enum):
    """Pipeline stage a run is currently in."""
    INITIALIZING = "initializing"
    LITERATURE_MINING = "literature_mining"
    CHAPTER_GENERATION = "chapter_generation"
    HTML_CONVERSION = "html_conversion"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def chapter_stage(chapter_number: int) -> str:
    """Stage tag for one chapter of the chain, e.g. ``chapter_generation_3``."""
    return f"{GenerationStage.CHAPTER_GENERATION.value}_{chapter_number}"


class GenerationRun(Base, TimestampMixin):
    """
    One end-to-end execution of the generation pipeline.

    Only the unit of work currently executing for the run mutates it; the
    chain guarantees a single owner at a time.
    """

    __tablename__ = "generation_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[RunStatus] = mapped_column(
        String(50),
        default=RunStatus.PENDING.value,
        nullable=False,
    )
    # GenerationStage value or a chapter_generation_{n} tag
    current_stage: Mapped[str] = mapped_column(
        String(100),
        default=GenerationStage.INITIALIZING.value,
        nullable=False,
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    details: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    run_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )

    # Cancellation flag: set by an external actor, polled at checkpoints
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_generation_runs_document_status", "document_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<GenerationRun {self.id} {self.status} {self.progress}%>"
