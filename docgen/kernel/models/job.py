"""
Durable work queue table.

Each row is a continuation: the next unit of work of a generation run.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, JSON, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from docgen.kernel.models.base import Base, TimestampMixin, generate_uuid


class JobKind(str, Enum):
    """Units of work the pipeline enqueues."""
    GENERATE_DOCUMENT = "generate_document"
    GENERATE_CHAPTER = "generate_chapter"
    FINALIZE_DOCUMENT = "finalize_document"


class JobStatus(str, Enum):
    """Queue status of a job row."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class QueuedJob(Base, TimestampMixin):
    """A unit of work waiting for, or held by, a worker."""

    __tablename__ = "queued_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    kind: Mapped[JobKind] = mapped_column(
        String(50),
        nullable=False,
    )
    run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
        index=True,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
    )
    chapter_number: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    status: Mapped[JobStatus] = mapped_column(
        String(20),
        default=JobStatus.QUEUED.value,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    last_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_queued_jobs_status_available", "status", "available_at"),
    )

    def __repr__(self) -> str:
        return f"<QueuedJob {self.kind} run={self.run_id} ch={self.chapter_number} {self.status}>"
