"""
Append-only activity log for generation runs.

Records run start, chain dispatch, failure and resource consumption.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String, Text, func, Index, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from docgen.kernel.models.base import Base, generate_uuid


class ActivityType(str, Enum):
    """Activity event types."""

    GENERATION_STARTED = "ai.bulk_generation.started"
    GENERATION_DISPATCHED = "ai.bulk_generation.dispatched"
    GENERATION_FAILED = "ai.bulk_generation.failed"
    GENERATION_CANCELLED = "ai.bulk_generation.cancelled"
    GENERATION_COMPLETED = "ai.bulk_generation.completed"
    CHAPTER_DISPATCHED = "ai.chapter_generation.dispatched"
    WORDS_CONSUMED = "resource.words_consumed"


class ActivityLog(Base):
    """
    Immutable activity record.

    This table is append-only - no updates or deletes.
    """

    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        nullable=True,
        index=True,
    )
    document_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        nullable=True,
    )
    context: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_activity_logs_type_time", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog {self.event_type} run={self.run_id}>"
