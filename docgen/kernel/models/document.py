"""
Document models: the project being written, its chapters and its literature set.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docgen.kernel.models.base import Base, TimestampMixin, generate_uuid


class ChapterStatus(str, Enum):
    """Chapter lifecycle status."""
    DRAFT = "draft"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class Document(Base, TimestampMixin):
    """An academic document with an externally supplied chapter structure."""

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    topic: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    field_of_study: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # [{number, title, target_word_count}, ...] decided before generation starts
    chapter_structure: Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
    )

    chapters: Mapped[List["Chapter"]] = relationship(
        "Chapter",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="Chapter.chapter_number",
    )
    collected_papers: Mapped[List["CollectedPaper"]] = relationship(
        "CollectedPaper",
        back_populates="document",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Document {self.title[:50]}>"


class Chapter(Base, TimestampMixin):
    """One generated chapter; unique per (document, chapter_number)."""

    __tablename__ = "chapters"

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
    chapter_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    # Final representation written by the finalizer
    html_content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    word_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    target_word_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    status: Mapped[ChapterStatus] = mapped_column(
        String(50),
        default=ChapterStatus.DRAFT.value,
        nullable=False,
    )
    ai_generated: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    last_generated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    document: Mapped["Document"] = relationship(
        "Document",
        back_populates="chapters",
    )

    __table_args__ = (
        UniqueConstraint("document_id", "chapter_number", name="uq_chapters_document_number"),
    )

    def __repr__(self) -> str:
        return f"<Chapter {self.chapter_number} {self.status}>"


class CollectedPaper(Base):
    """A deduplicated paper stored for a document (the literature set)."""

    __tablename__ = "collected_papers"

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
    title: Mapped[str] = mapped_column(Text, nullable=False)
    authors: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    venue: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    doi: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    abstract: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    citation_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quality_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    source_api: Mapped[str] = mapped_column(String(50), nullable=False)
    paper_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_open_access: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    collected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    document: Mapped["Document"] = relationship(
        "Document",
        back_populates="collected_papers",
    )

    def __repr__(self) -> str:
        return f"<CollectedPaper {self.title[:50]}>"
