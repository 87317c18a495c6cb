"""
Relational records for the learning core.

SQLAlchemy models for:
- Source documents and their embedded chunks
- Courses, ordered levels and chapters
- Quizzes, attempts and remediation content
- Level unlocks and chapter completions
- Notes
- Points ledger and achievement grants

Uniqueness constraints double as the concurrency guards for idempotent
writes (chunk ordinals, unlocks, point awards, achievement grants).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so everything is stored naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


# Processing status values for SourceDocument
STATUS_REGISTERED = "registered"
STATUS_EXTRACTING = "extracting"
STATUS_EXTRACTED = "extracted"
STATUS_EMBEDDING = "embedding"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

PROCESSING_STATUSES = (
    STATUS_REGISTERED,
    STATUS_EXTRACTING,
    STATUS_EXTRACTED,
    STATUS_EMBEDDING,
    STATUS_COMPLETED,
    STATUS_FAILED,
)

QUIZ_TYPE_SECTION = "section"
QUIZ_TYPE_LEVEL_TEST = "level_test"

ATTEMPT_CREATED = "created"
ATTEMPT_SUBMITTED = "submitted"

UNLOCK_TEST_PASSED = "test_passed"
UNLOCK_SKIPPED = "skipped"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id}>"


class SourceDocument(Base):
    """
    An uploaded file driven through the ingestion stages.

    ``processing_status`` is the single stage column; ``stage_token`` and
    ``stage_claimed_at`` hold the lease of the invocation currently working
    on the document.
    """

    __tablename__ = "source_documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    course_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("courses.id", ondelete="SET NULL"), index=True
    )

    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    file_type: Mapped[str] = mapped_column(String(16), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)

    processing_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=STATUS_REGISTERED
    )
    failed_stage: Mapped[Optional[str]] = mapped_column(String(32))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    extracted_text: Mapped[Optional[str]] = mapped_column(Text)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    word_count: Mapped[Optional[int]] = mapped_column(Integer)
    page_count: Mapped[Optional[int]] = mapped_column(Integer)

    stage_token: Mapped[Optional[str]] = mapped_column(String(36))
    stage_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    chunks: Mapped[list["DocumentChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.chunk_index",
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "storage_path", name="uq_document_owner_path"),
        Index("idx_documents_owner_status", "owner_id", "processing_status"),
    )

    def __repr__(self) -> str:
        return f"<SourceDocument id={self.id} status={self.processing_status}>"


class DocumentChunk(Base):
    """A contiguous slice of a document's extracted text with its vector."""

    __tablename__ = "document_chunks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    document_id: Mapped[str] = mapped_column(
        ForeignKey("source_documents.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    char_count: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)
    start_char: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    end_char: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Either NULL or a complete fixed-length vector
    embedding: Mapped[Optional[list[float]]] = mapped_column(JSON(none_as_null=True))
    embedding_model: Mapped[Optional[str]] = mapped_column(String(128))
    embedding_error: Mapped[Optional[str]] = mapped_column(Text)
    embedding_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    document: Mapped[SourceDocument] = relationship(back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunk_document_index"),
    )

    def __repr__(self) -> str:
        return f"<DocumentChunk document={self.document_id} index={self.chunk_index}>"


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    levels: Mapped[list["CourseLevel"]] = relationship(
        back_populates="course",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CourseLevel.order_index",
    )


class CourseLevel(Base):
    __tablename__ = "course_levels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    course_id: Mapped[str] = mapped_column(
        ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    course: Mapped[Course] = relationship(back_populates="levels")
    chapters: Mapped[list["Chapter"]] = relationship(
        back_populates="level",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Chapter.order_index",
    )

    __table_args__ = (
        UniqueConstraint("course_id", "order_index", name="uq_level_course_order"),
    )


class Chapter(Base):
    __tablename__ = "chapters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    level_id: Mapped[str] = mapped_column(
        ForeignKey("course_levels.id", ondelete="CASCADE"), nullable=False
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text)

    level: Mapped[CourseLevel] = relationship(back_populates="chapters")

    __table_args__ = (
        UniqueConstraint("level_id", "order_index", name="uq_chapter_level_order"),
    )


class Quiz(Base):
    """
    A quiz scoped to a chapter (section quiz) or to a level (level test).

    ``questions`` holds the full question list including correct option ids;
    it is only ever read server-side.
    """

    __tablename__ = "quizzes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    course_id: Mapped[str] = mapped_column(
        ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    level_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("course_levels.id", ondelete="CASCADE"), index=True
    )
    chapter_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("chapters.id", ondelete="CASCADE"), index=True
    )
    quiz_type: Mapped[str] = mapped_column(String(32), nullable=False, default=QUIZ_TYPE_SECTION)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    questions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    pass_threshold: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class QuizAttempt(Base):
    """One attempt at a quiz. Immutable once ``status`` is submitted."""

    __tablename__ = "quiz_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    quiz_id: Mapped[str] = mapped_column(
        ForeignKey("quizzes.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ATTEMPT_CREATED)

    answers: Mapped[Optional[dict[str, str]]] = mapped_column(JSON(none_as_null=True))
    question_results: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON(none_as_null=True))
    score: Mapped[Optional[float]] = mapped_column(Float)
    passed: Mapped[Optional[bool]] = mapped_column(Boolean)
    correct_count: Mapped[Optional[int]] = mapped_column(Integer)
    total_questions: Mapped[Optional[int]] = mapped_column(Integer)
    time_spent_seconds: Mapped[Optional[int]] = mapped_column(Integer)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("idx_attempts_user_quiz", "user_id", "quiz_id"),)


class QuizRemediation(Base):
    __tablename__ = "quiz_remediations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    attempt_id: Mapped[str] = mapped_column(
        ForeignKey("quiz_attempts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    viewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class LevelUnlock(Base):
    __tablename__ = "level_unlocks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    level_id: Mapped[str] = mapped_column(
        ForeignKey("course_levels.id", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[str] = mapped_column(
        ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    attempt_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("quiz_attempts.id", ondelete="SET NULL")
    )
    unlocked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "level_id", name="uq_unlock_user_level"),
    )


class ChapterCompletion(Base):
    __tablename__ = "chapter_completions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    chapter_id: Mapped[str] = mapped_column(
        ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False
    )
    level_id: Mapped[str] = mapped_column(
        ForeignKey("course_levels.id", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[str] = mapped_column(
        ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    completed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "chapter_id", name="uq_completion_user_chapter"),
    )


class Note(Base):
    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    course_id: Mapped[str] = mapped_column(
        ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    chapter_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("chapters.id", ondelete="SET NULL")
    )
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(JSON(none_as_null=True))
    embedding_model: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class PointsLedgerEntry(Base):
    """Append-only point award. At most one row per (user, event type, reference)."""

    __tablename__ = "points_ledger"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "event_type", "reference_id", name="uq_points_event"),
    )


class AchievementGrant(Base):
    __tablename__ = "achievement_grants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    achievement_id: Mapped[str] = mapped_column(String(64), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="uq_achievement_user"),
    )
