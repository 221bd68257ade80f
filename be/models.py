"""Core SQLAlchemy models (2.x style) for the ingestion hub schema.

Projects own data records and the two job tables. Embeddings are stored with
pgvector; a NULL embedding means the record has not been vectorized yet.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Enum as SAEnum, ForeignKey, Index, Integer, LargeBinary, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class RecordType(str, Enum):
    """Kind of ingested content."""
    TASK = "TASK"
    FEEDBACK = "FEEDBACK"


class RecordCategory(str, Enum):
    """Quality bucket detected from rating fields."""
    TOP_10 = "TOP_10"
    BOTTOM_10 = "BOTTOM_10"


class IngestStatus(str, Enum):
    """Ingest job lifecycle."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    VECTORIZING = "VECTORIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class AnalyticsStatus(str, Enum):
    """Bulk alignment job lifecycle."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


def _enum(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=20)


class Project(Base):
    """Projects table."""
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    guidelines: Mapped[bytes | None] = mapped_column(LargeBinary)
    last_task_analysis: Mapped[str | None] = mapped_column(Text)
    last_feedback_analysis: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    # Relationships
    records: Mapped[list[DataRecord]] = relationship(
        "DataRecord",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    ingest_jobs: Mapped[list[IngestJob]] = relationship(
        "IngestJob",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    analytics_jobs: Mapped[list[AnalyticsJob]] = relationship(
        "AnalyticsJob",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DataRecord(Base):
    """Ingested tasks and feedback items."""
    __tablename__ = "data_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[RecordType] = mapped_column(_enum(RecordType), nullable=False)
    category: Mapped[RecordCategory | None] = mapped_column(_enum(RecordCategory))
    source: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    embedding: Mapped[list[float] | None] = mapped_column(Vector())
    alignment_analysis: Mapped[str | None] = mapped_column(Text)
    similarity_analysis: Mapped[list | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    # Relationship
    project: Mapped[Project] = relationship("Project", back_populates="records")

    __table_args__ = (
        Index("ix_data_records_project_type", "project_id", "type"),
        Index("ix_data_records_created_at", "created_at"),
    )


class IngestJob(Base):
    """Background ingestion jobs (load -> dedup -> persist -> vectorize)."""
    __tablename__ = "ingest_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[RecordType] = mapped_column(_enum(RecordType), nullable=False)
    status: Mapped[IngestStatus] = mapped_column(
        _enum(IngestStatus),
        default=IngestStatus.PENDING,
        nullable=False,
        index=True,
    )
    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    saved_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_details: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_ingest_jobs_project_status", "project_id", "status"),
    )


class AnalyticsJob(Base):
    """Background bulk alignment jobs."""
    __tablename__ = "analytics_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[AnalyticsStatus] = mapped_column(
        _enum(AnalyticsStatus),
        default=AnalyticsStatus.PENDING,
        nullable=False,
        index=True,
    )
    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_analytics_jobs_project_status", "project_id", "status"),
    )
