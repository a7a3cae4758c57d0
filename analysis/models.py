"""SuaTalk Analysis - SQLAlchemy ORM models.

Database tables:
1. recordings      (Recording Store)
2. scheduled_jobs  (Job Store)
"""

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class AnalysisStatus(StrEnum):
    """Lifecycle of a recording's analysis."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(StrEnum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"


class Recording(Base):
    """An uploaded audio recording and its analysis state.

    Only the analysis fields are written by the scheduling core; the rest is
    owned by the upload flow.
    """

    __tablename__ = "recordings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Source file information
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Analysis lifecycle
    analysis_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AnalysisStatus.PENDING, index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Prediction result as JSON string (label, confidence, per-class scores)
    ml_result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    ml_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model_version: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Soft-delete flag; inactive recordings no longer pin their files
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("ix_recordings_status_retry", "analysis_status", "retry_count"),)

    @property
    def ml_result(self) -> dict[str, Any] | None:
        if not self.ml_result_json:
            return None
        try:
            return json.loads(self.ml_result_json)
        except (json.JSONDecodeError, TypeError):
            return None


class ScheduledJob(Base):
    """A unit of scheduled work.

    Lease: a job is held while lease_expires_at > now. Expired leases make the
    job eligible again, which gives at-least-once dispatch.
    """

    __tablename__ = "scheduled_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Unique job identifier returned by schedule()
    job_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    # Denormalized from payload so pending analysis can be cancelled per recording
    recording_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=JobStatus.SCHEDULED, index=True
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Lease state
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    lease_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)

    fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_status_due", "status", "due_at"),
        Index("ix_jobs_lease_expires_at", "lease_expires_at"),
    )

    @property
    def payload(self) -> dict[str, Any]:
        try:
            payload = json.loads(self.payload_json) if self.payload_json else {}
        except (json.JSONDecodeError, TypeError):
            payload = {}
        return payload if isinstance(payload, dict) else {}
