"""SuaTalk Analysis - Recording Store primitives.

Every status change is a compare-and-set UPDATE restricted to the source
statuses allowed by analysis.lifecycle, so concurrent handlers cannot push a
recording along an illegal edge or out of a terminal state.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, select, update
from sqlalchemy.orm import sessionmaker

from analysis.config import MAX_RETRIES
from analysis.db import session_scope
from analysis.lifecycle import sources_for
from analysis.models import AnalysisStatus, Recording, ensure_utc, utc_now
from analysis.schemas import PredictionResult

logger = logging.getLogger(__name__)

CANCELLED_NOTE = "Analysis cancelled after maximum retries"


@dataclass(frozen=True, slots=True)
class RecordingRecord:
    """Detached snapshot of the analysis-relevant recording fields."""

    id: str
    file_path: str
    analysis_status: str
    retry_count: int
    last_retry_at: datetime | None
    ml_result: dict[str, Any] | None
    ml_error: str | None
    is_active: bool

    @classmethod
    def from_row(cls, row: Recording) -> RecordingRecord:
        return cls(
            id=row.id,
            file_path=row.file_path,
            analysis_status=row.analysis_status,
            retry_count=row.retry_count,
            last_retry_at=ensure_utc(row.last_retry_at),
            ml_result=row.ml_result,
            ml_error=row.ml_error,
            is_active=row.is_active,
        )


class RecordingStore:
    """SQLAlchemy-backed store for recordings."""

    def __init__(self, SessionFactory: sessionmaker):
        self._SessionFactory = SessionFactory

    def create(
        self,
        recording_id: str,
        file_path: str,
        original_filename: str | None = None,
        mime_type: str | None = None,
    ) -> RecordingRecord:
        """Insert a pending recording (used by the upload flow)."""
        with session_scope(self._SessionFactory) as session:
            row = Recording(
                id=recording_id,
                file_path=file_path,
                original_filename=original_filename,
                mime_type=mime_type,
                analysis_status=AnalysisStatus.PENDING,
                retry_count=0,
                is_active=True,
            )
            session.add(row)
            session.flush()
            return RecordingRecord.from_row(row)

    def get(self, recording_id: str) -> RecordingRecord | None:
        with session_scope(self._SessionFactory) as session:
            row = session.get(Recording, recording_id)
            return RecordingRecord.from_row(row) if row is not None else None

    def _transition(
        self,
        recording_id: str,
        target: AnalysisStatus,
        now: datetime | None = None,
        **values: Any,
    ) -> bool:
        stmt = (
            update(Recording)
            .where(
                and_(
                    Recording.id == recording_id,
                    Recording.analysis_status.in_(sources_for(target)),
                )
            )
            .values(analysis_status=target, updated_at=now or utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        with session_scope(self._SessionFactory) as session:
            return session.execute(stmt).rowcount == 1

    def mark_processing(self, recording_id: str, now: datetime | None = None) -> bool:
        """pending|failed -> processing.

        Returns:
            False if the recording was not in a startable status (already
            claimed by a concurrent dispatch, settled, or cancelled).
        """
        return self._transition(recording_id, AnalysisStatus.PROCESSING, now, ml_error=None)

    def mark_completed(
        self,
        recording_id: str,
        result: PredictionResult,
        processing_time_ms: int,
        now: datetime | None = None,
    ) -> bool:
        """processing -> completed, storing the prediction."""
        now = now or utc_now()
        ml_result = {
            "predicted_label": result.predicted_label,
            "confidence": result.confidence,
            "per_class_scores": result.per_class_scores,
            "service_processing_time_ms": result.processing_time_ms,
        }
        return self._transition(
            recording_id,
            AnalysisStatus.COMPLETED,
            now,
            ml_result_json=json.dumps(ml_result),
            ml_error=None,
            processing_time_ms=processing_time_ms,
            model_version=result.model_version,
            analyzed_at=now,
        )

    def mark_failed(
        self,
        recording_id: str,
        error_message: str,
        now: datetime | None = None,
    ) -> int | None:
        """processing -> failed, bumping retry_count (capped) and last_retry_at.

        Args:
            recording_id: Recording to update.
            error_message: Stored in ml_error.
            now: Reference time. Defaults to utc_now().

        Returns:
            The retry_count *before* this failure, or None if the recording
            was not processing.
        """
        now = now or utc_now()
        with session_scope(self._SessionFactory) as session:
            row = session.get(Recording, recording_id)
            if row is None or row.analysis_status != AnalysisStatus.PROCESSING:
                return None
            previous = row.retry_count

            stmt = (
                update(Recording)
                .where(
                    and_(
                        Recording.id == recording_id,
                        Recording.analysis_status == AnalysisStatus.PROCESSING,
                        Recording.retry_count == previous,
                    )
                )
                .values(
                    analysis_status=AnalysisStatus.FAILED,
                    ml_error=error_message,
                    last_retry_at=now,
                    retry_count=case(
                        (Recording.retry_count >= MAX_RETRIES, MAX_RETRIES),
                        else_=Recording.retry_count + 1,
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if session.execute(stmt).rowcount != 1:
                return None
            return previous

    def cancel_exhausted(
        self,
        older_than: datetime,
        note: str = CANCELLED_NOTE,
        now: datetime | None = None,
    ) -> int:
        """failed -> cancelled for recordings out of retries since before older_than.

        Returns:
            Number of recordings cancelled.
        """
        stmt = (
            update(Recording)
            .where(
                and_(
                    Recording.analysis_status == AnalysisStatus.FAILED,
                    Recording.retry_count >= MAX_RETRIES,
                    Recording.last_retry_at.is_not(None),
                    Recording.last_retry_at < older_than,
                )
            )
            .values(
                analysis_status=AnalysisStatus.CANCELLED,
                ml_error=note,
                updated_at=now or utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        with session_scope(self._SessionFactory) as session:
            return session.execute(stmt).rowcount

    def active_file_paths(self) -> set[str]:
        """File paths still referenced by active recordings."""
        stmt = select(Recording.file_path).where(Recording.is_active.is_(True))
        with session_scope(self._SessionFactory) as session:
            return set(session.execute(stmt).scalars())
