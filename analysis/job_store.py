"""SuaTalk Analysis - Job Store primitives.

Durable scheduled work: due time, lease state, payload, fail count.

Concurrency control is the lease. acquire_lease() is a single conditional
UPDATE that only matches when no other lease is valid, so of two concurrent
attempts exactly one changes a row. Every later write (complete, reschedule,
fail) is conditioned on still holding the same lease token; if the lease
expired and was taken over, the write is skipped and reported as lost.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import sessionmaker

from analysis.db import session_scope
from analysis.models import JobStatus, ScheduledJob, ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Bound on stored error text
MAX_ERROR_LENGTH = 512


@dataclass(frozen=True, slots=True)
class JobRecord:
    """Detached snapshot of a scheduled_jobs row."""

    job_id: str
    kind: str
    payload: dict[str, Any]
    recording_id: str | None
    status: str
    priority: int
    due_at: datetime
    lease_expires_at: datetime | None
    lease_owner: str | None
    fail_count: int
    last_error: str | None

    @classmethod
    def from_row(cls, row: ScheduledJob) -> JobRecord:
        return cls(
            job_id=row.job_id,
            kind=row.kind,
            payload=row.payload,
            recording_id=row.recording_id,
            status=row.status,
            priority=row.priority,
            due_at=ensure_utc(row.due_at),
            lease_expires_at=ensure_utc(row.lease_expires_at),
            lease_owner=row.lease_owner,
            fail_count=row.fail_count,
            last_error=row.last_error,
        )


def _truncate_error(message: str | None, limit: int = MAX_ERROR_LENGTH) -> str | None:
    if message is None:
        return None
    text = message.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _lease_is_free(now: datetime):
    return or_(ScheduledJob.lease_expires_at.is_(None), ScheduledJob.lease_expires_at <= now)


class JobStore:
    """SQLAlchemy-backed store for scheduled jobs."""

    def __init__(self, SessionFactory: sessionmaker):
        self._SessionFactory = SessionFactory

    def insert(
        self,
        kind: str,
        payload: dict[str, Any],
        due_at: datetime,
        priority: int = 0,
        recording_id: str | None = None,
    ) -> str:
        """Persist a new scheduled job and return its job_id."""
        job_id = uuid.uuid4().hex
        with session_scope(self._SessionFactory) as session:
            session.add(
                ScheduledJob(
                    job_id=job_id,
                    kind=kind,
                    payload_json=json.dumps(payload),
                    recording_id=recording_id,
                    status=JobStatus.SCHEDULED,
                    priority=priority,
                    due_at=due_at,
                )
            )
        return job_id

    def get(self, job_id: str) -> JobRecord | None:
        with session_scope(self._SessionFactory) as session:
            stmt = select(ScheduledJob).where(ScheduledJob.job_id == job_id)
            row = session.execute(stmt).scalar_one_or_none()
            return JobRecord.from_row(row) if row is not None else None

    def fetch_due(
        self,
        now: datetime | None = None,
        limit: int = 50,
        exclude_kinds: Collection[str] = (),
    ) -> list[JobRecord]:
        """Select due, unleased jobs ordered by priority (high first) then due time.

        Args:
            now: Reference time. Defaults to utc_now().
            limit: Maximum number of candidates to return.
            exclude_kinds: Kinds left out of the selection (e.g. at their dispatch cap).

        Returns:
            Snapshots of eligible jobs. Eligibility is re-checked by acquire_lease().
        """
        now = now or utc_now()
        criteria = [
            ScheduledJob.status == JobStatus.SCHEDULED,
            ScheduledJob.due_at <= now,
            _lease_is_free(now),
        ]
        if exclude_kinds:
            criteria.append(ScheduledJob.kind.notin_(list(exclude_kinds)))
        stmt = (
            select(ScheduledJob)
            .where(and_(*criteria))
            .order_by(
                ScheduledJob.priority.desc(),
                ScheduledJob.due_at.asc(),
                ScheduledJob.id.asc(),
            )
            .limit(limit)
        )
        with session_scope(self._SessionFactory) as session:
            return [JobRecord.from_row(row) for row in session.execute(stmt).scalars()]

    def acquire_lease(
        self,
        job_id: str,
        owner: str,
        lease_seconds: int,
        now: datetime | None = None,
    ) -> JobRecord | None:
        """Atomically claim a job for lease_seconds.

        Args:
            job_id: Job to claim.
            owner: Unique lease token for this dispatch.
            lease_seconds: Lease lifetime.
            now: Reference time. Defaults to utc_now().

        Returns:
            The leased job snapshot, or None if another lease is valid
            (contention) or the job is no longer scheduled.
        """
        now = now or utc_now()
        stmt = (
            update(ScheduledJob)
            .where(
                and_(
                    ScheduledJob.job_id == job_id,
                    ScheduledJob.status == JobStatus.SCHEDULED,
                    ScheduledJob.due_at <= now,
                    _lease_is_free(now),
                )
            )
            .values(
                lease_owner=owner,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        with session_scope(self._SessionFactory) as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                return None
            row = session.execute(
                select(ScheduledJob).where(ScheduledJob.job_id == job_id)
            ).scalar_one()
            return JobRecord.from_row(row)

    def _update_owned(self, job_id: str, owner: str, **values: Any) -> bool:
        stmt = (
            update(ScheduledJob)
            .where(and_(ScheduledJob.job_id == job_id, ScheduledJob.lease_owner == owner))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with session_scope(self._SessionFactory) as session:
            return session.execute(stmt).rowcount == 1

    def complete(self, job_id: str, owner: str, now: datetime | None = None) -> bool:
        """Mark a leased job completed and release its lease.

        Returns:
            False if the lease was lost before completion.
        """
        return self._update_owned(
            job_id,
            owner,
            status=JobStatus.COMPLETED,
            lease_owner=None,
            lease_expires_at=None,
            last_error=None,
            finished_at=now or utc_now(),
        )

    def reschedule(
        self,
        job_id: str,
        owner: str,
        due_at: datetime,
        error: str | None,
    ) -> bool:
        """Record a failure and make the job due again at due_at, lease cleared."""
        return self._update_owned(
            job_id,
            owner,
            status=JobStatus.SCHEDULED,
            due_at=due_at,
            lease_owner=None,
            lease_expires_at=None,
            fail_count=ScheduledJob.fail_count + 1,
            last_error=_truncate_error(error),
        )

    def mark_failed(
        self,
        job_id: str,
        owner: str,
        error: str | None,
        now: datetime | None = None,
    ) -> bool:
        """Record a terminal failure; the job is never dispatched again."""
        return self._update_owned(
            job_id,
            owner,
            status=JobStatus.FAILED,
            lease_owner=None,
            lease_expires_at=None,
            fail_count=ScheduledJob.fail_count + 1,
            last_error=_truncate_error(error),
            finished_at=now or utc_now(),
        )

    def cancel_pending(self, recording_id: str, now: datetime | None = None) -> int:
        """Delete not-yet-dispatched jobs for a recording.

        Jobs holding a valid lease are running and are left alone.

        Returns:
            Number of jobs removed.
        """
        now = now or utc_now()
        stmt = (
            delete(ScheduledJob)
            .where(
                and_(
                    ScheduledJob.recording_id == recording_id,
                    ScheduledJob.status == JobStatus.SCHEDULED,
                    _lease_is_free(now),
                )
            )
            .execution_options(synchronize_session=False)
        )
        with session_scope(self._SessionFactory) as session:
            return session.execute(stmt).rowcount

    def has_scheduled(self, kind: str, exclude_job_id: str | None = None) -> bool:
        """Return True if a job of this kind is scheduled (leased or not).

        Args:
            kind: Job kind.
            exclude_job_id: Job not counted, typically the one currently running.
        """
        criteria = [ScheduledJob.kind == kind, ScheduledJob.status == JobStatus.SCHEDULED]
        if exclude_job_id is not None:
            criteria.append(ScheduledJob.job_id != exclude_job_id)
        stmt = select(ScheduledJob.id).where(and_(*criteria)).limit(1)
        with session_scope(self._SessionFactory) as session:
            return session.execute(stmt).first() is not None

    def stats(self, now: datetime | None = None) -> dict[str, int]:
        """Count jobs by coarse state.

        Returns:
            Dict with total, running (valid lease), failed and scheduled (due in future).
        """
        now = now or utc_now()

        def _count(*criteria) -> int:
            stmt = select(func.count(ScheduledJob.id))
            if criteria:
                stmt = stmt.where(and_(*criteria))
            return int(session.execute(stmt).scalar_one())

        with session_scope(self._SessionFactory) as session:
            return {
                "total": _count(),
                "running": _count(
                    ScheduledJob.status == JobStatus.SCHEDULED,
                    ScheduledJob.lease_expires_at.is_not(None),
                    ScheduledJob.lease_expires_at > now,
                ),
                "failed": _count(ScheduledJob.status == JobStatus.FAILED),
                "scheduled": _count(
                    ScheduledJob.status == JobStatus.SCHEDULED,
                    ScheduledJob.due_at > now,
                ),
            }
