"""SuaTalk Analysis - Job scheduler.

A single cooperative poll loop per process:

1. Select due jobs with no valid lease, ordered by priority then due time,
   leaving out kinds already at their per-kind cap. Rows of an unknown kind
   are failed.
2. For each, if a global and per-kind slot is free, try to acquire a lease
   with an atomic conditional update. Losing that race is lease contention:
   the job is skipped for this cycle.
3. Run the handler as an asyncio task; the loop keeps polling while it runs.
4. Settle the outcome while still holding the lease:
   - success          -> job completed
   - retryable + retry -> fail_count++, due again after backoff
   - otherwise        -> job failed, never dispatched again

A lease that expires without being settled (process crash) makes the job
eligible again, so dispatch is at-least-once and handlers must be idempotent.

Recurring maintenance kinds reschedule themselves on success; the scheduler
only seeds them at start() and re-seeds one whose retries ran out.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from analysis.backoff import can_retry, retry_delay_seconds
from analysis.concurrency import BoundedPools
from analysis.config import (
    CLEANUP_FAILED_INTERVAL_SECONDS,
    CLEANUP_TEMP_INTERVAL_SECONDS,
    DEFAULT_KIND_CONCURRENCY,
    HEALTH_CHECK_INTERVAL_SECONDS,
    KIND_CONCURRENCY,
    LEASE_DURATION_SECONDS,
    MAX_CONCURRENCY,
    POLL_BATCH_SIZE,
    POLL_INTERVAL_SECONDS,
)
from analysis.errors import ErrorKind, MissingHandlerError
from analysis.job_store import JobRecord, JobStore
from analysis.models import utc_now
from analysis.results import HandlerResult, JobHandler
from analysis.schemas import JobKind, validate_payload

logger = logging.getLogger(__name__)


# Higher runs first
KIND_PRIORITIES: dict[JobKind, int] = {
    JobKind.ANALYZE_AUDIO: 10,
    JobKind.HEALTH_CHECK: 0,
    JobKind.CLEANUP_FAILED: -10,
    JobKind.CLEANUP_TEMP: -10,
}

RECURRING_INTERVALS: dict[JobKind, int] = {
    JobKind.CLEANUP_FAILED: CLEANUP_FAILED_INTERVAL_SECONDS,
    JobKind.CLEANUP_TEMP: CLEANUP_TEMP_INTERVAL_SECONDS,
    JobKind.HEALTH_CHECK: HEALTH_CHECK_INTERVAL_SECONDS,
}


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class SchedulerSettings:
    """Per-instance scheduler tunables (defaults from analysis.config)."""

    poll_interval: float = POLL_INTERVAL_SECONDS
    lease_seconds: int = LEASE_DURATION_SECONDS
    max_concurrency: int = MAX_CONCURRENCY
    kind_concurrency: dict[str, int] = field(default_factory=lambda: dict(KIND_CONCURRENCY))
    default_kind_concurrency: int = DEFAULT_KIND_CONCURRENCY
    batch_size: int = POLL_BATCH_SIZE


class Scheduler:
    """Polls the Job Store and dispatches due jobs to their handlers."""

    def __init__(
        self,
        job_store: JobStore,
        *,
        settings: SchedulerSettings | None = None,
        handlers: Mapping[JobKind | str, JobHandler] | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._job_store = job_store
        self._settings = settings or SchedulerSettings()
        self._clock = clock
        self.worker_id = worker_id or default_worker_id()
        self._handlers: dict[JobKind, JobHandler] = {}
        for kind, handler in (handlers or {}).items():
            self.register_handler(kind, handler)
        self._pools = BoundedPools(
            global_limit=self._settings.max_concurrency,
            pool_limits=self._settings.kind_concurrency,
            default_pool_limit=self._settings.default_kind_concurrency,
        )
        self._tasks: set[asyncio.Task[None]] = set()
        self._run_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._pending_stop = False
        self.started: asyncio.Event | None = None
        self.stopped: asyncio.Event | None = None

    @property
    def settings(self) -> SchedulerSettings:
        return self._settings

    @property
    def running_jobs(self) -> int:
        return self._pools.in_use

    # --- Registration ---

    def register_handler(self, kind: JobKind | str, handler: JobHandler) -> None:
        """Associate a job kind with its handler.

        Raises:
            ValueError: If kind is not a known JobKind.
        """
        job_kind = JobKind(kind)
        if job_kind in self._handlers:
            logger.info("Replacing handler for job kind %s", job_kind)
        self._handlers[job_kind] = handler

    def _require_handlers(self) -> None:
        missing = [kind.value for kind in JobKind if kind not in self._handlers]
        if missing:
            raise MissingHandlerError(missing)

    # --- Scheduling API ---

    def schedule(
        self,
        kind: JobKind | str,
        payload: dict[str, Any] | None = None,
        delay: float = 0,
        *,
        priority: int | None = None,
    ) -> str:
        """Persist a new job due at now + delay.

        Args:
            kind: Job kind.
            payload: Kind-specific payload, validated before anything is written.
            delay: Seconds until the job becomes due.
            priority: Override for the kind's default priority.

        Returns:
            The new job_id.

        Raises:
            InvalidPayload: Unknown kind or payload of the wrong shape.
            ValueError: Negative delay.
        """
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        parsed = validate_payload(kind, payload)
        job_kind = JobKind(kind)
        due_at = self._clock() + timedelta(seconds=delay)
        recording_id = getattr(parsed, "recording_id", None)

        job_id = self._job_store.insert(
            kind=job_kind.value,
            payload=parsed.model_dump(),
            due_at=due_at,
            priority=KIND_PRIORITIES[job_kind] if priority is None else priority,
            recording_id=recording_id,
        )
        logger.info(
            "Scheduled job: job_id=%s, kind=%s, recording_id=%s, due_at=%s",
            job_id,
            job_kind,
            recording_id,
            due_at.isoformat(),
        )
        return job_id

    async def schedule_async(
        self,
        kind: JobKind | str,
        payload: dict[str, Any] | None = None,
        delay: float = 0,
        *,
        priority: int | None = None,
    ) -> str:
        """schedule() for callers running on the event loop."""
        return await asyncio.to_thread(self.schedule, kind, payload, delay, priority=priority)

    def cancel_pending(self, recording_id: str) -> int:
        """Remove not-yet-dispatched jobs for a recording.

        Running jobs cannot be pre-empted and are left to finish.
        """
        removed = self._job_store.cancel_pending(recording_id, now=self._clock())
        logger.info("Cancelled %d pending jobs for recording_id=%s", removed, recording_id)
        return removed

    def job_stats(self) -> dict[str, int]:
        return self._job_store.stats(now=self._clock())

    def has_scheduled(self, kind: JobKind | str, exclude_job_id: str | None = None) -> bool:
        """Return True if a job of kind is scheduled, not counting exclude_job_id."""
        return self._job_store.has_scheduled(JobKind(kind).value, exclude_job_id=exclude_job_id)

    def ensure_recurring(self) -> list[str]:
        """Seed one job per recurring kind that has none scheduled.

        Returns:
            job_ids created.
        """
        created = []
        for kind in RECURRING_INTERVALS:
            if self._job_store.has_scheduled(kind.value):
                continue
            created.append(self.schedule(kind, {}))
        if created:
            logger.info("Seeded %d recurring maintenance jobs", len(created))
        return created

    # --- Poll Loop ---

    async def tick(self) -> list[str]:
        """Run one poll cycle.

        Returns:
            job_ids dispatched in this cycle.
        """
        self._require_handlers()
        now = self._clock()
        dispatched: list[str] = []

        # Kinds at their cap are left out of the fetch; refetch while a pass saturates more.
        for _ in range(len(JobKind) + 1):
            if self._pools.global_full():
                break
            saturated = self._saturated_kinds()
            candidates = await asyncio.to_thread(
                self._job_store.fetch_due, now, self._settings.batch_size, saturated
            )
            if not candidates:
                break
            await self._dispatch_batch(candidates, now, dispatched)
            if self._saturated_kinds() == saturated:
                break
        return dispatched

    def _saturated_kinds(self) -> list[str]:
        return self._pools.saturated(kind.value for kind in JobKind)

    def _lease_token(self) -> str:
        return f"{self.worker_id}:{uuid.uuid4().hex[:8]}"

    async def _dispatch_batch(
        self, candidates: list[JobRecord], now: datetime, dispatched: list[str]
    ) -> None:
        for job in candidates:
            if self._pools.global_full():
                return
            try:
                job_kind = JobKind(job.kind)
            except ValueError:
                await asyncio.to_thread(self._fail_unknown_kind, job, now)
                continue
            if not self._pools.has_capacity(job.kind):
                continue

            owner = self._lease_token()
            leased = await asyncio.to_thread(
                self._job_store.acquire_lease,
                job.job_id,
                owner,
                self._settings.lease_seconds,
                now,
            )
            if leased is None:
                logger.debug("Lease contention, skipping job_id=%s this cycle", job.job_id)
                continue

            self._pools.try_acquire(job.kind)
            task = asyncio.create_task(self._execute(leased, owner, self._handlers[job_kind]))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched.append(job.job_id)

    def _fail_unknown_kind(self, job: JobRecord, now: datetime) -> None:
        owner = self._lease_token()
        if self._job_store.acquire_lease(job.job_id, owner, self._settings.lease_seconds, now):
            self._job_store.mark_failed(
                job.job_id, owner, f"Unknown job kind: {job.kind}", now=now
            )
            logger.error("Job with unknown kind failed: job_id=%s, kind=%s", job.job_id, job.kind)

    async def _execute(self, job: JobRecord, owner: str, handler: JobHandler) -> None:
        start = time.perf_counter()
        logger.info(
            "Dispatch started: job_id=%s, kind=%s, fail_count=%d",
            job.job_id,
            job.kind,
            job.fail_count,
        )
        try:
            try:
                result = await handler(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Handler raised: job_id=%s, kind=%s", job.job_id, job.kind)
                result = HandlerResult.failure(ErrorKind.INTERNAL, str(e) or type(e).__name__)
            await asyncio.to_thread(self._settle, job, owner, result, start)
        except asyncio.CancelledError:
            raise
        except Exception:
            # The lease is still held; it expires and the job is dispatched again.
            logger.exception("Could not record outcome: job_id=%s", job.job_id)
        finally:
            self._pools.release(job.kind)

    def _settle(self, job: JobRecord, owner: str, result: HandlerResult, start: float) -> None:
        duration_ms = int((time.perf_counter() - start) * 1000)
        now = self._clock()

        if result.ok:
            recorded = self._job_store.complete(job.job_id, owner, now=now)
            if recorded:
                logger.info(
                    "Job completed: job_id=%s, kind=%s, duration_ms=%d, metrics=%s",
                    job.job_id,
                    job.kind,
                    duration_ms,
                    result.metrics,
                )
        else:
            kind = result.error_kind or ErrorKind.INTERNAL
            if result.retry and kind.retryable and can_retry(job.fail_count):
                delay = retry_delay_seconds(job.fail_count)
                recorded = self._job_store.reschedule(
                    job.job_id, owner, now + timedelta(seconds=delay), result.message
                )
                if recorded:
                    logger.info(
                        "Job failed, rescheduled: job_id=%s, kind=%s, error=%s, "
                        "fail_count=%d, retry_in=%ds",
                        job.job_id,
                        job.kind,
                        kind,
                        job.fail_count + 1,
                        delay,
                    )
            else:
                recorded = self._job_store.mark_failed(job.job_id, owner, result.message, now=now)
                if recorded:
                    logger.warning(
                        "Job failed (terminal): job_id=%s, kind=%s, error=%s, message=%s",
                        job.job_id,
                        job.kind,
                        kind,
                        result.message,
                    )
                    self._reseed_recurring(job)

        if not recorded:
            logger.warning(
                "Lease lost before outcome was recorded: job_id=%s, kind=%s", job.job_id, job.kind
            )

    def _reseed_recurring(self, job: JobRecord) -> None:
        kind = JobKind(job.kind)
        interval = RECURRING_INTERVALS.get(kind)
        if interval is None or self._job_store.has_scheduled(kind.value):
            return
        self.schedule(kind, {}, delay=interval)
        logger.info("Re-seeded recurring job kind=%s in %ds", kind, interval)

    # --- Lifecycle ---

    def _prepare_run_state(self) -> None:
        self.started = asyncio.Event()
        self.stopped = asyncio.Event()
        self._stop_event = asyncio.Event()
        if self._pending_stop:
            self._stop_event.set()
            self._pending_stop = False

    async def run(self) -> None:
        """Run the poll loop until stop is requested, then drain in-flight handlers."""
        self._require_handlers()
        self._prepare_run_state()
        logger.info(
            "Scheduler %s polling every %.1fs (max_concurrency=%d)",
            self.worker_id,
            self._settings.poll_interval,
            self._settings.max_concurrency,
        )
        try:
            self.started.set()
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except MissingHandlerError:
                    raise
                except Exception:
                    logger.exception("Poll cycle failed; retrying next interval")
                await self._sleep()
        finally:
            await self.drain()
            self.stopped.set()
            logger.info("Scheduler %s stopped", self.worker_id)

    async def _sleep(self) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._settings.poll_interval)

    async def drain(self) -> None:
        """Wait for all in-flight handlers to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def start(self) -> None:
        """Seed recurring jobs and start the poll loop in the background."""
        self._require_handlers()
        await asyncio.to_thread(self.ensure_recurring)
        self._run_task = asyncio.create_task(self.run())

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        else:
            self._pending_stop = True

    async def wait_closed(self) -> None:
        """Wait until the background poll loop started by start() has exited."""
        if self._run_task is not None:
            await self._run_task
            self._run_task = None

    async def stop(self) -> None:
        """Stop polling and wait for running handlers to finish."""
        self.request_stop()
        await self.wait_closed()


__all__ = [
    "KIND_PRIORITIES",
    "RECURRING_INTERVALS",
    "Scheduler",
    "SchedulerSettings",
]
