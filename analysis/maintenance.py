"""SuaTalk Analysis - Maintenance sweeps.

Recurring jobs:
- cleanup_failed (24h): failed recordings out of retries for 24h -> cancelled
- cleanup_temp (24h): delete stale temp files no active recording references
- health_check (5m): sample CPU/memory/disk/load and forward to alerting

Each handler reschedules itself at its cadence after a successful run, unless
another occurrence of its kind is already scheduled (redelivery after a crash).
Per-file errors in cleanup_temp are logged and do not fail the sweep.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import psutil

from analysis.config import (
    FAILED_RECORDING_MAX_AGE_SECONDS,
    TEMP_DIR,
    TEMP_FILE_MAX_AGE_SECONDS,
)
from analysis.errors import ErrorKind
from analysis.models import utc_now
from analysis.recording_store import CANCELLED_NOTE, RecordingStore
from analysis.results import HandlerResult, JobHandler
from analysis.scheduler import RECURRING_INTERVALS, Scheduler
from analysis.schemas import HealthSample, JobKind

if TYPE_CHECKING:
    from analysis.job_store import JobRecord

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    async def check_system_health(self, sample: HealthSample) -> Any: ...


# --- Sweeps ---


def cleanup_failed_recordings(
    recordings: RecordingStore,
    now: datetime | None = None,
    max_age_seconds: int = FAILED_RECORDING_MAX_AGE_SECONDS,
) -> int:
    """Cancel failed recordings whose retries ran out more than max_age_seconds ago.

    Returns:
        Number of recordings cancelled.
    """
    now = now or utc_now()
    cutoff = now - timedelta(seconds=max_age_seconds)
    cancelled = recordings.cancel_exhausted(older_than=cutoff, note=CANCELLED_NOTE, now=now)
    logger.info(
        "cleanup_failed: cancelled %d recordings (last retry before %s)",
        cancelled,
        cutoff.isoformat(),
    )
    return cancelled


@dataclass
class TempCleanupReport:
    scanned: int = 0
    deleted: int = 0
    referenced: int = 0
    errors: list[str] = field(default_factory=list)


def cleanup_temp_files(
    directory: Path,
    referenced: set[str],
    max_age_seconds: int = TEMP_FILE_MAX_AGE_SECONDS,
    now_ts: float | None = None,
) -> TempCleanupReport:
    """Delete files under directory older than max_age_seconds.

    Files whose resolved path is in referenced are kept regardless of age.

    Args:
        directory: Temp directory to sweep (missing directory is a no-op).
        referenced: File paths still used by active recordings.
        max_age_seconds: Minimum age (by mtime) for deletion.
        now_ts: Reference epoch seconds. Defaults to time.time().

    Returns:
        Counts plus one message per file that could not be handled.
    """
    report = TempCleanupReport()
    if not directory.is_dir():
        logger.info("cleanup_temp: %s does not exist, nothing to do", directory)
        return report

    now_ts = time.time() if now_ts is None else now_ts
    keep = {os.path.realpath(p) for p in referenced}

    for path in sorted(directory.rglob("*")):
        try:
            if not path.is_file():
                continue
            report.scanned += 1
            if os.path.realpath(path) in keep:
                report.referenced += 1
                continue
            if now_ts - path.stat().st_mtime < max_age_seconds:
                continue
            path.unlink()
            report.deleted += 1
        except OSError as e:
            report.errors.append(f"{path}: {e}")
            logger.warning("cleanup_temp: could not remove %s: %s", path, e)

    logger.info(
        "cleanup_temp: scanned=%d, deleted=%d, referenced=%d, errors=%d",
        report.scanned,
        report.deleted,
        report.referenced,
        len(report.errors),
    )
    return report


def sample_system_health(psutil_module: Any = psutil, disk_path: str = "/") -> HealthSample:
    """Take one CPU/memory/disk/load sample."""
    try:
        load_average = psutil_module.getloadavg()[0]
    except (AttributeError, OSError):
        load_average = 0.0
    return HealthSample(
        cpu_percent=psutil_module.cpu_percent(interval=None),
        memory_percent=psutil_module.virtual_memory().percent,
        disk_percent=psutil_module.disk_usage(disk_path).percent,
        load_average=load_average,
    )


# --- Handlers ---


@dataclass
class MaintenanceDeps:
    recordings: RecordingStore
    scheduler: Scheduler
    alerting: AlertSink
    temp_dir: Path = TEMP_DIR
    temp_max_age_seconds: int = TEMP_FILE_MAX_AGE_SECONDS
    failed_max_age_seconds: int = FAILED_RECORDING_MAX_AGE_SECONDS
    sampler: Callable[[], HealthSample] = sample_system_health
    clock: Callable[[], datetime] = utc_now


async def _reschedule(deps: MaintenanceDeps, job: JobRecord) -> str | None:
    """Schedule the next occurrence unless a redelivered run already did."""
    kind = JobKind(job.kind)
    if await asyncio.to_thread(deps.scheduler.has_scheduled, kind, job.job_id):
        logger.info(
            "Next %s already scheduled, not rescheduling from job_id=%s", kind, job.job_id
        )
        return None
    return await deps.scheduler.schedule_async(kind, {}, RECURRING_INTERVALS[kind])


def build_maintenance_handlers(deps: MaintenanceDeps) -> dict[JobKind, JobHandler]:
    """Build the cleanup_failed, cleanup_temp and health_check handlers."""

    async def cleanup_failed(job: JobRecord) -> HandlerResult:
        try:
            cancelled = await asyncio.to_thread(
                cleanup_failed_recordings,
                deps.recordings,
                deps.clock(),
                deps.failed_max_age_seconds,
            )
        except Exception as e:
            logger.exception("cleanup_failed sweep failed")
            return HandlerResult.failure(ErrorKind.INTERNAL, f"cleanup_failed: {e}")
        await _reschedule(deps, job)
        return HandlerResult.success(cancelled=cancelled)

    async def cleanup_temp(job: JobRecord) -> HandlerResult:
        try:
            referenced = await asyncio.to_thread(deps.recordings.active_file_paths)
            report = await asyncio.to_thread(
                cleanup_temp_files, deps.temp_dir, referenced, deps.temp_max_age_seconds
            )
        except Exception as e:
            logger.exception("cleanup_temp sweep failed")
            return HandlerResult.failure(ErrorKind.INTERNAL, f"cleanup_temp: {e}")
        await _reschedule(deps, job)
        return HandlerResult.success(
            scanned=report.scanned, deleted=report.deleted, errors=len(report.errors)
        )

    async def health_check(job: JobRecord) -> HandlerResult:
        try:
            sample = await asyncio.to_thread(deps.sampler)
            await deps.alerting.check_system_health(sample)
        except Exception as e:
            logger.exception("health_check failed")
            return HandlerResult.failure(ErrorKind.INTERNAL, f"health_check: {e}")
        logger.info(
            "health_check: cpu=%.1f%%, memory=%.1f%%, disk=%.1f%%, load=%.2f",
            sample.cpu_percent,
            sample.memory_percent,
            sample.disk_percent,
            sample.load_average,
        )
        await _reschedule(deps, job)
        return HandlerResult.success(**sample.model_dump())

    return {
        JobKind.CLEANUP_FAILED: cleanup_failed,
        JobKind.CLEANUP_TEMP: cleanup_temp,
        JobKind.HEALTH_CHECK: health_check,
    }
