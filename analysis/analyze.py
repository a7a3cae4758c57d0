"""SuaTalk Analysis - analyze_audio handler.

Classifies one recording through the prediction service.

Flow:
1. Load the recording; a missing recording is a terminal failure.
2. Idempotency guard: processing, completed or cancelled -> no-op success.
3. pending|failed -> processing (compare-and-set) before calling outward.
4. Check service availability, then predict.
5. Success: store the prediction and duration, -> completed.
6. Failure: store ml_error and last_retry_at, retry_count++, -> failed, and
   if retries remain schedule a fresh analyze_audio job after the backoff.

The handler arranges its own retry, so failures are returned with
retry=False and the current job is closed as failed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

from analysis.backoff import can_retry, next_retry_count, retry_delay_seconds
from analysis.errors import AnalysisError, ErrorKind, RecordingNotFound, ServiceUnavailable
from analysis.lifecycle import SETTLED_OR_IN_FLIGHT
from analysis.models import utc_now
from analysis.recording_store import RecordingStore
from analysis.results import HandlerResult, JobHandler
from analysis.schemas import AnalyzeAudioPayload, JobKind, PredictionResult

if TYPE_CHECKING:
    from analysis.job_store import JobRecord
    from analysis.scheduler import Scheduler

logger = logging.getLogger(__name__)


class PredictionService(Protocol):
    async def is_available(self) -> bool: ...

    async def predict(self, file_reference: str) -> PredictionResult: ...


@dataclass
class AnalysisHandlerDeps:
    """Collaborators of the analyze_audio handler."""

    recordings: RecordingStore
    prediction_client: PredictionService
    scheduler: Scheduler
    timer: Callable[[], float] = field(default=time.perf_counter)
    clock: Callable[[], datetime] = utc_now


def build_analyze_audio_handler(deps: AnalysisHandlerDeps) -> JobHandler:
    """Build the analyze_audio handler bound to deps."""

    async def record_failure(recording_id: str, kind: ErrorKind, message: str) -> HandlerResult:
        previous = await asyncio.to_thread(
            deps.recordings.mark_failed, recording_id, message, deps.clock()
        )
        if previous is None:
            logger.warning(
                "Recording left processing before failure was recorded: recording_id=%s",
                recording_id,
            )
            return HandlerResult.failure(kind, message, retry=False)

        retry_count = next_retry_count(previous)
        if can_retry(previous):
            delay = retry_delay_seconds(previous)
            job_id = await deps.scheduler.schedule_async(
                JobKind.ANALYZE_AUDIO, {"recordingId": recording_id}, delay
            )
            logger.warning(
                "Analysis failed, retry scheduled: recording_id=%s, error=%s, "
                "retry_count=%d, retry_in=%ds, job_id=%s",
                recording_id,
                kind,
                retry_count,
                delay,
                job_id,
            )
        else:
            logger.error(
                "Analysis failed, retries exhausted: recording_id=%s, error=%s, retry_count=%d",
                recording_id,
                kind,
                retry_count,
            )
        return HandlerResult.failure(kind, message, retry=False)

    async def handle(job: JobRecord) -> HandlerResult:
        try:
            payload = AnalyzeAudioPayload.model_validate(job.payload)
        except ValidationError as e:
            return HandlerResult.failure(ErrorKind.INVALID_PAYLOAD, str(e))
        recording_id = payload.recording_id

        recording = await asyncio.to_thread(deps.recordings.get, recording_id)
        if recording is None:
            error = RecordingNotFound(recording_id)
            logger.warning("Dropping analysis job %s: %s", job.job_id, error.message)
            return HandlerResult.failure(error.kind, error.message)

        if recording.analysis_status in SETTLED_OR_IN_FLIGHT:
            logger.info(
                "Analysis skipped: recording_id=%s already %s",
                recording_id,
                recording.analysis_status,
            )
            return HandlerResult.skipped(f"recording is {recording.analysis_status}")

        if not await asyncio.to_thread(
            deps.recordings.mark_processing, recording_id, deps.clock()
        ):
            logger.info("Analysis skipped: recording_id=%s claimed concurrently", recording_id)
            return HandlerResult.skipped("recording claimed concurrently")

        start = deps.timer()
        try:
            if not await deps.prediction_client.is_available():
                raise ServiceUnavailable("ML service is not available")
            result = await deps.prediction_client.predict(recording.file_path)
        except AnalysisError as e:
            return await record_failure(recording_id, e.kind, e.message)
        except Exception as e:
            logger.exception("Unexpected analysis error: recording_id=%s", recording_id)
            message = str(e) or type(e).__name__
            return await record_failure(recording_id, ErrorKind.INTERNAL, message)

        processing_time_ms = int((deps.timer() - start) * 1000)
        stored = await asyncio.to_thread(
            deps.recordings.mark_completed, recording_id, result, processing_time_ms, deps.clock()
        )
        if not stored:
            logger.warning(
                "Recording left processing before result was stored: recording_id=%s",
                recording_id,
            )
            return HandlerResult.skipped("recording left processing")

        logger.info(
            "Analysis completed: recording_id=%s, label=%s, confidence=%.3f, processing_time_ms=%d",
            recording_id,
            result.predicted_label,
            result.confidence,
            processing_time_ms,
        )
        return HandlerResult.success(
            recording_id=recording_id,
            predicted_label=result.predicted_label,
            confidence=result.confidence,
            processing_time_ms=processing_time_ms,
        )

    return handle


def schedule_audio_analysis(scheduler: Scheduler, recording_id: str, delay: float = 0) -> str:
    """Queue analysis for a freshly uploaded recording."""
    return scheduler.schedule(JobKind.ANALYZE_AUDIO, {"recordingId": recording_id}, delay)


def cancel_audio_analysis(scheduler: Scheduler, recording_id: str) -> int:
    """Drop not-yet-dispatched analysis jobs for a recording being deleted."""
    return scheduler.cancel_pending(recording_id)
