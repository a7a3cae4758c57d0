"""SuaTalk Analysis - Pydantic models for job payloads and collaborator data.

Every job kind has a payload model; schedule() validates against it so a
malformed payload is rejected before anything is persisted.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from analysis.errors import InvalidPayload


class JobKind(StrEnum):
    """Closed set of job kinds the scheduler can dispatch."""

    ANALYZE_AUDIO = "analyze_audio"
    CLEANUP_FAILED = "cleanup_failed"
    CLEANUP_TEMP = "cleanup_temp"
    HEALTH_CHECK = "health_check"


# --- Job Payloads ---


class AnalyzeAudioPayload(BaseModel):
    """Payload for analyze_audio jobs."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    recording_id: str = Field(
        ...,
        min_length=1,
        alias="recordingId",
        description="ID of the recording to classify",
    )


class MaintenancePayload(BaseModel):
    """Maintenance sweeps take no arguments."""

    model_config = ConfigDict(extra="forbid")


PAYLOAD_MODELS: dict[JobKind, type[BaseModel]] = {
    JobKind.ANALYZE_AUDIO: AnalyzeAudioPayload,
    JobKind.CLEANUP_FAILED: MaintenancePayload,
    JobKind.CLEANUP_TEMP: MaintenancePayload,
    JobKind.HEALTH_CHECK: MaintenancePayload,
}


def validate_payload(kind: JobKind | str, payload: dict[str, Any] | None) -> BaseModel:
    """Validate a payload against its kind's model.

    Args:
        kind: Job kind (enum or its string value).
        payload: Raw payload mapping.

    Returns:
        The parsed payload model.

    Raises:
        InvalidPayload: If the kind is unknown or the payload does not match.
    """
    try:
        job_kind = JobKind(kind)
    except ValueError as e:
        raise InvalidPayload(f"Unknown job kind: {kind!r}") from e

    if payload is not None and not isinstance(payload, dict):
        raise InvalidPayload(f"Payload for {job_kind} must be an object")

    model = PAYLOAD_MODELS[job_kind]
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise InvalidPayload(f"Invalid payload for {job_kind}: {e.errors()}") from e


# --- Prediction Service ---


class PredictionResult(BaseModel):
    """Structured response from the prediction service."""

    model_config = ConfigDict(populate_by_name=True)

    predicted_label: str = Field(..., min_length=1, alias="predictedLabel")
    confidence: float = Field(..., ge=0.0, le=1.0)
    per_class_scores: dict[str, float] = Field(default_factory=dict, alias="perClassScores")
    processing_time_ms: float = Field(default=0.0, ge=0.0, alias="processingTimeMs")
    model_version: str | None = Field(default=None, alias="modelVersion")


# --- Health Sampling ---


class HealthSample(BaseModel):
    """Point-in-time system metrics forwarded to the alerting collaborator."""

    model_config = ConfigDict(extra="forbid")

    cpu_percent: float = Field(..., ge=0.0)
    memory_percent: float = Field(..., ge=0.0)
    disk_percent: float = Field(..., ge=0.0)
    load_average: float = Field(default=0.0, ge=0.0)
