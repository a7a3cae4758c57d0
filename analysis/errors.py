"""SuaTalk Analysis - Error taxonomy.

Error kinds:
- SERVICE_UNAVAILABLE: prediction service down or circuit open (retryable)
- TIMEOUT: prediction call exceeded its deadline (retryable)
- INVALID_PAYLOAD: job payload does not match its kind (rejected at schedule time)
- RECORDING_NOT_FOUND: job subject is gone (not retryable, job dropped)
- INTERNAL: anything else (retryable under the bounded policy)

Losing a lease race is not an error; the scheduler just skips the job.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Closed set of job failure kinds."""

    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    INVALID_PAYLOAD = "invalid_payload"
    RECORDING_NOT_FOUND = "recording_not_found"
    INTERNAL = "internal"

    @property
    def retryable(self) -> bool:
        return is_retryable(self)


def is_retryable(kind: ErrorKind) -> bool:
    """Decide whether a failure kind may be retried.

    Exhaustive over ErrorKind; adding a kind without deciding here fails loudly.
    """
    match kind:
        case ErrorKind.SERVICE_UNAVAILABLE | ErrorKind.TIMEOUT | ErrorKind.INTERNAL:
            return True
        case ErrorKind.INVALID_PAYLOAD | ErrorKind.RECORDING_NOT_FOUND:
            return False
    raise ValueError(f"Unhandled error kind: {kind!r}")


class AnalysisError(Exception):
    """Base exception carrying an ErrorKind."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"{self.kind.value}: {message}")


class InvalidPayload(AnalysisError):
    """Payload does not match the expected shape for its job kind."""

    kind = ErrorKind.INVALID_PAYLOAD


class RecordingNotFound(AnalysisError):
    kind = ErrorKind.RECORDING_NOT_FOUND

    def __init__(self, recording_id: str):
        self.recording_id = recording_id
        super().__init__(f"Audio recording not found: {recording_id}")


class ServiceUnavailable(AnalysisError):
    kind = ErrorKind.SERVICE_UNAVAILABLE


class PredictionTimeout(AnalysisError):
    kind = ErrorKind.TIMEOUT


class MissingHandlerError(RuntimeError):
    """Raised when the scheduler starts without a handler for every job kind."""

    def __init__(self, kinds: list[str]):
        self.kinds = kinds
        super().__init__(f"No handler registered for job kinds: {', '.join(kinds)}")

