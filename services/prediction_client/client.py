"""SuaTalk Analysis - Prediction service client.

Async HTTP client for the external cry-classification service.

Endpoints:
- GET  /health  -> {"status": "healthy", ...}
- GET  /ready   -> {"ready": true, ...}
- POST /predict (multipart field "audio") -> PredictionResult JSON

Every call goes through a circuit breaker: after 5 consecutive failures the
circuit opens and calls fail fast as `unavailable` for 60s, then a trial
(half-open) period closes it again after 2 successes.

Failure reasons:
- unavailable: connection error, 502/503/504, or circuit open
- timeout: call exceeded its deadline
- invalid_input: missing file, unsupported extension, or 4xx from the service
- internal: any other error, including malformed responses
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from analysis.config import (
    ALLOWED_AUDIO_EXTENSIONS,
    CIRCUIT_FAILURE_THRESHOLD,
    CIRCUIT_RESET_TIMEOUT_SECONDS,
    CIRCUIT_SUCCESS_THRESHOLD,
    ML_PREDICT_TIMEOUT_SECONDS,
    ML_SERVICE_TIMEOUT_SECONDS,
    ML_SERVICE_URL,
)
from analysis.errors import AnalysisError, ErrorKind
from analysis.schemas import PredictionResult

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".flac": "audio/flac",
}

_UNAVAILABLE_STATUSES = frozenset({502, 503, 504})


class PredictionFailureReason(StrEnum):
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid_input"
    INTERNAL = "internal"


# invalid_input is retried like any transient failure (inherited policy)
_REASON_TO_KIND = {
    PredictionFailureReason.UNAVAILABLE: ErrorKind.SERVICE_UNAVAILABLE,
    PredictionFailureReason.TIMEOUT: ErrorKind.TIMEOUT,
    PredictionFailureReason.INVALID_INPUT: ErrorKind.INTERNAL,
    PredictionFailureReason.INTERNAL: ErrorKind.INTERNAL,
}


class PredictionError(AnalysisError):
    """Prediction call failed with a reason code."""

    def __init__(self, reason: PredictionFailureReason, message: str):
        self.reason = reason
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return _REASON_TO_KIND[self.reason]


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker."""

    def __init__(
        self,
        *,
        failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        success_threshold: int = CIRCUIT_SUCCESS_THRESHOLD,
        reset_timeout: float = CIRCUIT_RESET_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_at = 0.0

    def allow_request(self) -> bool:
        """Return True if a call may proceed; moves OPEN -> HALF_OPEN after the timeout."""
        if self.state is CircuitState.OPEN:
            if self._clock() >= self.next_attempt_at:
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                logger.info("Prediction circuit breaker HALF-OPEN, testing service")
                return True
            return False
        return True

    def record_success(self) -> None:
        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
                logger.info("Prediction circuit breaker CLOSED, service restored")
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state is CircuitState.HALF_OPEN or (
            self.state is CircuitState.CLOSED and self.failure_count >= self.failure_threshold
        ):
            self.state = CircuitState.OPEN
            self.success_count = 0
            self.next_attempt_at = self._clock() + self.reset_timeout
            logger.warning(
                "Prediction circuit breaker OPENED after %d failures; retry in %.0fs",
                self.failure_count,
                self.reset_timeout,
            )

    def seconds_until_retry(self) -> float:
        return max(0.0, self.next_attempt_at - self._clock())


class PredictionClient:
    """Client for the prediction service.

    Args:
        base_url: Service root URL.
        timeout: Deadline for health/readiness calls (seconds).
        predict_timeout: Deadline for /predict (seconds).
        breaker: Circuit breaker; a fresh one by default.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str = ML_SERVICE_URL,
        *,
        timeout: float = ML_SERVICE_TIMEOUT_SECONDS,
        predict_timeout: float = ML_PREDICT_TIMEOUT_SECONDS,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.predict_timeout = predict_timeout
        self.breaker = breaker or CircuitBreaker()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> PredictionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Issue a request through the circuit breaker, mapping errors to reasons."""
        if not self.breaker.allow_request():
            raise PredictionError(
                PredictionFailureReason.UNAVAILABLE,
                "Circuit breaker is OPEN. Service unavailable. "
                f"Retry in {int(self.breaker.seconds_until_retry()) + 1} seconds.",
            )

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            self.breaker.record_failure()
            raise PredictionError(
                PredictionFailureReason.TIMEOUT, f"Prediction service timed out: {e}"
            ) from e
        except httpx.TransportError as e:
            self.breaker.record_failure()
            raise PredictionError(
                PredictionFailureReason.UNAVAILABLE, f"Prediction service unreachable: {e}"
            ) from e

        if response.is_success:
            self.breaker.record_success()
            return response

        self.breaker.record_failure()
        logger.error(
            "Prediction service error: method=%s, path=%s, status=%d, circuit=%s",
            method,
            path,
            response.status_code,
            self.breaker.state,
        )
        if response.status_code in _UNAVAILABLE_STATUSES:
            reason = PredictionFailureReason.UNAVAILABLE
        elif 400 <= response.status_code < 500:
            reason = PredictionFailureReason.INVALID_INPUT
        else:
            reason = PredictionFailureReason.INTERNAL
        raise PredictionError(
            reason, f"Prediction service returned HTTP {response.status_code} for {path}"
        )

    async def health_check(self) -> dict[str, Any]:
        response = await self._request("GET", "/health")
        return response.json()

    async def readiness_check(self) -> dict[str, Any]:
        response = await self._request("GET", "/ready")
        return response.json()

    async def is_available(self) -> bool:
        """Return True if the service reports healthy and ready."""
        try:
            health = await self.health_check()
            ready = await self.readiness_check()
        except (PredictionError, ValueError) as e:
            logger.warning("Prediction service availability check failed: %s", e)
            return False
        return health.get("status") == "healthy" and ready.get("ready") is True

    async def predict(self, file_reference: str) -> PredictionResult:
        """Classify an audio file.

        Args:
            file_reference: Local path of the recording.

        Returns:
            Parsed prediction.

        Raises:
            PredictionError: With the failure reason.
        """
        path = Path(file_reference)
        ext = path.suffix.lower()
        if ext not in ALLOWED_AUDIO_EXTENSIONS:
            raise PredictionError(
                PredictionFailureReason.INVALID_INPUT,
                f"Unsupported audio format: {ext or '(none)'}. "
                f"Allowed: {', '.join(ALLOWED_AUDIO_EXTENSIONS)}",
            )
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise PredictionError(
                PredictionFailureReason.INVALID_INPUT, f"Audio file not found: {file_reference}"
            ) from e
        except OSError as e:
            raise PredictionError(
                PredictionFailureReason.INTERNAL, f"Cannot read audio file {file_reference}: {e}"
            ) from e

        response = await self._request(
            "POST",
            "/predict",
            files={"audio": (path.name, data, CONTENT_TYPES[ext])},
            timeout=self.predict_timeout,
        )
        try:
            return PredictionResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PredictionError(
                PredictionFailureReason.INTERNAL, f"Malformed prediction response: {e}"
            ) from e
