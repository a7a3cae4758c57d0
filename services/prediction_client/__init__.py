"""Prediction service client package."""

from services.prediction_client.client import (
    CircuitBreaker,
    CircuitState,
    PredictionClient,
    PredictionError,
    PredictionFailureReason,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "PredictionClient",
    "PredictionError",
    "PredictionFailureReason",
]
