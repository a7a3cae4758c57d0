"""Shared pytest fixtures for SuaTalk analysis tests.

This module contains common fixtures used across multiple test files,
reducing duplication and improving test maintainability.
"""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from analysis.db import init_db
from analysis.job_store import JobStore
from analysis.recording_store import RecordingStore
from analysis.schemas import PredictionResult


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Creates an isolated SQLite database in a temporary directory.
    The database is cleaned up after the test completes.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def job_store(temp_db):
    _, _, SessionFactory = temp_db
    return JobStore(SessionFactory)


@pytest.fixture
def recordings(temp_db):
    _, _, SessionFactory = temp_db
    return RecordingStore(SessionFactory)


class FakeClock:
    """Settable UTC clock for scheduler tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


class FakePredictionClient:
    """Scripted stand-in for services.prediction_client.PredictionClient."""

    def __init__(self, result=None, error=None, available=True):
        self.result = result or make_prediction()
        self.error = error
        self.available = available
        self.predict_calls: list[str] = []

    async def is_available(self) -> bool:
        return self.available

    async def predict(self, file_reference: str) -> PredictionResult:
        self.predict_calls.append(file_reference)
        if self.error is not None:
            raise self.error
        return self.result


def make_prediction() -> PredictionResult:
    return PredictionResult.model_validate(
        {
            "predictedLabel": "hungry",
            "confidence": 0.91,
            "perClassScores": {"hungry": 0.91, "tired": 0.06, "discomfort": 0.03},
            "processingTimeMs": 140,
            "modelVersion": "cry-v2",
        }
    )


@pytest.fixture
def sample_prediction():
    return make_prediction()


@pytest.fixture
def sample_audio_file():
    """Create a small placeholder WAV file that is removed after the test.

    Yields:
        Path: Path to the temporary WAV file.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "cry.wav"
        path.write_bytes(b"RIFF\x24\x00\x00\x00WAVEfmt ")
        yield path
