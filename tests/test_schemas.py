"""Tests for payload and prediction schemas."""

import pytest
from pydantic import ValidationError

from analysis.errors import InvalidPayload
from analysis.schemas import (
    AnalyzeAudioPayload,
    MaintenancePayload,
    PredictionResult,
    validate_payload,
)


class TestValidatePayload:
    def test_camel_case_recording_id(self):
        parsed = validate_payload("analyze_audio", {"recordingId": "rec-1"})
        assert isinstance(parsed, AnalyzeAudioPayload)
        assert parsed.recording_id == "rec-1"

    def test_snake_case_recording_id(self):
        assert validate_payload("analyze_audio", {"recording_id": "rec-1"}).recording_id == "rec-1"

    @pytest.mark.parametrize(
        "payload",
        [{}, None, {"recordingId": ""}, {"recordingId": "r", "extra": 1}, ["rec-1"]],
    )
    def test_bad_analyze_payloads(self, payload):
        with pytest.raises(InvalidPayload) as exc_info:
            validate_payload("analyze_audio", payload)
        assert str(exc_info.value).startswith("invalid_payload:")

    def test_maintenance_payload_empty(self):
        assert isinstance(validate_payload("cleanup_temp", None), MaintenancePayload)

    def test_unknown_kind(self):
        with pytest.raises(InvalidPayload):
            validate_payload("reindex", {})


class TestPredictionResult:
    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            PredictionResult.model_validate({"predictedLabel": "hungry", "confidence": -0.1})

    def test_optional_fields_default(self):
        result = PredictionResult.model_validate({"predictedLabel": "hungry", "confidence": 0.5})
        assert result.per_class_scores == {}
        assert result.model_version is None
