"""
Models Unit Tests
=================
Provenance rules on Violation and the camelCase wire form.
"""
import pytest
from pydantic import ValidationError

from soc2_agent.models import (
    DetectionMethod,
    Fix,
    ScanCost,
    Severity,
    TrustLevel,
    Violation,
)

from conftest import make_violation


def _violation(**overrides):
    data = dict(
        control_id="CC6.7",
        severity=Severity.HIGH,
        description="Hardcoded secret",
        file_path="settings.py",
        line_number=3,
        pattern_reasoning="regex hit",
    )
    data.update(overrides)
    return Violation(**data)


class TestProvenance:

    def test_pattern_violation(self):
        v = _violation()
        assert v.detection_method == DetectionMethod.PATTERN
        assert v.confidence_score is None

    def test_pattern_with_confidence_rejected(self):
        with pytest.raises(ValidationError):
            _violation(confidence_score=80)

    def test_pattern_without_reasoning_rejected(self):
        with pytest.raises(ValidationError):
            _violation(pattern_reasoning=None)

    def test_semantic_needs_confidence(self):
        with pytest.raises(ValidationError):
            _violation(detection_method="semantic", pattern_reasoning=None, semantic_reasoning="model")

    def test_semantic_rejects_pattern_reasoning(self):
        with pytest.raises(ValidationError):
            _violation(detection_method="semantic", semantic_reasoning="model", confidence_score=70)

    def test_hybrid_needs_both_reasonings(self):
        with pytest.raises(ValidationError):
            _violation(detection_method="hybrid", confidence_score=70)
        v = _violation(detection_method="hybrid", confidence_score=70, semantic_reasoning="model")
        assert v.detection_method == DetectionMethod.HYBRID

    @pytest.mark.parametrize("score", [-1, 101])
    def test_confidence_range(self, score):
        with pytest.raises(ValidationError):
            make_violation(method=DetectionMethod.SEMANTIC, confidence=score)

    def test_unknown_control_rejected(self):
        with pytest.raises(ValidationError):
            _violation(control_id="CC9.9")

    def test_line_numbers_are_one_based(self):
        with pytest.raises(ValidationError):
            _violation(line_number=0)


class TestWireForm:

    def test_violation_dumps_camel_case(self):
        data = _violation(id="v0").model_dump(mode="json", by_alias=True)
        assert data["controlId"] == "CC6.7"
        assert data["lineNumber"] == 3
        assert data["detectionMethod"] == "pattern"
        assert data["patternReasoning"] == "regex hit"
        assert "detectedAt" in data

    def test_violation_accepts_camel_case(self):
        v = Violation.model_validate(
            {
                "controlId": "A1.2",
                "severity": "low",
                "description": "no retry",
                "filePath": "client.py",
                "lineNumber": 9,
                "detectionMethod": "semantic",
                "confidenceScore": 55,
                "semanticReasoning": "model",
            }
        )
        assert v.control_id == "A1.2"
        assert v.severity == Severity.LOW

    def test_fix_defaults_to_review(self):
        fix = Fix(violation_id="v0", original_code="a", fixed_code="b", explanation="c")
        assert fix.trust_level == TrustLevel.REVIEW
        data = fix.model_dump(mode="json", by_alias=True)
        assert data["trustLevel"] == "review"
        assert data["gitCommitSha"] is None

    def test_scan_cost_wire_names(self):
        data = ScanCost(total_cost_usd=0.5).model_dump(by_alias=True)
        assert data["totalCostUsd"] == 0.5
        assert data["cacheReadTokens"] == 0
