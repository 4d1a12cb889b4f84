# soc2_agent/tools/merger.py

import logging
from typing import List, Optional

from soc2_agent import config
from soc2_agent.models import DetectionMethod, Violation

logger = logging.getLogger(__name__)


def _hybrid(pattern: Violation, semantic: Violation) -> Violation:
    reasoning = pattern.pattern_reasoning or pattern.description
    if pattern.line_number != semantic.line_number:
        reasoning = (
            f"{reasoning} (pattern at line {pattern.line_number}, "
            f"semantic at line {semantic.line_number})"
        )
    severity = max(pattern.severity, semantic.severity, key=lambda s: s.rank)
    return pattern.model_copy(
        update={
            "severity": severity,
            "description": semantic.description or pattern.description,
            "detection_method": DetectionMethod.HYBRID,
            "confidence_score": semantic.confidence_score,
            "pattern_reasoning": reasoning,
            "semantic_reasoning": semantic.semantic_reasoning or semantic.description,
        }
    )


def _already_merged(violations: List[Violation], semantic: Violation, tolerance: int) -> bool:
    """True when a hybrid from an earlier merge already carries this semantic finding."""
    return any(
        v.detection_method == DetectionMethod.HYBRID
        and v.file_path == semantic.file_path
        and v.control_id == semantic.control_id
        and v.semantic_reasoning == (semantic.semantic_reasoning or semantic.description)
        and abs(v.line_number - semantic.line_number) <= tolerance
        for v in violations
    )


def merge_violations(
    pattern_violations: List[Violation],
    semantic_violations: List[Violation],
    line_tolerance: Optional[int] = None,
) -> List[Violation]:
    """
    Folds semantic findings into the pattern findings they confirm.

    A semantic violation matches the closest unmatched pattern violation in
    the same file with the same control and at most line_tolerance lines
    away. A match becomes one hybrid violation at the pattern's location.
    The result keeps pattern order (hybrids in place of their pattern
    violation), followed by the unmatched semantic violations. Violations
    that are already hybrid pass through untouched.
    """
    tolerance = config.LINE_TOLERANCE if line_tolerance is None else line_tolerance

    pattern_violations = list(pattern_violations)
    semantic_violations = list(semantic_violations)
    hybrids = {}
    semantic_matched = [False] * len(semantic_violations)

    for s_idx, semantic in enumerate(semantic_violations):
        if semantic.detection_method != DetectionMethod.SEMANTIC:
            continue
        if _already_merged(pattern_violations, semantic, tolerance):
            semantic_matched[s_idx] = True
            continue
        best_idx, best_distance = None, tolerance + 1
        for p_idx, pattern in enumerate(pattern_violations):
            if p_idx in hybrids or pattern.detection_method != DetectionMethod.PATTERN:
                continue
            if pattern.file_path != semantic.file_path or pattern.control_id != semantic.control_id:
                continue
            distance = abs(pattern.line_number - semantic.line_number)
            if distance <= tolerance and distance < best_distance:
                best_idx, best_distance = p_idx, distance
        if best_idx is not None:
            hybrids[best_idx] = _hybrid(pattern_violations[best_idx], semantic)
            semantic_matched[s_idx] = True
            logger.debug(
                "Merged %s at %s:%d into hybrid (%d line(s) apart)",
                semantic.control_id,
                semantic.file_path,
                pattern_violations[best_idx].line_number,
                best_distance,
            )

    merged = [hybrids.get(idx, violation) for idx, violation in enumerate(pattern_violations)]
    merged.extend(v for idx, v in enumerate(semantic_violations) if not semantic_matched[idx])

    logger.info(
        "Merge complete: %d violation(s) (%d hybrid, %d pattern-only, %d semantic-only)",
        len(merged),
        sum(1 for v in merged if v.detection_method == DetectionMethod.HYBRID),
        sum(1 for v in merged if v.detection_method == DetectionMethod.PATTERN),
        sum(1 for v in merged if v.detection_method == DetectionMethod.SEMANTIC),
    )
    return merged
