# soc2_agent/graph/nodes.py

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from langchain_core.messages import AIMessage

from soc2_agent import config
from soc2_agent.errors import FixSynthesisError
from soc2_agent.models import AgentStep, Fix, Violation, advance_step, utc_now_iso
from soc2_agent.tools.file_selector import should_analyze_semantically
from soc2_agent.tools.fix_synthesizer import FixSynthesizer
from soc2_agent.tools.framework_classifier import classify_framework
from soc2_agent.tools.merger import merge_violations
from soc2_agent.tools.pattern_detectors import detect_violations
from soc2_agent.tools.semantic_analyzer import SemanticAnalyzer

from .state import ComplianceAgentState

logger = logging.getLogger(__name__)

ERROR_MISSING_PATH = "file path is empty or missing"
ERROR_EMPTY_CODE = "code is empty or whitespace-only"


# --- 1. PARSE (input validation + framework classification) ---


def parse_node(state: ComplianceAgentState) -> ComplianceAgentState:
    """
    Rejects unusable input and fills in the framework.

    A rejected run keeps current_step=parse and ends with empty results.
    """
    file_path = state.get("file_path")
    code = state.get("code")

    error = None
    if not isinstance(file_path, str) or not file_path.strip():
        error = ERROR_MISSING_PATH
    elif not isinstance(code, str) or not code.strip():
        error = ERROR_EMPTY_CODE

    if error:
        logger.warning("Rejected %r: %s", file_path, error)
        return {
            "error": error,
            "violations": [],
            "fixes": [],
            "messages": [AIMessage(content=f"Input rejected: {error}")],
        }

    framework = classify_framework(file_path, state.get("framework"), code)
    logger.debug("Parsed %s (%s)", file_path, framework.value)
    return {
        "framework": framework.value,
        "error": None,
        "timestamp": state.get("timestamp") or utc_now_iso(),
        "messages": [AIMessage(content=f"Parsed {file_path} as {framework.value}.")],
    }


# --- 2. ANALYZE (pattern stage, optional semantic stage, merge) ---


def create_analyze_node(
    analyzer: Optional[SemanticAnalyzer] = None,
    scan_mode: Optional[str] = None,
    line_tolerance: Optional[int] = None,
) -> Callable:
    """
    Factory for the analyze node.

    Without an analyzer (or when the file selector or cost governor says
    no) only the pattern stage runs.
    """
    scan_mode = scan_mode or config.SCAN_MODE

    async def analyze_node(state: ComplianceAgentState) -> ComplianceAgentState:
        file_path, code, framework = state["file_path"], state["code"], state["framework"]

        pattern_violations = detect_violations(code, file_path, framework)
        semantic_violations = []

        if analyzer is not None and should_analyze_semantically(file_path, code, scan_mode):
            governor = analyzer.governor
            if governor is None or governor.can_dispatch():
                analysis = await analyzer.analyze(file_path, code, framework, pattern_violations)
                semantic_violations = analysis.violations
            else:
                logger.info("Semantic stage skipped for %s: cost limit reached", file_path)

        merged = merge_violations(pattern_violations, semantic_violations, line_tolerance)
        violations = [v.model_copy(update={"id": f"v{i}"}) for i, v in enumerate(merged)]

        summary = (
            f"Analyzed {file_path}: {len(pattern_violations)} pattern, "
            f"{len(semantic_violations)} semantic, {len(violations)} after merge."
        )
        logger.info(summary)
        return {
            "violations": violations,
            "current_step": advance_step(state["current_step"], AgentStep.ANALYZED).value,
            "messages": [AIMessage(content=summary)],
        }

    return analyze_node


# --- 3. GENERATE FIXES (one outcome per violation) ---


@dataclass
class FixOutcome:
    violation_id: Optional[str]
    fix: Optional[Fix] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.fix is not None


async def synthesize_fix(
    synthesizer: FixSynthesizer,
    violation: Violation,
    framework,
    use_llm_fixes: bool = False,
) -> FixOutcome:
    """Generated fix first when enabled, template fix as the fallback."""
    if use_llm_fixes and synthesizer.llm is not None:
        try:
            return FixOutcome(violation.id, fix=await synthesizer.generate(violation, framework))
        except FixSynthesisError as e:
            logger.warning("Generated fix for %s failed, using template: %s", violation.id, e)
    try:
        return FixOutcome(violation.id, fix=synthesizer.synthesize(violation, framework))
    except FixSynthesisError as e:
        return FixOutcome(violation.id, error=str(e))


def create_fix_node(synthesizer: Optional[FixSynthesizer] = None, use_llm_fixes: bool = False) -> Callable:
    synthesizer = synthesizer or FixSynthesizer()

    async def generate_fixes_node(state: ComplianceAgentState) -> ComplianceAgentState:
        fixes = []
        for violation in state["violations"]:
            outcome = await synthesize_fix(synthesizer, violation, state["framework"], use_llm_fixes)
            if outcome.ok:
                fixes.append(outcome.fix)
            else:
                logger.warning("No fix for %s (%s): %s", outcome.violation_id, violation.control_id, outcome.error)

        return {
            "fixes": fixes,
            "current_step": advance_step(state["current_step"], AgentStep.FIXES_GENERATED).value,
            "messages": [AIMessage(content=f"Generated {len(fixes)} fix(es) for {len(state['violations'])} violation(s).")],
        }

    return generate_fixes_node


# --- 4. VALIDATE (fix/violation consistency) ---


def validate_node(state: ComplianceAgentState) -> ComplianceAgentState:
    """Drops fixes that reference an unknown violation or repeat one already fixed."""
    violation_ids = {v.id for v in state["violations"]}
    seen = set()
    fixes = []
    for fix in state["fixes"]:
        if fix.violation_id not in violation_ids:
            logger.warning("Dropping fix for unknown violation %r", fix.violation_id)
            continue
        if fix.violation_id in seen:
            logger.warning("Dropping duplicate fix for %s", fix.violation_id)
            continue
        seen.add(fix.violation_id)
        fixes.append(fix)

    dropped = len(state["fixes"]) - len(fixes)
    return {
        "fixes": fixes,
        "current_step": advance_step(state["current_step"], AgentStep.VALIDATED).value,
        "messages": [AIMessage(content=f"Validated {len(fixes)} fix(es); dropped {dropped}.")],
    }
