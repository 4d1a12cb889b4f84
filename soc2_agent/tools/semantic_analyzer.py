# soc2_agent/tools/semantic_analyzer.py

"""
Semantic (LLM) analysis of one file.

The analyzer renders a control prompt, asks the chat model for a JSON list of
findings and turns the answer into semantic Violations. Every failure mode
(model error, timeout, malformed JSON, budget exhausted) degrades to an empty
result so the pattern findings still reach the host.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from langchain_core.exceptions import OutputParserException
from langchain_core.messages import BaseMessage, HumanMessage
from langchain_core.output_parsers import JsonOutputParser
from pydantic import ValidationError

from soc2_agent import config
from soc2_agent.controls import (
    FILE_ANALYSIS_PROMPT,
    describe_controls,
    get_analysis_prompt,
    is_valid_control_id,
    render_prompt,
)
from soc2_agent.errors import SemanticAnalysisError
from soc2_agent.models import DetectionMethod, Severity, TokenUsage, Violation

from .cost_governor import CostGovernor
from .pattern_detectors import MAX_SNIPPET_LENGTH, redact_secrets, split_lines

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 50

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.S)


@dataclass
class SemanticAnalysis:
    violations: List[Violation] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    skipped_reason: Optional[str] = None


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    # Content blocks (e.g. [{"type": "text", "text": ...}])
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def usage_from_message(message: Any) -> TokenUsage:
    """
    Reads usage_metadata from a chat model response.

    LangChain reports input_tokens including cached tokens; the cached part is
    split out so each token is priced once.
    """
    metadata = getattr(message, "usage_metadata", None) or {}
    details = metadata.get("input_token_details") or {}
    cache_read = int(details.get("cache_read") or 0)
    cache_write = int(details.get("cache_creation") or 0)
    input_tokens = int(metadata.get("input_tokens") or 0)
    return TokenUsage(
        input_tokens=max(0, input_tokens - cache_read - cache_write),
        output_tokens=int(metadata.get("output_tokens") or 0),
        cache_read_tokens=cache_read,
        cache_write_tokens=cache_write,
    )


def parse_findings(text: str) -> List[dict]:
    """
    Extracts the list of finding objects from a model answer.

    Accepts a bare JSON array, an object with a "violations" array or either
    one inside a fenced block. Raises SemanticAnalysisError otherwise.
    """
    text = _THINK_BLOCK.sub("", text or "").strip()
    if not text:
        raise SemanticAnalysisError("empty model response")

    candidates = [text]
    # Prose around the array: retry with the outermost [...] slice
    start, end = text.find("["), text.rfind("]")
    if start != -1 and end > start:
        candidates.append(text[start: end + 1])

    parser = JsonOutputParser()
    error = "response is not JSON"
    for candidate in candidates:
        try:
            parsed = parser.parse(candidate)
        except OutputParserException as e:
            error = f"response is not JSON: {e}"
            continue
        if isinstance(parsed, dict):
            parsed = parsed.get("violations", parsed.get("findings"))
        if isinstance(parsed, list):
            return [item for item in parsed if isinstance(item, dict)]
        error = "response JSON is not a list of findings"
    raise SemanticAnalysisError(error)


def _first(item: dict, *keys):
    for key in keys:
        if item.get(key) not in (None, ""):
            return item[key]
    return None


def _confidence(value) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE


def _severity(value) -> Severity:
    try:
        return Severity(str(value).lower())
    except ValueError:
        return Severity.MEDIUM


class SemanticAnalyzer:
    """LLM-backed analysis, gated and metered by a CostGovernor."""

    def __init__(
        self,
        llm,
        governor: Optional[CostGovernor] = None,
        model_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.llm = llm
        self.governor = governor
        self.model_name = model_name or getattr(llm, "model", None) or type(llm).__name__
        self.timeout = config.SEMANTIC_TIMEOUT_SECONDS if timeout is None else timeout

    def build_prompt(self, code: str, framework, candidates: Iterable[Violation], control_id: Optional[str] = None) -> str:
        if control_id is not None:
            template = get_analysis_prompt(control_id)
            variables = {}
        else:
            template = FILE_ANALYSIS_PROMPT
            variables = {"controls": describe_controls()}
        variables.update(
            {
                "framework": framework,
                "code": redact_secrets(code),
                "violations": list(candidates),
            }
        )
        return render_prompt(template, variables)

    def _to_violations(
        self,
        items: List[dict],
        file_path: str,
        lines: List[str],
        control_id: Optional[str],
    ) -> List[Violation]:
        violations: List[Violation] = []
        for item in items:
            item_control = _first(item, "controlId", "control_id")
            if not is_valid_control_id(item_control):
                logger.warning("Dropping semantic finding with unknown control %r in %s", item_control, file_path)
                continue
            if control_id is not None and item_control != control_id:
                logger.warning("Dropping %s finding from a %s-only analysis of %s", item_control, control_id, file_path)
                continue

            try:
                line_number = int(_first(item, "lineNumber", "line_number", "line"))
            except (TypeError, ValueError):
                logger.warning("Dropping %s finding without a line number in %s", item_control, file_path)
                continue
            if not 1 <= line_number <= len(lines):
                logger.warning(
                    "Dropping %s finding at line %d outside %s (%d lines)",
                    item_control, line_number, file_path, len(lines),
                )
                continue

            description = _first(item, "description", "message")
            if not isinstance(description, str):
                logger.warning("Dropping %s finding without a description in %s", item_control, file_path)
                continue
            reasoning = _first(item, "reasoning", "semanticReasoning", "explanation")
            snippet = _first(item, "codeSnippet", "code_snippet") or lines[line_number - 1].strip()

            try:
                violations.append(
                    Violation(
                        control_id=item_control,
                        severity=_severity(item.get("severity")),
                        description=description,
                        file_path=file_path,
                        line_number=line_number,
                        code_snippet=redact_secrets(str(snippet))[:MAX_SNIPPET_LENGTH],
                        detection_method=DetectionMethod.SEMANTIC,
                        confidence_score=_confidence(_first(item, "confidenceScore", "confidence_score", "confidence")),
                        semantic_reasoning=str(reasoning or description),
                    )
                )
            except ValidationError as e:
                logger.warning("Dropping malformed %s finding in %s: %s", item_control, file_path, e)
        return violations

    async def analyze(
        self,
        file_path: str,
        code: str,
        framework,
        candidates: Optional[List[Violation]] = None,
        control_id: Optional[str] = None,
    ) -> SemanticAnalysis:
        """
        Runs one semantic pass over a file.

        Never raises for model, network or parse problems; unknown control ids
        (UnknownControlError) and task cancellation propagate.
        """
        candidates = candidates or []
        prompt = self.build_prompt(code, framework, candidates, control_id)

        if self.governor is not None and not self.governor.can_dispatch():
            logger.info("Skipping semantic analysis of %s: cost limit reached", file_path)
            return SemanticAnalysis(skipped_reason="cost limit reached")

        logger.debug("Semantic analysis of %s with %s", file_path, self.model_name)
        try:
            response: BaseMessage = await asyncio.wait_for(
                self.llm.ainvoke([HumanMessage(content=prompt)]),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Semantic analysis of %s timed out after %ss", file_path, self.timeout)
            return SemanticAnalysis(skipped_reason="timeout")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Semantic analysis of %s failed: %s", file_path, e)
            return SemanticAnalysis(skipped_reason=f"model error: {e}")

        usage = usage_from_message(response)
        if self.governor is not None:
            self.governor.record_and_check(usage)

        try:
            items = parse_findings(_message_text(response))
        except SemanticAnalysisError as e:
            logger.warning("Could not parse semantic findings for %s: %s", file_path, e)
            return SemanticAnalysis(usage=usage, skipped_reason=f"parse error: {e}")

        violations = self._to_violations(items, file_path, split_lines(code), control_id)
        logger.info(
            "Semantic analysis of %s returned %d finding(s) (%d accepted)",
            file_path, len(items), len(violations),
        )
        return SemanticAnalysis(violations=violations, usage=usage)
