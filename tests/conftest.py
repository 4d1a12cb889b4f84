"""
Shared fixtures: fake chat models and violation builders.

No Ollama server is needed; models are langchain_core fakes.
"""
from typing import Optional

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage

from soc2_agent.models import DetectionMethod, Severity, Violation
from soc2_agent.tools.cost_governor import CostGovernor, ModelPricing


def ai_message(
    content: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_read: int = 0,
    cache_creation: int = 0,
) -> AIMessage:
    """AIMessage carrying usage_metadata the way provider integrations report it."""
    return AIMessage(
        content=content,
        usage_metadata={
            "input_tokens": input_tokens + cache_read + cache_creation,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + cache_read + cache_creation + output_tokens,
            "input_token_details": {"cache_read": cache_read, "cache_creation": cache_creation},
        },
    )


def fake_llm(*responses) -> GenericFakeChatModel:
    return GenericFakeChatModel(messages=iter(responses))


def make_violation(
    control_id: str = "CC6.7",
    line_number: int = 1,
    method: DetectionMethod = DetectionMethod.PATTERN,
    severity: Severity = Severity.HIGH,
    file_path: str = "app/views.py",
    description: str = "finding",
    confidence: Optional[int] = None,
    snippet: str = "",
    reasoning: str = "because",
    violation_id: Optional[str] = None,
) -> Violation:
    kwargs = {}
    if method == DetectionMethod.PATTERN:
        kwargs["pattern_reasoning"] = reasoning
    elif method == DetectionMethod.SEMANTIC:
        kwargs["semantic_reasoning"] = reasoning
        kwargs["confidence_score"] = 80 if confidence is None else confidence
    else:
        kwargs["pattern_reasoning"] = reasoning
        kwargs["semantic_reasoning"] = reasoning
        kwargs["confidence_score"] = 80 if confidence is None else confidence
    return Violation(
        id=violation_id,
        control_id=control_id,
        severity=severity,
        description=description,
        file_path=file_path,
        line_number=line_number,
        code_snippet=snippet,
        detection_method=method,
        **kwargs,
    )


# $1 per million tokens for every counter keeps cost arithmetic obvious
FLAT_PRICING = ModelPricing(input=1.0, output=1.0, cache_read=1.0, cache_write=1.0)


@pytest.fixture
def governor():
    return CostGovernor(cost_limit_usd=1.0, pricing=FLAT_PRICING)
