# soc2_agent/models.py

"""
Compliance Models
=================
Pydantic records exchanged between the pipeline stages and the host.

Python attributes are snake_case; ``model_dump(by_alias=True)`` produces the
camelCase wire form (``controlId``, ``detectionMethod``, ...) consumed by the
host process.

Provenance rules enforced on Violation:
    pattern   - pattern_reasoning only, no confidence_score
    semantic  - semantic_reasoning and confidence_score
    hybrid    - both reasonings and confidence_score
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .controls import is_valid_control_id
from .errors import InvalidTransitionError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Framework(str, Enum):
    DJANGO = "django"
    FLASK = "flask"
    EXPRESS = "express"
    NEXTJS = "nextjs"
    REACT = "react"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


class DetectionMethod(str, Enum):
    PATTERN = "pattern"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class TrustLevel(str, Enum):
    AUTO = "auto"
    REVIEW = "review"
    MANUAL = "manual"


class ScanMode(str, Enum):
    REGEX_ONLY = "regex_only"
    SMART = "smart"
    ANALYZE_ALL = "analyze_all"


class AgentStep(str, Enum):
    PARSE = "parse"
    ANALYZED = "analyzed"
    FIXES_GENERATED = "fixes_generated"
    VALIDATED = "validated"


STEP_ORDER = [
    AgentStep.PARSE,
    AgentStep.ANALYZED,
    AgentStep.FIXES_GENERATED,
    AgentStep.VALIDATED,
]


def advance_step(current, target) -> AgentStep:
    """
    The only way the pipeline moves between steps.

    A step may advance to its immediate successor and nothing else; staying
    put, regressing or skipping raises InvalidTransitionError.
    """
    current, target = AgentStep(current), AgentStep(target)
    if STEP_ORDER.index(target) != STEP_ORDER.index(current) + 1:
        raise InvalidTransitionError(
            f"Illegal step transition {current.value} -> {target.value}"
        )
    return target


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class Violation(_WireModel):
    id: Optional[str] = None
    control_id: str
    severity: Severity
    description: str
    file_path: str
    line_number: int = Field(ge=1)
    code_snippet: str = ""
    detection_method: DetectionMethod = DetectionMethod.PATTERN
    confidence_score: Optional[int] = Field(default=None, ge=0, le=100)
    pattern_reasoning: Optional[str] = None
    semantic_reasoning: Optional[str] = None
    detected_at: str = Field(default_factory=utc_now_iso)

    @field_validator("control_id")
    @classmethod
    def _known_control(cls, value: str) -> str:
        if not is_valid_control_id(value):
            raise ValueError(f"Unknown control: {value}")
        return value

    @model_validator(mode="after")
    def _provenance_is_consistent(self):
        method = self.detection_method
        if method == DetectionMethod.PATTERN:
            if self.confidence_score is not None:
                raise ValueError("pattern violations carry no confidence score")
            if self.semantic_reasoning is not None:
                raise ValueError("pattern violations carry no semantic reasoning")
            if not self.pattern_reasoning:
                raise ValueError("pattern violations need pattern reasoning")
        elif method == DetectionMethod.SEMANTIC:
            if self.confidence_score is None:
                raise ValueError("semantic violations need a confidence score")
            if self.pattern_reasoning is not None:
                raise ValueError("semantic violations carry no pattern reasoning")
            if not self.semantic_reasoning:
                raise ValueError("semantic violations need semantic reasoning")
        else:
            if self.confidence_score is None:
                raise ValueError("hybrid violations need a confidence score")
            if not (self.pattern_reasoning and self.semantic_reasoning):
                raise ValueError("hybrid violations need both reasonings")
        return self


class Fix(_WireModel):
    violation_id: Optional[str] = None
    original_code: str
    fixed_code: str
    explanation: str
    trust_level: TrustLevel = TrustLevel.REVIEW
    applied_at: Optional[str] = None
    git_commit_sha: Optional[str] = None


class TokenUsage(_WireModel):
    """Token counts reported by one model invocation."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    cache_write_tokens: int = Field(default=0, ge=0)

    @property
    def is_empty(self) -> bool:
        return not (
            self.input_tokens
            or self.output_tokens
            or self.cache_read_tokens
            or self.cache_write_tokens
        )


class ScanCost(_WireModel):
    """Accumulated spend for one scan (owned by the CostGovernor)."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    cache_write_tokens: int = Field(default=0, ge=0)
    total_cost_usd: float = Field(default=0.0, ge=0.0)


class CostLimitEvent(_WireModel):
    """Payload of the "cost limit reached" signal sent to the host."""

    current_cost_usd: float
    cost_limit_usd: float
    files_analyzed: int
    total_files: int


class PipelineResult(_WireModel):
    state: dict
    success: bool
    violations: list[Violation] = Field(default_factory=list)
    fixes: list[Fix] = Field(default_factory=list)
    error: Optional[str] = None
