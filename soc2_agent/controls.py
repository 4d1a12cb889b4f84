# soc2_agent/controls.py

"""
SOC 2 Control Registry
======================
Static table of the controls the agent checks, with the prompt templates
used for semantic analysis and fix generation.

Templates are plain strings with {name} placeholders. render_prompt() fills
them by string substitution only; JSON examples inside a template keep their
braces because only the supplied keys are replaced.

Analysis placeholders: {framework}, {code}, {violations}
Fix placeholders:      {framework}, {language}, {violationDescription}, {originalCode}
"""
import json
import re
from enum import Enum
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel

from .errors import UnknownControlError

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

_ANALYSIS_RESPONSE_CONTRACT = """Respond with ONLY a JSON array. Each element must have:
{
  "controlId": "{control_id}",
  "severity": "critical|high|medium|low",
  "description": "specific finding",
  "lineNumber": 42,
  "codeSnippet": "the offending line",
  "confidenceScore": 0-100,
  "reasoning": "why this is a violation"
}
Return [] if the code is compliant. Confirm or reject each pattern finding
listed above; do not repeat findings you reject."""


def _analysis_prompt(control_id: str, title: str, requirement: str, patterns: str, questions: str) -> str:
    contract = _ANALYSIS_RESPONSE_CONTRACT.replace("{control_id}", control_id)
    return f"""You are a SOC 2 compliance auditor reviewing source code.

CONTROL: {control_id} - {title}
REQUIREMENT: {requirement}

FRAMEWORK: {{framework}}

VIOLATION PATTERNS:
{patterns}

CODE TO ANALYZE:
```
{{code}}
```

PATTERN FINDINGS (from the fast syntactic scan):
{{violations}}

For each candidate, decide:
{questions}

{contract}"""


def _fix_prompt(control_id: str, title: str, requirements: str, guidance: str) -> str:
    return f"""You are a senior engineer fixing a SOC 2 compliance violation.

CONTROL: {control_id} - {title}
FRAMEWORK: {{framework}}

VIOLATION TO FIX:
Description: {{violationDescription}}
Code snippet:
```{{language}}
{{originalCode}}
```

REQUIREMENTS:
{requirements}

{guidance}

Return the replacement code in a single fenced block:
```{{language}}
[FIXED CODE HERE]
```

EXPLANATION:
[One or two sentences describing the change]"""


SOC2_CONTROLS: Dict[str, Dict[str, str]] = {
    "CC6.1": {
        "name": "Access Control (CC6.1)",
        "description": "Logical access controls must authenticate users and enforce role-based access.",
        "requirement": "Every non-public endpoint requires an authenticated user; sensitive operations check permissions.",
        "analysis_prompt": _analysis_prompt(
            "CC6.1",
            "Logical Access Controls",
            "Every non-public endpoint requires an authenticated user; sensitive operations check permissions.",
            "- View or route handler without an auth decorator or middleware\n"
            "- Admin operation that only checks is_authenticated, not a role\n"
            "- API endpoint with no permission verification\n"
            "- Hardcoded user ids (user_id = 1)",
            "1. Is this a real authentication gap, or a deliberately public endpoint?\n"
            "2. Does the fix need role checks or only authentication?",
        ),
        "fix_prompt": _fix_prompt(
            "CC6.1",
            "Logical Access Controls",
            "1. Require an authenticated user before the handler body runs\n"
            "2. Add a permission or role check when the operation is privileged\n"
            "3. Keep the handler signature unchanged",
            "Django: @login_required / @permission_required\n"
            "Flask: @login_required from flask_login\n"
            "Express: an authenticate middleware argument on the route\n"
            "Next.js: getServerSession or middleware checks",
        ),
    },
    "CC6.7": {
        "name": "Cryptography & Secrets (CC6.7)",
        "description": "Secrets must not be hardcoded and data in transit must be encrypted.",
        "requirement": "No hardcoded passwords, API keys, tokens or credentialed connection strings; outbound calls use TLS.",
        "analysis_prompt": _analysis_prompt(
            "CC6.7",
            "Cryptography & Secrets",
            "No hardcoded passwords, API keys, tokens or credentialed connection strings; outbound calls use TLS.",
            "- API keys, passwords or tokens assigned to string literals\n"
            "- Database URLs with embedded credentials\n"
            "- Outbound calls over http:// instead of https://\n"
            "- Secrets written to config files that are committed",
            "1. What kind of secret is exposed (api_key, password, token, connection_string)?\n"
            "2. What is the blast radius if it leaks?\n"
            "3. Is the transport insecure?",
        ),
        "fix_prompt": _fix_prompt(
            "CC6.7",
            "Cryptography & Secrets",
            "1. Remove the hardcoded secret\n"
            "2. Read it from an environment variable\n"
            "3. Fail loudly when the variable is missing\n"
            "4. Replace http:// with https://",
            "Python: os.getenv('API_KEY') (load .env with python-dotenv)\n"
            "JavaScript: process.env.API_KEY (load .env with dotenv)",
        ),
    },
    "CC7.2": {
        "name": "System Monitoring & Logging (CC7.2)",
        "description": "Sensitive operations must be logged, and logs must not contain secrets.",
        "requirement": "Log data modifications, authentication and privileged actions; never log secrets or unredacted PII.",
        "analysis_prompt": _analysis_prompt(
            "CC7.2",
            "System Monitoring & Logging",
            "Log data modifications, authentication and privileged actions; never log secrets or unredacted PII.",
            "- Create, update or delete without an audit log entry\n"
            "- Login or permission changes without logging\n"
            "- Log statements that include passwords, tokens or PII",
            "1. Is a sensitive operation missing an audit log?\n"
            "2. Is a log statement leaking sensitive data?",
        ),
        "fix_prompt": _fix_prompt(
            "CC7.2",
            "System Monitoring & Logging",
            "1. Add a structured audit log entry for the operation\n"
            "2. Include actor, action and resource; never secrets\n"
            "3. Redact sensitive fields in existing log statements",
            "Python: logging.getLogger(__name__).info(..., extra={...})\n"
            "JavaScript: a structured logger such as winston or pino",
        ),
    },
    "A1.2": {
        "name": "Resilience & Error Handling (A1.2)",
        "description": "Failures of external dependencies must be handled gracefully.",
        "requirement": "External service and database calls need error handling, timeouts and retries with backoff.",
        "analysis_prompt": _analysis_prompt(
            "A1.2",
            "Resilience & Error Handling",
            "External service and database calls need error handling, timeouts and retries with backoff.",
            "- External API call without try/except or try/catch\n"
            "- Database query without exception handling\n"
            "- No timeout on outbound requests\n"
            "- Retry loops without backoff",
            "1. Is this really an external call (network, database, filesystem)?\n"
            "2. Is the failure handled somewhere the pattern scan could not see?",
        ),
        "fix_prompt": _fix_prompt(
            "A1.2",
            "Resilience & Error Handling",
            "1. Wrap the call in error handling\n"
            "2. Add a timeout\n"
            "3. Retry transient failures with exponential backoff\n"
            "4. Log the failure and return a graceful error",
            "Python: try/except around the call, tenacity for retries\n"
            "JavaScript: try/catch with async/await, p-retry for retries",
        ),
    },
}

# One prompt for a whole file: lists every control, then the shared contract
FILE_ANALYSIS_PROMPT = """You are a SOC 2 compliance auditor reviewing source code.

Check the code against these controls:
{controls}

FRAMEWORK: {framework}

CODE TO ANALYZE:
```
{code}
```

PATTERN FINDINGS (from the fast syntactic scan):
{violations}

Respond with ONLY a JSON array. Each element must have:
{
  "controlId": "one of the control ids above",
  "severity": "critical|high|medium|low",
  "description": "specific finding",
  "lineNumber": 42,
  "codeSnippet": "the offending line",
  "confidenceScore": 0-100,
  "reasoning": "why this is a violation"
}
Return [] if the code is compliant. Confirm or reject each pattern finding
listed above; do not repeat findings you reject."""


def get_control(control_id: str) -> Dict[str, str]:
    try:
        return SOC2_CONTROLS[control_id]
    except (KeyError, TypeError):
        raise UnknownControlError(control_id) from None


def get_analysis_prompt(control_id: str) -> str:
    return get_control(control_id)["analysis_prompt"]


def get_fix_prompt(control_id: str) -> str:
    return get_control(control_id)["fix_prompt"]


def get_all_control_ids() -> List[str]:
    return list(SOC2_CONTROLS)


def is_valid_control_id(control_id: Any) -> bool:
    return isinstance(control_id, str) and control_id in SOC2_CONTROLS


def describe_controls() -> str:
    """Bullet list of every control and its requirement, for FILE_ANALYSIS_PROMPT."""
    return "\n".join(
        f"- {control_id} {control['name']}: {control['requirement']}"
        for control_id, control in SOC2_CONTROLS.items()
    )


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    return value


def _render_value(value: Any) -> str:
    # Enum first: str enums such as Framework render as their wire value
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, str):
        return value
    return json.dumps(_to_jsonable(value), indent=2, default=str)


def render_prompt(template: str, variables: Mapping[str, Any]) -> str:
    """
    Substitutes {key} placeholders in template in a single pass.

    Strings are inserted as-is, anything else (lists of violations, dicts,
    pydantic models, numbers) as indented JSON. Placeholders without a value
    are left untouched, and substituted text is never scanned again, so code
    that itself contains "{violations}" stays literal.
    """
    rendered = {key: _render_value(value) for key, value in variables.items()}

    def _substitute(match):
        return rendered.get(match.group(1), match.group(0))

    return _PLACEHOLDER.sub(_substitute, template)
