# soc2_agent/tools/fix_synthesizer.py

"""
Fix Synthesizer
===============
Produces a Fix for a Violation in one of two ways:

    synthesize()  - deterministic templates, one per control, chosen by the
                    framework family (python / node)
    generate()    - asks the chat model with the control's fix prompt and
                    validates the returned code before accepting it

Both paths return trust_level=review: nothing here is safe to apply unseen.
"""
import ast
import asyncio
import logging
import re
from typing import Callable, Dict, List, Optional

from langchain_core.messages import HumanMessage

from soc2_agent import config
from soc2_agent.controls import get_control, get_fix_prompt, render_prompt
from soc2_agent.errors import FixParseError, FixSynthesisError
from soc2_agent.models import Fix, Framework, TrustLevel, Violation

from .cost_governor import CostGovernor
from .framework_classifier import coerce_framework, detect_language, framework_family
from .pattern_detectors import (
    AUTH_FUNCTION,
    DB_CREDENTIALS,
    HARDCODED_USER_ID,
    HTTP_REQUEST,
    INSECURE_URL,
    INTERPOLATION,
    LOCAL_HOST,
    LOG_STATEMENT,
    MUTATION_CALL,
    NEXTJS_HANDLER,
    NODE_ROUTE,
    SECRET_ASSIGNMENT,
    SQL_MUTATION,
    sensitive_field,
)
from .semantic_analyzer import _message_text, usage_from_message

logger = logging.getLogger(__name__)

_CODE_BLOCK = re.compile(r"```[\w+#.-]*[ \t]*\r?\n(.*?)```", re.S)
_EXPLANATION = re.compile(r"EXPLANATION:\s*(.+)", re.S | re.I)
_QUOTED_DB_URL = re.compile(r"""(["'`])[^"'`\s]*://[^"'`\s]*@[^"'`]*\1""")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_BRACKETS = {")": "(", "]": "[", "}": "{"}
_STRING_OR_COMMENT = re.compile(
    r"""//[^\n]*|/\*.*?\*/|#[^\n]*|"(?:\\.|[^"\\\n])*"|'(?:\\.|[^'\\\n])*'|`(?:\\.|[^`\\])*`""",
    re.S,
)
_MASKED_LITERAL = re.compile(r"""(["'`])[^"'`\s]*\*\*\*\*\1""")
_ASSIGNED_NAME = re.compile(r"([\w$]+)\s*[:=]\s*$")
_DECLARATION_PREFIX = re.compile(r"\s*((export\s+)?(const|let|var)\s+)?")
_LOG_TOKEN = re.compile(r"""(?P<literal>(["'`])(?:\\.|(?!\2).)*\2)|(?P<name>[A-Za-z_$][\w$.]*)""")

RETRY_ATTEMPTS = 3
REQUEST_TIMEOUT_SECONDS = 10


def language_for_path(path: str) -> Optional[str]:
    """Language name for a file path, as used in code fences and fix validation."""
    return detect_language(path)


def _family(violation: Violation, framework) -> str:
    family = framework_family(framework)
    if family != "generic":
        return family
    language = language_for_path(violation.file_path)
    if language == "python":
        return "python"
    if language in ("javascript", "typescript"):
        return "node"
    return "generic"


def _env_name(identifier: str) -> str:
    name = _CAMEL_BOUNDARY.sub("_", identifier.strip("\"'$"))
    return re.sub(r"\W+", "_", name).strip("_").upper() or "SECRET"


def _indent_block(code: str, prefix: str) -> str:
    return "\n".join(prefix + line if line.strip() else line for line in code.splitlines())


# --- CC6.1 access control ---


def _access_control_fix(violation: Violation, family: str, framework: Framework):
    snippet = violation.code_snippet
    user_id = HARDCODED_USER_ID.search(snippet)
    if user_id and family != "generic":
        expr = "request.user.id" if family == "python" else "req.user.id"
        return (
            snippet[: user_id.start("value")] + expr + snippet[user_id.end("value"):],
            f"Replaced the hardcoded id with {expr} so the code acts on the authenticated user "
            "rather than a fixed account.",
        )

    if family == "python":
        if framework == Framework.FLASK:
            return (
                f"@login_required\n{snippet}",
                "Added @login_required (from flask_login import login_required) so the route "
                "rejects anonymous users before the handler runs.",
            )
        return (
            f"@login_required\n{snippet}",
            "Added @login_required (from django.contrib.auth.decorators import login_required) "
            "so the view redirects anonymous users to the login page.",
        )

    if family == "node":
        route = NODE_ROUTE.search(snippet)
        if route:
            rest = re.sub(r"^\s*,\s*", "", snippet[route.end():])
            return (
                f"{snippet[:route.end()]}, authenticate, {rest}",
                "Inserted the authenticate middleware so the route handler only runs for "
                "authenticated requests.",
            )
        if NEXTJS_HANDLER.match(snippet):
            check = (
                "  const session = await getServerSession(authOptions);\n"
                "  if (!session) {\n"
                "    return new Response('Unauthorized', { status: 401 });\n"
                "  }"
            )
            return (
                f"{snippet}\n{check}",
                "Added a getServerSession check that returns 401 when the request is not authenticated.",
            )
        return (
            f"// authenticate the request before this handler runs\n{snippet}",
            "Route the request through an authenticate middleware before this handler.",
        )

    raise FixSynthesisError(f"No access-control template for {violation.file_path}")


# --- CC6.7 secrets and transport ---


def _secrets_fix(violation: Violation, family: str, framework: Framework):
    snippet = violation.code_snippet
    python = family == "python"

    if DB_CREDENTIALS.search(snippet):
        expr = "os.getenv('DATABASE_URL')" if python else "process.env.DATABASE_URL"
        fixed = _QUOTED_DB_URL.sub(lambda m: expr, snippet, count=1)
        if fixed == snippet:
            fixed = DB_CREDENTIALS.sub(lambda m: m.group(0).replace(m.group("password"), "${DB_PASSWORD}"), snippet)
        return (
            fixed,
            "Moved the credentialed connection string to the DATABASE_URL environment variable.",
        )

    secret = SECRET_ASSIGNMENT.search(snippet)
    if secret and family != "generic":
        name = secret.group("name").strip("\"'")
        env = _env_name(name)
        expr = f"os.getenv('{env}')" if python else f"process.env.{env}"
        fixed = snippet[: secret.start("quote")] + expr + snippet[secret.end():]
        # Only a plain `name = "..."` statement binds a variable that can be checked afterwards
        assignment = (
            snippet[secret.end("name"): secret.start("quote")].strip().startswith("=")
            and _DECLARATION_PREFIX.fullmatch(snippet[: secret.start("name")]) is not None
        )
        if assignment:
            if python:
                fixed += f"\nif not {name}:\n    raise RuntimeError('{env} environment variable is not set')"
            else:
                fixed += f"\nif (!{name}) {{\n  throw new Error('{env} environment variable is not set');\n}}"
        return (
            fixed,
            f"Removed the hardcoded secret; '{name}' is now read from the {env} environment variable"
            + (" and the code fails fast when it is missing." if assignment else "."),
        )

    masked = _MASKED_LITERAL.search(snippet)
    if masked and family != "generic":
        target = _ASSIGNED_NAME.search(snippet[: masked.start()])
        env = _env_name(target.group(1)) if target else "API_KEY"
        expr = f"os.getenv('{env}')" if python else f"process.env.{env}"
        return (
            snippet[: masked.start()] + expr + snippet[masked.end():],
            f"Removed the hardcoded key; it is now read from the {env} environment variable. "
            "Rotate the exposed key.",
        )

    def _https(match):
        if LOCAL_HOST.match(match.group("host")):
            return match.group(0)
        return "https://" + match.group(0)[len("http://"):]

    fixed = INSECURE_URL.sub(_https, snippet)
    if fixed != snippet:
        return fixed, "Switched the URL to https:// so the data is encrypted in transit."

    raise FixSynthesisError(f"No secrets template applies to {violation.file_path}:{violation.line_number}")


# --- CC7.2 audit logging ---


def _is_sensitive(text: str) -> bool:
    return sensitive_field(text) is not None


def _scrub_log_arguments(arguments: str) -> str:
    def _token(match):
        if match.group("literal"):
            return INTERPOLATION.sub(
                lambda i: "[REDACTED]" if _is_sensitive(i.group(1)) else i.group(0), match.group("literal")
            )
        return "'[REDACTED]'" if _is_sensitive(match.group("name")) else match.group(0)

    return _LOG_TOKEN.sub(_token, arguments)


def _auth_logging_fix(statement: str, name: str) -> str:
    if statement.startswith(("def ", "async def ")):
        return f"{statement}\n    logger.info(\"authentication attempt\", extra={{\"event\": \"{name}\"}})"
    return f"{statement}\n  logger.info({{ event: '{name}' }}, 'authentication attempt');"


def _audit_logging_fix(violation: Violation, family: str, framework: Framework):
    snippet = violation.code_snippet
    statement = snippet.strip()

    log_call = LOG_STATEMENT.search(statement)
    if log_call:
        arguments = statement[log_call.end():]
        scrubbed = _scrub_log_arguments(arguments)
        if scrubbed != arguments:
            return (
                statement[: log_call.end()] + scrubbed,
                "Removed the sensitive value from the log statement; log a non-secret identifier "
                "such as the user id instead.",
            )

    auth = AUTH_FUNCTION.match(statement)
    if auth:
        return (
            _auth_logging_fix(statement, auth.group(1)),
            f"Log every '{auth.group(1)}' attempt (and its outcome) with the user identifier so "
            "authentication events are traceable; never log the credentials themselves.",
        )

    sql = SQL_MUTATION.search(statement)
    mutation = MUTATION_CALL.search(statement)
    if sql:
        action, resource = sql.group(1).split()[0].lower(), "database"
    elif mutation:
        action = (mutation.group(1) or "commit").lower()
        resource = re.split(r"[\s=(]", statement[: mutation.start()].strip())[-1] or "record"
    else:
        action, resource = "modify", "record"

    if family == "python":
        log = (
            f"logger.info(\"audit: {action} {resource}\", "
            f"extra={{\"action\": \"{action}\", \"resource\": \"{resource}\"}})"
        )
    elif family == "node":
        log = f"logger.info({{ action: '{action}', resource: '{resource}' }}, 'audit: {action} {resource}');"
    else:
        raise FixSynthesisError(f"No audit-logging template for {violation.file_path}")

    return (
        f"{snippet}\n{log}",
        f"Added a structured audit entry via logger.info after the {action} so the change is traceable; "
        "include the acting user id and never log secrets.",
    )


# --- A1.2 resilience ---


def _closing_paren(code: str, start: int) -> Optional[int]:
    depth = 1
    for pos in range(start, len(code)):
        if code[pos] == "(":
            depth += 1
        elif code[pos] == ")":
            depth -= 1
            if depth == 0:
                return pos
    return None


def _timeout_fix(statement: str, family: str) -> Optional[str]:
    request = HTTP_REQUEST.search(statement)
    if not request:
        return None
    close = _closing_paren(statement, request.end())
    if close is None:
        return None
    arguments = statement[request.end(): close]
    if family == "python":
        option = f"timeout={REQUEST_TIMEOUT_SECONDS}"
    elif "fetch" in request.group(0):
        option = f"signal: AbortSignal.timeout({REQUEST_TIMEOUT_SECONDS * 1000})"
    else:
        option = f"timeout: {REQUEST_TIMEOUT_SECONDS * 1000}"

    if family != "python" and "{" in arguments:
        # fetch takes its options second; other clients' positions vary
        if "fetch" not in request.group(0):
            return None
        brace = statement.index("{", request.end())
        return f"{statement[: brace + 1]} {option},{statement[brace + 1:]}"
    if family != "python":
        option = f"{{ {option} }}"
    separator = ", " if arguments.strip() else ""
    return f"{statement[:close]}{separator}{option}{statement[close:]}"


def _error_handling_fix(violation: Violation, family: str, framework: Framework):
    statement = violation.code_snippet.strip()

    if "timeout" in violation.description.lower() and family != "generic":
        fixed = _timeout_fix(statement, family)
        if fixed is not None:
            return (
                fixed,
                f"Added a {REQUEST_TIMEOUT_SECONDS}s timeout so a slow dependency cannot hang the caller.",
            )

    if family == "python":
        body = _indent_block(statement, " " * 8)
        fixed = (
            f"for attempt in range({RETRY_ATTEMPTS}):\n"
            f"    try:\n"
            f"{body}\n"
            f"        break\n"
            f"    except Exception as e:\n"
            f"        logger.warning(\"External call failed (attempt %d/{RETRY_ATTEMPTS}): %s\", attempt + 1, e)\n"
            f"        if attempt == {RETRY_ATTEMPTS - 1}:\n"
            f"            raise\n"
            f"        time.sleep(2 ** attempt)"
        )
        return (
            fixed,
            f"Wrapped the call in try/except with logging and up to {RETRY_ATTEMPTS} attempts with "
            "exponential backoff (needs import time); add a timeout to the call itself.",
        )

    if family == "node":
        body = _indent_block(statement, " " * 4)
        fixed = (
            f"for (let attempt = 1; attempt <= {RETRY_ATTEMPTS}; attempt++) {{\n"
            f"  try {{\n"
            f"{body}\n"
            f"    break;\n"
            f"  }} catch (error) {{\n"
            f"    logger.error(`External call failed (attempt ${{attempt}}/{RETRY_ATTEMPTS})`, error);\n"
            f"    if (attempt === {RETRY_ATTEMPTS}) throw error;\n"
            f"    await new Promise((resolve) => setTimeout(resolve, 2 ** attempt * 100));\n"
            f"  }}\n"
            f"}}"
        )
        return (
            fixed,
            f"Wrapped the call in try/catch with logging and up to {RETRY_ATTEMPTS} attempts with "
            "exponential backoff; hoist any const declared inside the loop if it is used afterwards.",
        )

    raise FixSynthesisError(f"No error-handling template for {violation.file_path}")


FixTemplate = Callable[[Violation, str, Framework], tuple]

FIX_TEMPLATES: Dict[str, FixTemplate] = {
    "CC6.1": _access_control_fix,
    "CC6.7": _secrets_fix,
    "CC7.2": _audit_logging_fix,
    "A1.2": _error_handling_fix,
}


# --- validation of model output ---


def extract_fix(text: str):
    """Returns (code, explanation) from a model answer, raising FixParseError without a code block."""
    block = _CODE_BLOCK.search(text or "")
    if not block:
        raise FixParseError("model response has no fenced code block")
    code = block.group(1).rstrip()
    if not code.strip():
        raise FixParseError("model response has an empty code block")
    explanation = _EXPLANATION.search(text[block.end():]) or _EXPLANATION.search(text)
    return code, explanation.group(1).strip() if explanation else None


def _unclosed_brackets(code: str) -> List[str]:
    stack: List[str] = []
    for char in _STRING_OR_COMMENT.sub("", code):
        if char in "([{":
            stack.append(char)
        elif char in _BRACKETS:
            if not stack or stack[-1] != _BRACKETS[char]:
                raise FixParseError(f"unbalanced '{char}' in generated code")
            stack.pop()
    return stack


def _parse_python(code: str):
    try:
        ast.parse(code)
        return
    except SyntaxError as first_error:
        error = first_error
    # A fragment ending in a block opener (e.g. a decorated def line) gets a stub body
    last = code.rstrip().splitlines()[-1]
    if last.rstrip().endswith(":"):
        indent = len(last) - len(last.lstrip())
        try:
            ast.parse(code.rstrip() + "\n" + " " * (indent + 4) + "pass")
            return
        except SyntaxError as e:
            error = e
    raise FixParseError(f"generated Python does not parse: {error.msg} (line {error.lineno})")


def validate_fix_code(code: str, language: Optional[str], original_code: str = ""):
    """
    Rejects generated code that cannot be right for the language.

    Python must parse. Other languages must close every bracket they open,
    except those the original snippet also left open.
    """
    if language == "python":
        _parse_python(code)
    elif language is not None:
        try:
            expected = _unclosed_brackets(original_code)
        except FixParseError:
            expected = None
        unclosed = _unclosed_brackets(code)
        if expected is not None and unclosed != expected:
            raise FixParseError(
                f"generated code leaves {''.join(unclosed) or 'nothing'} open, "
                f"original left {''.join(expected) or 'nothing'}"
            )


class FixSynthesizer:
    def __init__(self, llm=None, governor: Optional[CostGovernor] = None, timeout: Optional[float] = None):
        self.llm = llm
        self.governor = governor
        self.timeout = config.SEMANTIC_TIMEOUT_SECONDS if timeout is None else timeout

    def synthesize(self, violation: Violation, framework) -> Fix:
        """Deterministic template fix. Raises FixSynthesisError when no template applies."""
        get_control(violation.control_id)
        template = FIX_TEMPLATES.get(violation.control_id)
        if template is None:
            raise FixSynthesisError(f"No fix template for {violation.control_id}")
        framework = coerce_framework(framework)
        fixed_code, explanation = template(violation, _family(violation, framework), framework)
        return Fix(
            violation_id=violation.id,
            original_code=violation.code_snippet,
            fixed_code=fixed_code,
            explanation=explanation,
            trust_level=TrustLevel.REVIEW,
        )

    async def generate(self, violation: Violation, framework, code_language: Optional[str] = None) -> Fix:
        """
        Model-generated fix, validated for the file's language.

        Raises FixSynthesisError when no model is configured, the budget is
        exhausted or the call fails, and FixParseError when the answer is
        unusable.
        """
        if self.llm is None:
            raise FixSynthesisError("no model configured for generated fixes")
        if self.governor is not None and not self.governor.can_dispatch():
            raise FixSynthesisError("cost limit reached")

        language = code_language or language_for_path(violation.file_path)
        framework = framework.value if isinstance(framework, Framework) else str(framework)
        prompt = render_prompt(
            get_fix_prompt(violation.control_id),
            {
                "framework": framework,
                "language": language or "",
                "violationDescription": violation.description,
                "originalCode": violation.code_snippet,
            },
        )

        try:
            response = await asyncio.wait_for(
                self.llm.ainvoke([HumanMessage(content=prompt)]), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise FixSynthesisError(f"fix generation timed out after {self.timeout}s") from None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise FixSynthesisError(f"fix generation failed: {e}") from e

        if self.governor is not None:
            self.governor.record_and_check(usage_from_message(response))

        code, explanation = extract_fix(_message_text(response))
        validate_fix_code(code, language, violation.code_snippet)
        logger.debug("Generated %s fix for %s:%d", violation.control_id, violation.file_path, violation.line_number)
        return Fix(
            violation_id=violation.id,
            original_code=violation.code_snippet,
            fixed_code=code,
            explanation=explanation or f"Generated fix for {violation.control_id}: {violation.description}",
            trust_level=TrustLevel.REVIEW,
        )
