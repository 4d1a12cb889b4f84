# soc2_agent/tools/pattern_detectors.py

"""
Fast syntactic detectors, one or more per control and framework family.

Every matcher is a pure function over the file's lines and yields
(line_index, severity, description, reasoning, snippet) tuples.
detect_violations() runs them in a fixed order (CC6.1, CC6.7, CC7.2, A1.2;
generic matchers before family matchers) so the same input always produces
the same list.
"""
import logging
import re
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from soc2_agent.controls import get_all_control_ids
from soc2_agent.models import DetectionMethod, Severity, Violation

from .framework_classifier import framework_family

logger = logging.getLogger(__name__)

Finding = Tuple[int, Severity, str, str, Optional[str]]
Matcher = Callable[[List[str], str], Iterable[Finding]]

MAX_SNIPPET_LENGTH = 240

_LINE_BREAK = re.compile(r"\r\n|\r|\n")

# --- shared vocabulary ---

# Matched against a whole function name or a whole path segment
PUBLIC_ROUTE = re.compile(
    r"^(login|logout|register|signup|sign_up|sign-up|health|healthz|ping|status|static|public|favicon)$", re.I
)
INLINE_AUTH_CHECK = re.compile(
    r"(is_authenticated|current_user|if\s+not\s+request\.user\b|verify_jwt|verify_token|check_auth|"
    r"request\.headers\.get\s*\(\s*['\"](Authorization|auth|token)['\"])"
)
HARDCODED_USER_ID = re.compile(r"""(?i)\b(?P<name>user_?id|account_?id)\s*=(?!=)\s*(?P<value>\d+\b|["']\d+["'])""")
TEST_PATH = re.compile(r"(test_|_test|\.test\.|\.spec\.|spec_|mock|faker|fixture)", re.I)

PYTHON_AUTH_DECORATOR = re.compile(
    r"@\s*[\w.]*(login_required|permission_required|require_permission|user_passes_test|"
    r"staff_member_required|jwt_required|auth_required|requires_auth|roles_required|"
    r"admin_required|authenticated|permission_classes)"
)
PYTHON_ROUTE_DECORATOR = re.compile(r"""@\s*\w+\s*\.\s*(route|get|post|put|delete|patch)\s*\(\s*(['"]([^'"]*)['"])?""")
PYTHON_DEF = re.compile(r"^\s*(async\s+)?def\s+(\w+)\s*\(([^)]*)")

NODE_ROUTE = re.compile(r"""\b(router|app)\s*\.\s*(get|post|put|delete|patch|all)\s*\(\s*['"`](/[^'"`]*|\*)['"`]""")
NODE_AUTH_MARKER = re.compile(
    r"(auth|requireLogin|checkAuth|isAuthenticated|verifyToken|ensureLoggedIn|passport\.authenticate|protect)",
    re.I,
)
NEXTJS_HANDLER = re.compile(r"^\s*export\s+(default\s+)?(async\s+)?function\s+(handler|GET|POST|PUT|DELETE|PATCH)\b")
NEXTJS_AUTH_MARKER = re.compile(r"(getServerSession|getSession|getToken|withAuth|auth\(\)|currentUser|clerkClient|requireUser)")

SECRET_ASSIGNMENT = re.compile(
    r"""(?ix)
    (?P<name>["']?(?<![\w$])(?:[A-Za-z_$][\w$]*?)?
        (password|passwd|pwd|secret|api_?key|access_?key|private_?key|token|passphrase|credentials?)
        [\w$]*["']?)
    \s*(?::|=(?!=))\s*
    (?P<quote>["'`])(?P<value>[^"'`\r\n]{4,})(?P=quote)
    """
)
SECRET_NAME_EXEMPT_SUFFIX = re.compile(
    r"(_field|_label|_name|_type|_url|_uri|_header|_length|_len|_regex|_pattern|_hint|_prompt|"
    r"_placeholder|_env|_var|_path|_file|_expiry|_expires|_ttl)[\"']?$",
    re.I,
)
PLACEHOLDER_VALUE = re.compile(
    r"^(your[_-]|<.*>$|\$\{.*\}$|\{.*\}$|%\(.*\)s$|changeme|change[_-]me|x{3,}|\*{3,}|example|"
    r"placeholder|dummy|none$|null$|todo|redacted|\.\.\.)",
    re.I,
)
KEY_FORMATS = [
    (re.compile(r"\b(sk|rk)_live_[0-9A-Za-z]{10,}"), "Stripe live secret key", Severity.CRITICAL),
    (re.compile(r"\b(sk|rk|pk)_test_[0-9A-Za-z]{10,}"), "Stripe test key", Severity.HIGH),
    (re.compile(r"\bgh[pousr]_[A-Za-z0-9_]{20,}"), "GitHub token", Severity.CRITICAL),
    (re.compile(r"\bAKIA[0-9A-Z]{16}\b"), "AWS access key", Severity.CRITICAL),
    (re.compile(r"\beyJ[\w-]{10,}\.[\w-]{10,}\.[\w-]{10,}"), "JWT", Severity.HIGH),
]
KEY_EXAMPLE_VALUE = re.compile(r"(example|fake|dummy|xxxx)", re.I)
ENV_READ = re.compile(r"(os\.getenv|os\.environ|getenv\(|process\.env|ENV\[|config\(|settings\.)")

DB_CREDENTIALS = re.compile(
    r"""(?i)\b(postgres(?:ql)?|mysql|mariadb|mongodb(?:\+srv)?|redis|amqp|mssql|oracle)://(?P<user>[^:/\s'"@]+):(?P<password>[^@\s'"]+)@"""
)
INSECURE_URL = re.compile(r"""http://(?P<host>[^\s'"`/:?#)]+)""", re.I)
LOCAL_HOST = re.compile(
    r"^(localhost|127\.\d+\.\d+\.\d+|0\.0\.0\.0|10\.\d+\.\d+\.\d+|192\.168\.\d+\.\d+|"
    r"172\.(1[6-9]|2\d|3[01])\.\d+\.\d+|\[?::1\]?|[\w-]+\.local|host\.docker\.internal)$",
    re.I,
)
# URIs that are identifiers rather than endpoints
NAMESPACE_HOST = re.compile(r"^(www\.w3\.org|schemas\.[\w.]+|purl\.org|xmlns\.com|ns\.adobe\.com)$", re.I)

MUTATION_CALL = re.compile(
    r"\.(save|delete|create|update|remove|destroy|bulk_create|bulk_update|insert_one|insert_many|"
    r"update_one|update_many|delete_one|delete_many|insertOne|insertMany|updateOne|updateMany|"
    r"deleteOne|deleteMany|findByIdAndUpdate|findByIdAndDelete|upsert)\s*\(|\bsession\.commit\s*\("
)
# update/create/remove are also dict, set and list methods; they count only on a persistence receiver
AMBIGUOUS_MUTATIONS = ("update", "create", "remove")
PERSISTENT_RECEIVER = re.compile(
    r"(objects|session|\bdb\b|database|repo|repository|collection|table|model|prisma|knex|query|queryset|"
    r"(^|[.\s])[A-Z]\w*$)"
)
SQL_MUTATION = re.compile(r"(?i)\b(INSERT\s+INTO|UPDATE\s+[\w.\"`]+\s+SET|DELETE\s+FROM)\b")
LOGGING_CALL = re.compile(
    r"(logger\.|logging\.|\blog\.|\blog\(|console\.(log|info|warn|error|debug)|print\(|audit|syslog)",
    re.I,
)
LOG_STATEMENT = re.compile(
    r"(\b(logger|logging|log|console)\s*\.\s*(debug|info|warning|warn|error|exception|critical|log|trace)\s*\(|"
    r"\bprint\s*\(|\blog\s*\()"
)
SENSITIVE_FIELDS = [
    (re.compile(r"(?<![a-z])(password|passwd|pwd)", re.I), "password"),
    (re.compile(r"(?<![a-z])secret", re.I), "secret"),
    (re.compile(r"(?<![a-z])api_?key", re.I), "API key"),
    (re.compile(r"(?<![a-z])token", re.I), "token"),
    (re.compile(r"(?<![a-z])(ssn|social_security)", re.I), "SSN"),
    (re.compile(r"(?<![a-z])(card_?number|credit_?card|cvv)", re.I), "credit card"),
]
CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
INTERPOLATION = re.compile(r"\$?\{([^{}]*)\}")
STRING_LITERAL = re.compile(r"""(["'`])(?:\\.|(?!\1).)*\1""")
AUTH_FUNCTION = re.compile(
    r"^\s*(?:export\s+)?(?:async\s+)?(?:def|function)\s+(login|authenticate|verify_token|verify_password|validate_credentials)\b"
)

PYTHON_OUTBOUND = re.compile(
    r"(\b(requests|httpx)\.(get|post|put|delete|patch|head|options|request)\s*\(|"
    r"\burlopen\s*\(|\baiohttp\.|\b\w*session\.(get|post|put|delete|patch)\s*\(|"
    r"\.execute\s*\(|\.query\s*\(|\bsmtplib\.SMTP)"
)
NODE_OUTBOUND = re.compile(
    r"(\bfetch\s*\(|\baxios(\.(get|post|put|delete|patch|request))?\s*\(|\.query\s*\(|"
    r"\bhttps?\.(request|get)\s*\(|\bgot(\.(get|post))?\s*\()"
)
NODE_TRY = re.compile(r"\btry\s*\{")
NODE_TRY_END = re.compile(r"\}\s*(catch|finally)\b")
PROMISE_CATCH = re.compile(r"\.catch\s*\(")
HTTP_REQUEST = re.compile(
    r"(\b(requests|httpx)\.(get|post|put|delete|patch|head|request)\s*\(|\baiohttp\.\w+\s*\(|"
    r"\bfetch\s*\(|\baxios\.(get|post|put|delete|patch|request)\s*\(|\bhttps?\.(request|get)\s*\()"
)
TIMEOUT_OPTION = re.compile(r"(timeout\s*[=:,)]|\.timeout\s*\(|\bsignal\s*:|AbortSignal\.timeout)", re.I)
RETRY_MARKER = re.compile(r"(retry|retries|tenacity|backoff|exponential|attempt)", re.I)


# --- helpers ---


def _as_text(code) -> str:
    if isinstance(code, bytes):
        code = code.decode("utf-8", errors="replace")
    if code.startswith("\ufeff"):
        code = code[1:]
    return code


def split_lines(code) -> List[str]:
    """Splits on \\n, \\r\\n and \\r only, so indices match editor line numbers."""
    return _LINE_BREAK.split(_as_text(code))


def _is_comment(line: str) -> bool:
    stripped = line.lstrip()
    return stripped.startswith(("#", "//", "/*", "*"))


def _indent(line: str) -> int:
    return len(line.expandtabs(4)) - len(line.expandtabs(4).lstrip())


_LITERAL_OR_COMMENT = re.compile(r"""(["'`])(?:\\.|(?!\1).)*\1|(?<=\s)(#|//)""")


def _strip_trailing_comment(line: str) -> str:
    # A "#" or "//" inside a string literal is not a comment
    for match in _LITERAL_OR_COMMENT.finditer(line):
        if match.group(2):
            return line[: match.start()]
    return line


def _mask(value: str) -> str:
    return value[:4] + "****"


def redact_secrets(text: str) -> str:
    """Masks secret literals, known key formats and connection-string passwords in text."""

    def _secret(match):
        quote, value = match.group("quote"), match.group("value")
        if PLACEHOLDER_VALUE.search(value):
            return match.group(0)
        head = match.group(0)[: match.start("quote") - match.start(0)]
        return f"{head}{quote}{_mask(value)}{quote}"

    def _db(match):
        return match.group(0).replace(match.group("password"), "****")

    text = DB_CREDENTIALS.sub(_db, SECRET_ASSIGNMENT.sub(_secret, text))
    for pattern, _, _ in KEY_FORMATS:
        text = pattern.sub(lambda m: _mask(m.group(0)), text)
    return text


def _is_public_path(path: str) -> bool:
    return any(PUBLIC_ROUTE.match(segment) for segment in path.split("/"))


def _window(lines: List[str], idx: int, before: int, after: int) -> str:
    return " ".join(lines[max(0, idx - before): min(len(lines), idx + after + 1)])


# --- CC6.1 access control ---


def _decorator_block(lines: List[str], def_idx: int) -> List[str]:
    """Decorator lines directly above a def, including multi-line decorator arguments."""
    def_indent = _indent(lines[def_idx])
    block: List[str] = []
    # continuation lines only count once the decorator they belong to is found
    pending: List[str] = []
    j = def_idx - 1
    while j >= 0:
        line = lines[j]
        stripped = line.strip()
        if not stripped:
            break
        indent = _indent(line)
        if indent == def_indent and stripped.startswith("@"):
            block.extend(pending)
            block.append(stripped)
            pending = []
        elif indent > def_indent or (indent == def_indent and stripped.startswith((")", "]"))):
            pending.append(stripped)
        elif not _is_comment(line):
            break
        j -= 1
    return block


def _python_unauthenticated_views(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        match = PYTHON_DEF.match(line)
        if not match:
            continue
        name, params = match.group(2), match.group(3)
        decorators = _decorator_block(lines, idx)
        route_paths = [
            m.group(3) or "" for m in (PYTHON_ROUTE_DECORATOR.search(d) for d in decorators) if m
        ]
        takes_request = bool(re.match(r"\s*(self\s*,\s*)?request\b", params))
        if not (takes_request or route_paths):
            continue
        if any(PYTHON_AUTH_DECORATOR.search(d) for d in decorators):
            continue
        if PUBLIC_ROUTE.match(name) or any(_is_public_path(p) for p in route_paths):
            continue
        if INLINE_AUTH_CHECK.search(_window(lines, idx, 0, 4)):
            continue
        kind = "route handler" if route_paths else "view"
        yield (
            idx,
            Severity.HIGH,
            f"View function '{name}' missing authentication decorator (e.g. @login_required)",
            f"Pattern match: {kind} '{name}' handles requests with no authentication decorator",
            None,
        )


def _node_unauthenticated_routes(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        match = NODE_ROUTE.search(line)
        if not match:
            continue
        path = match.group(3)
        if _is_public_path(path):
            continue
        after_path = line[match.end():]
        next_line = lines[idx + 1] if idx + 1 < len(lines) else ""
        if NODE_AUTH_MARKER.search(after_path) or NODE_AUTH_MARKER.search(next_line):
            continue
        yield (
            idx,
            Severity.HIGH,
            f"Route {match.group(2).upper()} {path} missing authentication middleware",
            f"Pattern match: {match.group(1)}.{match.group(2)}() route registered without an auth middleware argument",
            None,
        )


def _nextjs_unauthenticated_handlers(lines: List[str], file_path: str) -> Iterable[Finding]:
    if "/api/" not in file_path.replace("\\", "/") and "route." not in file_path:
        return
    if any(NEXTJS_AUTH_MARKER.search(line) for line in lines):
        return
    for idx, line in enumerate(lines):
        match = NEXTJS_HANDLER.match(line)
        if match:
            yield (
                idx,
                Severity.HIGH,
                f"API handler {match.group(3)} missing session/authentication check",
                "Pattern match: exported API handler in a file with no session or auth lookup",
                None,
            )


def _hardcoded_user_ids(lines: List[str], file_path: str) -> Iterable[Finding]:
    if TEST_PATH.search(file_path):
        return
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        code_part = _strip_trailing_comment(line)
        # parameter defaults are not hardcoded identities
        if re.search(r"\b(def|function)\b|param", code_part):
            continue
        match = HARDCODED_USER_ID.search(code_part)
        if match:
            yield (
                idx,
                Severity.HIGH,
                "Hardcoded user ID should use request.user or current_user",
                f"Pattern match: '{match.group('name')}' bound to the literal {match.group('value')}",
                None,
            )


# --- CC6.7 secrets and transport ---


def _hardcoded_secrets(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        code_part = _strip_trailing_comment(line)
        if ENV_READ.search(code_part):
            continue
        for match in SECRET_ASSIGNMENT.finditer(code_part):
            name = match.group("name").strip("\"'")
            value = match.group("value")
            if SECRET_NAME_EXEMPT_SUFFIX.search(name) or PLACEHOLDER_VALUE.search(value):
                continue
            if value.startswith(("http://", "https://")) and "@" not in value:
                continue
            yield (
                idx,
                Severity.CRITICAL,
                f"Hardcoded secret detected in '{name}'",
                f"Pattern match: secret-like identifier '{name}' bound to a string literal",
                redact_secrets(line.strip()),
            )
            break


def _credentialed_connection_strings(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        match = DB_CREDENTIALS.search(line)
        if not match:
            continue
        password = match.group("password")
        if ENV_READ.search(line) or password.startswith(("$", "{", "%")):
            continue
        yield (
            idx,
            Severity.CRITICAL,
            "Database credentials embedded in connection string",
            f"Pattern match: {match.group(1)}:// URL carries a username and password",
            redact_secrets(line.strip()),
        )


def _insecure_transport(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        for match in INSECURE_URL.finditer(line):
            host = match.group("host")
            if LOCAL_HOST.match(host) or NAMESPACE_HOST.match(host):
                continue
            yield (
                idx,
                Severity.HIGH,
                "Insecure HTTP call detected, use HTTPS",
                f"Pattern match: plain-text http:// URL to remote host '{host}'",
                None,
            )
            break


def _known_key_formats(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        code_part = _strip_trailing_comment(line)
        for pattern, kind, severity in KEY_FORMATS:
            match = pattern.search(code_part)
            if not match or KEY_EXAMPLE_VALUE.search(match.group(0)):
                continue
            yield (
                idx,
                severity,
                f"Hardcoded {kind} detected",
                f"Pattern match: literal in the {kind} format",
                redact_secrets(line.strip()),
            )
            break


# --- CC7.2 audit logging ---


def _unlogged_mutations(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        match = MUTATION_CALL.search(line)
        if not match:
            continue
        # router.delete(...) / requests.delete(...) are routes and requests, not writes
        if NODE_ROUTE.search(line) or PYTHON_OUTBOUND.search(line) or NODE_OUTBOUND.search(line):
            continue
        if match.group(1) in AMBIGUOUS_MUTATIONS:
            if not PERSISTENT_RECEIVER.search(line[: match.start()].strip()):
                continue
        if LOGGING_CALL.search(_window(lines, idx, 1, 3)):
            continue
        yield (
            idx,
            Severity.MEDIUM,
            "Sensitive operation without audit logging",
            f"Pattern match: state-mutating call '{match.group(0).strip()}' with no logging call nearby",
            None,
        )


def _logged_values(arguments: str) -> str:
    """The parts of a log call that carry values: code outside literals plus interpolations."""
    interpolated = " ".join(STRING_LITERAL.sub(" ", part) for part in INTERPOLATION.findall(arguments))
    return STRING_LITERAL.sub(" ", arguments) + " " + interpolated


def sensitive_field(text: str):
    """(matched text, label) for the first sensitive field named in text, or None. camelCase counts."""
    text = CAMEL_BOUNDARY.sub("_", text)
    for pattern, label in SENSITIVE_FIELDS:
        field = pattern.search(text)
        if field:
            return field.group(0), label
    return None


def _sensitive_data_in_logs(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        call = LOG_STATEMENT.search(line)
        if not call:
            continue
        found = sensitive_field(_logged_values(line[call.end():]))
        if found:
            name, label = found
            yield (
                idx,
                Severity.CRITICAL,
                f"Sensitive data ({label}) in logging statement",
                f"Pattern match: log call writes the value of '{name}'",
                redact_secrets(line.strip()),
            )


def _unlogged_auth_functions(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        match = AUTH_FUNCTION.match(line)
        if not match:
            continue
        if LOGGING_CALL.search(" ".join(lines[idx + 1: idx + 4])):
            continue
        yield (
            idx,
            Severity.HIGH,
            "Authentication event without logging",
            f"Pattern match: '{match.group(1)}' defined with no logging call in its first lines",
            None,
        )


def _unlogged_sql_mutations(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        match = SQL_MUTATION.search(line)
        if not match or LOGGING_CALL.search(_window(lines, idx, 1, 3)):
            continue
        yield (
            idx,
            Severity.MEDIUM,
            "Database write without audit logging",
            f"Pattern match: SQL '{match.group(1).split()[0].upper()}' statement with no logging call nearby",
            None,
        )


# --- A1.2 resilience ---


def _inside_python_try(lines: List[str], idx: int) -> bool:
    min_indent = _indent(lines[idx])
    for j in range(idx - 1, -1, -1):
        line = lines[j]
        stripped = line.strip()
        if not stripped or _is_comment(line):
            continue
        indent = _indent(line)
        if indent >= min_indent:
            continue
        if stripped.startswith("try:"):
            return True
        if stripped.startswith(("def ", "async def ", "class ")):
            return False
        min_indent = indent
        if indent == 0:
            return False
    return False


def _python_unhandled_calls(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        match = PYTHON_OUTBOUND.search(line)
        if not match:
            continue
        if line.strip().startswith("try:") or _inside_python_try(lines, idx):
            continue
        yield (
            idx,
            Severity.HIGH,
            "External call without error handling",
            f"Pattern match: outbound call '{match.group(0).strip()}' is not inside a try block",
            None,
        )


def _brace_delta(line: str) -> int:
    # Ignore braces inside string literals
    stripped = re.sub(r"""(["'`])(?:\\.|(?!\1).)*\1""", "", line)
    return stripped.count("{") - stripped.count("}")


def _node_unhandled_calls(lines: List[str], file_path: str) -> Iterable[Finding]:
    depth = 0
    try_depths: List[int] = []
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        match = NODE_OUTBOUND.search(line)
        if match:
            try_on_line = NODE_TRY.search(line)
            enclosed = bool(try_depths) or bool(try_on_line and try_on_line.start() < match.start())
            chained = PROMISE_CATCH.search(_window(lines, idx, 0, 3))
            if not enclosed and not chained:
                yield (
                    idx,
                    Severity.HIGH,
                    "External call without error handling",
                    f"Pattern match: outbound call '{match.group(0).strip()}' outside try/catch and without .catch()",
                    None,
                )
        # "} catch (e) {" closes the try body even though the depth is unchanged
        if try_depths and NODE_TRY_END.search(line):
            try_depths.pop()
        if NODE_TRY.search(line):
            try_depths.append(depth)
        depth += _brace_delta(line)
        while try_depths and depth <= try_depths[-1]:
            try_depths.pop()


def _missing_timeouts(lines: List[str], file_path: str) -> Iterable[Finding]:
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        match = HTTP_REQUEST.search(line)
        if not match or TIMEOUT_OPTION.search(_window(lines, idx, 0, 2)):
            continue
        yield (
            idx,
            Severity.HIGH,
            "External request without timeout configuration",
            f"Pattern match: '{match.group(0).strip()}' with no timeout option on the call",
            None,
        )


def _missing_retry_logic(lines: List[str], file_path: str) -> Iterable[Finding]:
    # Reported once per file, at the first request
    if any(RETRY_MARKER.search(line) for line in lines):
        return
    for idx, line in enumerate(lines):
        if _is_comment(line):
            continue
        match = HTTP_REQUEST.search(line)
        if match:
            yield (
                idx,
                Severity.MEDIUM,
                "No retry logic for transient failures",
                f"Pattern match: '{match.group(0).strip()}' in a file with no retry or backoff handling",
                None,
            )
            return


# (control_id, family) -> matchers, in run order
DETECTORS: Dict[Tuple[str, str], List[Matcher]] = {
    ("CC6.1", "generic"): [_hardcoded_user_ids],
    ("CC6.1", "python"): [_python_unauthenticated_views],
    ("CC6.1", "node"): [_node_unauthenticated_routes, _nextjs_unauthenticated_handlers],
    ("CC6.7", "generic"): [_hardcoded_secrets, _credentialed_connection_strings, _insecure_transport, _known_key_formats],
    ("CC7.2", "generic"): [_sensitive_data_in_logs, _unlogged_sql_mutations, _unlogged_auth_functions],
    ("CC7.2", "python"): [_unlogged_mutations],
    ("CC7.2", "node"): [_unlogged_mutations],
    ("A1.2", "python"): [_python_unhandled_calls, _missing_timeouts, _missing_retry_logic],
    ("A1.2", "node"): [_node_unhandled_calls, _missing_timeouts, _missing_retry_logic],
}


def detect_violations(code, file_path: str, framework) -> List[Violation]:
    """
    Runs every matcher that applies to the framework's family.

    Unknown frameworks get the generic matchers only. At most one violation
    is reported per control and line.
    """
    if not code:
        return []

    lines = split_lines(code)
    family = framework_family(framework)
    families = ("generic",) if family == "generic" else ("generic", family)

    violations: List[Violation] = []
    seen = set()
    for control_id in get_all_control_ids():
        for fam in families:
            for matcher in DETECTORS.get((control_id, fam), []):
                for idx, severity, description, reasoning, snippet in matcher(lines, file_path):
                    key = (control_id, idx)
                    if key in seen:
                        continue
                    seen.add(key)
                    violations.append(
                        Violation(
                            control_id=control_id,
                            severity=severity,
                            description=description,
                            file_path=file_path,
                            line_number=idx + 1,
                            code_snippet=(snippet or lines[idx].strip())[:MAX_SNIPPET_LENGTH],
                            detection_method=DetectionMethod.PATTERN,
                            pattern_reasoning=reasoning,
                        )
                    )

    logger.debug("Pattern stage found %d violation(s) in %s", len(violations), file_path)
    return violations
