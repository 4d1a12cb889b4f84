# soc2_agent/tools/file_selector.py

"""
Decides which files are worth a semantic (model) pass.

smart mode sends only security-relevant files; relevance is a keyword
heuristic over the lowercased source, grouped by concern.
"""
import os

from soc2_agent.models import ScanMode

SEMANTIC_EXTENSIONS = {"py", "js", "jsx", "ts", "tsx", "go", "java", "rb", "php", "rs"}

AUTH_KEYWORDS = (
    "login_required", "permission_required", "requires_auth", "authenticate", "authorize",
    "check_permission", "is_authenticated", "current_user", "session.get", "session.set",
    "request.user", "jwt.decode", "verify_token", "middleware", "passport", "auth0",
    "oauth", "saml", "role_required", "admin_required",
)
DATABASE_KEYWORDS = (
    "insert into", "update ", "delete from", "create table", "drop table", "alter table",
    "select ", ".execute(", ".query(", ".filter(", ".create(", ".update(", ".delete(",
    ".save(", "session.commit", "db.session", "cursor.execute", "sqlalchemy", "sequelize",
    "mongoose", "prisma",
)
ENDPOINT_KEYWORDS = (
    "@app.route", "@api.route", "@router.", "router.get", "router.post", "router.put",
    "router.delete", "app.get(", "app.post(", "app.put(", "app.delete(", "express.router",
    "fastapi", "@blueprint", "flask.request", "request.method", "http.handlefunc",
    "@restcontroller", "@requestmapping", "@getmapping", "@postmapping",
)
SECRETS_KEYWORDS = (
    "password", "secret", "api_key", "apikey", "access_token", "private_key", "client_secret",
    "auth_token", "bearer", "credentials", "os.getenv(", "process.env", "vault",
    "aws_secret", "encryption", "decrypt",
)
FILE_IO_KEYWORDS = (
    "open(", "file.read", "file.write", "fs.readfile", "fs.writefile", "path.join",
    "os.path", "upload", "download", "tempfile",
)
NETWORK_KEYWORDS = (
    "requests.", "http.get", "http.post", "fetch(", "axios.", "urllib", "httplib",
    "curl", "websocket", "socket",
)

KEYWORD_GROUPS = (
    AUTH_KEYWORDS,
    DATABASE_KEYWORDS,
    ENDPOINT_KEYWORDS,
    SECRETS_KEYWORDS,
    FILE_IO_KEYWORDS,
    NETWORK_KEYWORDS,
)


def is_supported_language(file_path: str) -> bool:
    ext = os.path.splitext(file_path or "")[1].lstrip(".").lower()
    return ext in SEMANTIC_EXTENSIONS


def is_security_relevant(code: str) -> bool:
    lowered = (code or "").lower()
    return any(keyword in lowered for group in KEYWORD_GROUPS for keyword in group)


def should_analyze_semantically(file_path: str, code: str, scan_mode) -> bool:
    """regex_only never, analyze_all every supported file, smart only security-relevant ones."""
    try:
        mode = ScanMode(scan_mode)
    except ValueError:
        return False

    if mode == ScanMode.REGEX_ONLY:
        return False
    if mode == ScanMode.ANALYZE_ALL:
        return is_supported_language(file_path)
    return is_supported_language(file_path) and is_security_relevant(code)
