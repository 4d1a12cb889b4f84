# soc2_agent/tools/framework_classifier.py

import logging
import os
import re
from typing import Callable, Optional, Tuple

from soc2_agent.models import Framework

logger = logging.getLogger(__name__)

PYTHON_EXTENSIONS = (".py",)
NODE_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs")

# Extension -> language name used for code fences and fix validation
EXTENSION_LANGUAGES = {
    "py": "python",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "rs": "rust",
    "go": "go",
    "java": "java",
    "rb": "ruby",
    "php": "php",
    "cs": "csharp",
    "cpp": "cpp",
    "cc": "cpp",
    "hpp": "cpp",
    "c": "c",
    "h": "c",
}

_FLASK_SIGNATURES = re.compile(
    r"(from\s+flask\b|import\s+flask\b|Flask\(__name__\)|@\w+\.route\(|Blueprint\()"
)
_NEXTJS_SIGNATURES = re.compile(
    r"""(from\s+['"]next[/'"]|require\(['"]next[/'"]|getServerSideProps|getStaticProps|NextResponse|NextRequest|next-auth)"""
)
_NEXTJS_PATHS = re.compile(r"(^|/)(pages/api/|app/(.+/)?route\.(js|ts)$|middleware\.(js|ts)$)")
_EXPRESS_SIGNATURES = re.compile(
    r"""(require\(['"]express['"]\)|from\s+['"]express['"]|express\(\)|\b(router|app)\.(get|post|put|delete|patch|use)\s*\()"""
)
_REACT_SIGNATURES = re.compile(r"""(from\s+['"]react['"]|require\(['"]react['"]\)|useState\(|useEffect\()""")

# (extensions, predicate(path, code), framework), evaluated in order; first match wins
SignatureCheck = Tuple[Tuple[str, ...], Callable[[str, str], bool], Framework]

SIGNATURE_CHECKS: Tuple[SignatureCheck, ...] = (
    (PYTHON_EXTENSIONS, lambda path, code: bool(_FLASK_SIGNATURES.search(code)), Framework.FLASK),
    (PYTHON_EXTENSIONS, lambda path, code: True, Framework.DJANGO),
    (
        NODE_EXTENSIONS,
        lambda path, code: bool(_NEXTJS_SIGNATURES.search(code) or _NEXTJS_PATHS.search(path)),
        Framework.NEXTJS,
    ),
    (NODE_EXTENSIONS, lambda path, code: bool(_EXPRESS_SIGNATURES.search(code)), Framework.EXPRESS),
    (
        NODE_EXTENSIONS,
        lambda path, code: path.endswith((".jsx", ".tsx")) or bool(_REACT_SIGNATURES.search(code)),
        Framework.REACT,
    ),
    (NODE_EXTENSIONS, lambda path, code: True, Framework.EXPRESS),
)


def coerce_framework(framework) -> Framework:
    if isinstance(framework, Framework):
        return framework
    try:
        return Framework(str(framework).lower())
    except ValueError:
        return Framework.UNKNOWN


def classify_framework(file_path, framework=None, code: Optional[str] = None) -> Framework:
    """
    Returns the framework for a file.

    A supplied framework (anything but unknown) is returned unchanged;
    otherwise the signature table decides. Never raises: anything it cannot
    classify is Framework.UNKNOWN.
    """
    if framework is not None:
        supplied = coerce_framework(framework)
        if supplied != Framework.UNKNOWN:
            return supplied

    if not isinstance(file_path, str) or not file_path:
        return Framework.UNKNOWN
    if not isinstance(code, str):
        code = ""

    path = file_path.replace("\\", "/").lower()
    for extensions, predicate, candidate in SIGNATURE_CHECKS:
        if not path.endswith(extensions):
            continue
        try:
            if predicate(path, code):
                logger.debug("Classified %s as %s", file_path, candidate.value)
                return candidate
        except Exception as e:  # a signature check must never break classification
            logger.warning("Signature check for %s failed on %s: %s", candidate.value, file_path, e)

    return Framework.UNKNOWN


def framework_family(framework) -> str:
    """Groups frameworks into the detector families: python, node or generic."""
    framework = coerce_framework(framework)
    if framework in (Framework.DJANGO, Framework.FLASK):
        return "python"
    if framework in (Framework.EXPRESS, Framework.NEXTJS, Framework.REACT):
        return "node"
    return "generic"


def detect_language(file_path: str) -> Optional[str]:
    """Language name for a path's extension, or None when it is not mapped."""
    if not file_path:
        return None
    ext = os.path.splitext(file_path)[1].lstrip(".").lower()
    return EXTENSION_LANGUAGES.get(ext)
