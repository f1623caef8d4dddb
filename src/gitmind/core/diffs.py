"""Structural and security validation of unified-diff patches.

Every check contributes its own errors and none of them short-circuits, so a
single call reports every violation found in the patch.
"""

import posixpath
import re
from pathlib import PurePosixPath

from gitmind.db.models import DiffValidationResult

BLOCKED_FILES = frozenset({".env", "package-lock.json", "yarn.lock", "bun.lockb"})
BLOCKED_PATTERNS = (
    re.compile(r"\.env\."),
    re.compile(r"config\.toml$"),
)

# (label, pattern) pairs, reported in this order
DANGEROUS_PATTERNS = (
    ("code evaluation (eval)", re.compile(r"eval\s*\(")),
    ("process termination (process.exit)", re.compile(r"process\.exit")),
    ("recursive delete (rm -rf)", re.compile(r"rm\s+-rf")),
    ("process spawning (child_process)", re.compile(r"""require\s*\(\s*['"]child_process""")),
    ("command execution (exec)", re.compile(r"exec\s*\(")),
)

_TARGET_HEADER = re.compile(r"^\+\+\+ b/(.+?)\s*$", re.MULTILINE)


def extract_target_files(patch: str | None) -> list[str]:
    """Return every path named by a ``+++ b/<path>`` header, in order."""
    return _TARGET_HEADER.findall(patch or "")


def find_dangerous_patterns(patch: str | None) -> list[str]:
    return [label for label, pattern in DANGEROUS_PATTERNS if pattern.search(patch or "")]


def is_blocked_file(path: str) -> bool:
    if PurePosixPath(path).name in BLOCKED_FILES:
        return True
    return any(p.search(path) for p in BLOCKED_PATTERNS)


def is_under_base_path(path: str, base_path: str | None) -> bool:
    """Check that ``path`` lies inside ``base_path`` (repository-relative).

    ``..`` segments are resolved first. A path that climbs above the
    repository root is outside every base, including the root itself.
    """
    path = posixpath.normpath(path.lstrip("/") or ".")
    if path == ".." or path.startswith("../"):
        return False
    base = posixpath.normpath(base_path.strip("/") or ".") if base_path else "."
    if base == ".":
        return True
    return path == base or path.startswith(base + "/")


def validate_patch(
    patch: str | None,
    allowed_files: list[str] | None = None,
    base_path: str | None = None,
) -> DiffValidationResult:
    """Validate a unified diff against format, security and file-policy rules."""
    patch = patch or ""
    errors: list[str] = []

    if "---" not in patch:
        errors.append("Missing source file header (---)")
    if "+++" not in patch:
        errors.append("Missing target file header (+++)")
    if "@@" not in patch:
        errors.append("Missing hunk header (@@)")

    for label in find_dangerous_patterns(patch):
        errors.append(f"Dangerous pattern: {label}")

    allowed = set(allowed_files) if allowed_files else None
    for path in extract_target_files(patch):
        if is_blocked_file(path):
            errors.append(f"Blocked file: {path}")
        if allowed is not None and path not in allowed:
            errors.append(f"File not in allowed list: {path}")
        if not is_under_base_path(path, base_path):
            errors.append(f"File outside base_path: {path}")

    return DiffValidationResult(valid=not errors, errors=errors)
