"""Rate-limited single-file commits through the source host."""

import logging
import sqlite3
import time

from gitmind.core.activity import check_rate_limit, log_activity
from gitmind.core.diffs import is_blocked_file
from gitmind.errors import StateViolation, UpstreamHostError
from gitmind.integrations.github import CommitResult, SourceHost

logger = logging.getLogger(__name__)

COMMIT_ACTION = "github.commit"
DEFAULT_COMMIT_LIMIT = 20


def commit_file(
    db: sqlite3.Connection,
    host: SourceHost,
    session_id: str | None,
    path: str,
    content: str,
    message: str,
    expected_sha: str | None,
    branch: str = "main",
    limit: int = DEFAULT_COMMIT_LIMIT,
    window_seconds: int = 60,
) -> CommitResult:
    """Write one file and record the commit in the activity log.

    The log entry written here is what later rate-limit checks count.
    """
    check_rate_limit(db, session_id, COMMIT_ACTION, limit, window_seconds)

    if is_blocked_file(path):
        raise StateViolation(f"Blocked file: {path}", path=path)

    start = time.monotonic()
    try:
        result = host.write_file(path, content, message, expected_sha, branch)
    except UpstreamHostError as e:
        log_activity(
            db,
            session_id,
            f"{COMMIT_ACTION}.failed",
            duration_ms=int((time.monotonic() - start) * 1000),
            error_type=f"{e.kind}: {e.reason}",
        )
        raise

    log_activity(db, session_id, COMMIT_ACTION, duration_ms=int((time.monotonic() - start) * 1000))
    logger.info("Committed %s on %s as %s", path, branch, result.commit_id)
    return result
