"""Append-only activity log and the rate limiter built on top of it.

The log is the single source of truth for both the audit trail and rate-limit
accounting; there is no separate counter to drift out of sync.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from gitmind.db.models import ActivityLogEntry, parse_dt
from gitmind.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def log_activity(
    db: sqlite3.Connection,
    session_id: str | None,
    action: str,
    duration_ms: int | None = None,
    retry_count: int | None = None,
    error_type: str | None = None,
    at: datetime | None = None,
) -> ActivityLogEntry:
    """Append an audit entry and commit it."""
    created_at = _ts(at or utcnow())
    cur = db.execute(
        """INSERT INTO activity_logs (session_id, action, duration_ms, retry_count, error_type, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (session_id, action, duration_ms, retry_count, error_type, created_at),
    )
    db.commit()
    return ActivityLogEntry(
        id=cur.lastrowid,
        session_id=session_id,
        action=action,
        duration_ms=duration_ms,
        retry_count=retry_count,
        error_type=error_type,
        created_at=parse_dt(created_at),
    )


def list_activity(
    db: sqlite3.Connection,
    session_id: str | None = None,
    action: str | None = None,
    limit: int = 100,
) -> list[ActivityLogEntry]:
    """List audit entries, oldest first, with optional filters."""
    query = "SELECT * FROM activity_logs WHERE 1 = 1"
    params: list = []

    if session_id is not None:
        query += " AND session_id = ?"
        params.append(session_id)

    if action:
        query += " AND (action = ? OR action LIKE ?)"
        params.extend([action, action + ".%"])

    query += " ORDER BY created_at ASC, id ASC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_entry(r) for r in rows]


def count_actions(
    db: sqlite3.Connection,
    session_id: str | None,
    action: str,
    since: datetime,
) -> int:
    """Count entries for ``action`` (or its dotted sub-actions) since a point in time."""
    row = db.execute(
        """SELECT COUNT(*) AS n FROM activity_logs
           WHERE session_id IS ? AND (action = ? OR action LIKE ?) AND created_at >= ?""",
        (session_id, action, action + ".%", _ts(since)),
    ).fetchone()
    return row["n"]


def allow(
    db: sqlite3.Connection,
    session_id: str | None,
    action: str,
    max_per_window: int,
    window_seconds: int = 60,
    now: datetime | None = None,
) -> bool:
    """Return False once ``max_per_window`` entries exist in the trailing window."""
    since = (now or utcnow()) - timedelta(seconds=window_seconds)
    count = count_actions(db, session_id, action, since)
    if count >= max_per_window:
        logger.warning(
            "Rate limit hit for session %s action %s (%d/%d in %ds)",
            session_id, action, count, max_per_window, window_seconds,
        )
        return False
    return True


def check_rate_limit(
    db: sqlite3.Connection,
    session_id: str | None,
    action: str,
    max_per_window: int,
    window_seconds: int = 60,
    now: datetime | None = None,
):
    """Like :func:`allow`, but raises RateLimitExceeded instead of returning False."""
    if not allow(db, session_id, action, max_per_window, window_seconds, now=now):
        raise RateLimitExceeded(
            f"Rate limit exceeded for {action}: max {max_per_window} per {window_seconds}s",
            action=action,
            retry_after=window_seconds,
        )


def _row_to_entry(row: sqlite3.Row) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=row["id"],
        session_id=row["session_id"],
        action=row["action"],
        duration_ms=row["duration_ms"],
        retry_count=row["retry_count"],
        error_type=row["error_type"],
        created_at=parse_dt(row["created_at"]),
    )
