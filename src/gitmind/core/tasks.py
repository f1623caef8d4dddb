"""Task compilation and task status management."""

import hashlib
import json
import logging
import sqlite3
import time
import uuid

from gitmind.core.sessions import require_session
from gitmind.db.models import Task, parse_dt
from gitmind.errors import NotFound, StateViolation

logger = logging.getLogger(__name__)

MAX_TASK_FILES = 8

TASK_STEPS = [
    {"action": "analyze", "target": "selected_files"},
    {"action": "generate_patch", "format": "unified_diff"},
    {"action": "validate_output", "checks": ["syntax", "format", "security"]},
]

TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "failed"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


def prompt_hash(intent_type: str, session_id: str, timestamp_ms: int) -> str:
    """Correlation id for a compiled prompt. Not an integrity check."""
    raw = f"{intent_type}:{session_id}:{timestamp_ms}".encode()
    return hashlib.sha256(raw).hexdigest()[:16]


def compile_task(
    db: sqlite3.Connection,
    session_id: str,
    intent_type: str,
    file_paths: list[str] | None,
    base_path: str | None = None,
) -> Task:
    """Compile an intent and a file selection into a pending task.

    Only the first MAX_TASK_FILES paths are kept, in their original order.
    """
    require_session(db, session_id)

    paths = list(file_paths or [])
    if len(paths) > MAX_TASK_FILES:
        logger.debug("Truncating task file list from %d to %d entries", len(paths), MAX_TASK_FILES)
    allowed_files = paths[:MAX_TASK_FILES]

    task_id = str(uuid.uuid4())
    compiled_hash = prompt_hash(intent_type, session_id, int(time.time() * 1000))

    db.execute(
        """INSERT INTO tasks (id, session_id, intent_type, compiled_prompt_hash, allowed_files, base_path, steps, status)
           VALUES (?, ?, ?, ?, ?, ?, ?, 'pending')""",
        (
            task_id,
            session_id,
            intent_type,
            compiled_hash,
            json.dumps(allowed_files),
            base_path or "/",
            json.dumps(TASK_STEPS),
        ),
    )
    db.commit()
    logger.info("Compiled %s task %s for session %s", intent_type, task_id, session_id)
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    session_id: str,
    status: str | None = None,
) -> list[Task]:
    """List a session's tasks in creation order."""
    query = "SELECT * FROM tasks WHERE session_id = ?"
    params: list = [session_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    retry_count: int | None = None,
    result: dict | None = None,
) -> Task:
    """Move a task along pending -> running -> completed/failed.

    Finished tasks are immutable; any other move raises StateViolation.
    """
    task = get_task(db, task_id)
    if not task:
        raise NotFound(f"Task not found: {task_id}", task_id=task_id)

    if status not in TASK_TRANSITIONS.get(task.status, frozenset()):
        raise StateViolation(
            f"Invalid task status change: {task.status} -> {status}",
            task_id=task_id,
            current_state=task.status,
            target_state=status,
        )

    updates: dict = {"status": status}
    if retry_count is not None:
        updates["retry_count"] = retry_count
    if result is not None:
        updates["result"] = json.dumps(result)

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id, task.status]

    cur = db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ? AND status = ?",
        values,
    )
    db.commit()
    if cur.rowcount != 1:
        raise StateViolation(
            f"Task {task_id} changed status concurrently",
            task_id=task_id,
            target_state=status,
        )
    return get_task(db, task_id)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        session_id=row["session_id"],
        intent_type=row["intent_type"],
        compiled_prompt_hash=row["compiled_prompt_hash"],
        allowed_files=json.loads(row["allowed_files"]),
        base_path=row["base_path"] or "/",
        steps=json.loads(row["steps"]),
        status=row["status"],
        retry_count=row["retry_count"] or 0,
        result=json.loads(row["result"]) if row["result"] else None,
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
