"""Session lifecycle: creation and the state machine governing transitions."""

import logging
import sqlite3
import uuid

from gitmind.core.activity import log_activity
from gitmind.db.engine import immediate_transaction
from gitmind.db.models import Session, parse_dt
from gitmind.errors import ActiveSessionExists, NotFound, StateViolation

logger = logging.getLogger(__name__)

SESSION_MODES = ("chat", "action", "autonomous")

STATES = ("IDLE", "PLANNING", "SPEC_LOCKED", "EXECUTING", "VALIDATING", "DONE", "FAILED")

# States in which a session does not count as active.
RESTING_STATES = frozenset({"IDLE", "DONE", "FAILED"})

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    "IDLE": frozenset({"PLANNING"}),
    "PLANNING": frozenset({"SPEC_LOCKED", "EXECUTING", "FAILED"}),
    "SPEC_LOCKED": frozenset({"EXECUTING", "FAILED"}),
    "EXECUTING": frozenset({"VALIDATING", "DONE", "FAILED"}),
    "VALIDATING": frozenset({"EXECUTING", "DONE", "FAILED"}),
    "DONE": frozenset({"IDLE"}),
    "FAILED": frozenset({"IDLE"}),
}

_CAS_ATTEMPTS = 5


def is_valid_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def create_session(
    db: sqlite3.Connection,
    repo_id: str,
    mode: str = "action",
) -> Session:
    """Create a session in IDLE.

    The active-session check and the insert run in one write transaction, so two
    concurrent callers can never both pass the check.
    """
    if mode not in SESSION_MODES:
        raise ValueError(f"Unknown session mode: {mode}")

    session_id = str(uuid.uuid4())
    with immediate_transaction(db):
        active = _active_session_ids(db)
        if active:
            raise ActiveSessionExists(
                "Max 1 active session allowed",
                active_session_id=active[0],
            )
        db.execute(
            "INSERT INTO sessions (id, repo_id, mode, state) VALUES (?, ?, ?, 'IDLE')",
            (session_id, repo_id, mode),
        )

    logger.info("Created %s session %s for repository %s", mode, session_id, repo_id)
    return get_session(db, session_id)


def get_session(db: sqlite3.Connection, session_id: str) -> Session | None:
    """Get a session by ID."""
    row = db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def require_session(db: sqlite3.Connection, session_id: str) -> Session:
    session = get_session(db, session_id)
    if not session:
        raise NotFound(f"Session not found: {session_id}", session_id=session_id)
    return session


def list_sessions(
    db: sqlite3.Connection,
    state: str | None = None,
    repo_id: str | None = None,
) -> list[Session]:
    """List sessions, newest first, with optional filters."""
    query = "SELECT * FROM sessions WHERE 1 = 1"
    params: list = []

    if state:
        query += " AND state = ?"
        params.append(state)

    if repo_id:
        query += " AND repo_id = ?"
        params.append(repo_id)

    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_session(r) for r in rows]


def list_active_sessions(db: sqlite3.Connection) -> list[Session]:
    """Sessions whose state is outside IDLE, DONE and FAILED."""
    return [s for s in list_sessions(db) if s.state not in RESTING_STATES]


def transition_session(
    db: sqlite3.Connection,
    session_id: str,
    new_state: str,
) -> Session:
    """Move a session to ``new_state`` if the state machine allows it.

    The write is a compare-and-swap on the state that was read; a lost race is
    re-read and re-validated. Rejections are audited and leave the state alone.
    """
    for _ in range(_CAS_ATTEMPTS):
        session = require_session(db, session_id)
        current = session.state

        if not is_valid_transition(current, new_state):
            log_activity(
                db,
                session_id,
                "session.transition.rejected",
                error_type=f"StateViolation: {current}->{new_state}",
            )
            logger.warning("Rejected transition %s -> %s for session %s", current, new_state, session_id)
            raise StateViolation(
                f"Invalid transition: {current} -> {new_state}",
                current_state=current,
                target_state=new_state,
            )

        cur = db.execute(
            "UPDATE sessions SET state = ?, updated_at = datetime('now') WHERE id = ? AND state = ?",
            (new_state, session_id, current),
        )
        db.commit()
        if cur.rowcount == 1:
            log_activity(db, session_id, "session.transition")
            logger.info("Session %s: %s -> %s", session_id, current, new_state)
            return get_session(db, session_id)

        logger.debug("Session %s changed state concurrently, retrying transition", session_id)

    raise StateViolation(
        f"Could not apply transition to {new_state}: session state kept changing",
        target_state=new_state,
    )


def _active_session_ids(db: sqlite3.Connection) -> list[str]:
    rows = db.execute(
        "SELECT id FROM sessions WHERE state NOT IN ('IDLE', 'DONE', 'FAILED')"
    ).fetchall()
    return [r["id"] for r in rows]


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        repo_id=row["repo_id"],
        mode=row["mode"],
        state=row["state"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
