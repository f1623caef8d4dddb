"""Structured specs for autonomous sessions, frozen before generation starts."""

import json
import sqlite3
import uuid

from gitmind.core.sessions import require_session, transition_session
from gitmind.db.models import AutonomousSpec, parse_dt
from gitmind.errors import NotFound, StateViolation


def save_spec(db: sqlite3.Connection, session_id: str, spec_json: dict) -> AutonomousSpec:
    """Create or replace the session's spec while it is still unlocked."""
    session = require_session(db, session_id)
    if session.mode != "autonomous":
        raise StateViolation(
            f"Specs are only available in autonomous sessions (session mode: {session.mode})",
            session_id=session_id,
        )

    existing = get_spec(db, session_id)
    if existing and existing.locked:
        raise StateViolation(f"Spec for session {session_id} is locked", spec_id=existing.id)

    if existing:
        db.execute(
            "UPDATE autonomous_specs SET spec_json = ? WHERE id = ? AND locked_at IS NULL",
            (json.dumps(spec_json), existing.id),
        )
    else:
        db.execute(
            "INSERT INTO autonomous_specs (id, session_id, spec_json) VALUES (?, ?, ?)",
            (str(uuid.uuid4()), session_id, json.dumps(spec_json)),
        )
    db.commit()
    return get_spec(db, session_id)


def get_spec(db: sqlite3.Connection, session_id: str) -> AutonomousSpec | None:
    row = db.execute(
        "SELECT * FROM autonomous_specs WHERE session_id = ?", (session_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_spec(row)


def lock_spec(db: sqlite3.Connection, spec_id: str) -> AutonomousSpec:
    """Freeze a spec and move its session from PLANNING to SPEC_LOCKED."""
    row = db.execute("SELECT * FROM autonomous_specs WHERE id = ?", (spec_id,)).fetchone()
    if not row:
        raise NotFound(f"Spec not found: {spec_id}", spec_id=spec_id)
    spec = _row_to_spec(row)
    if spec.locked:
        raise StateViolation(f"Spec {spec_id} is already locked", spec_id=spec_id)

    # Raises StateViolation unless the session is PLANNING
    transition_session(db, spec.session_id, "SPEC_LOCKED")

    db.execute(
        "UPDATE autonomous_specs SET locked_at = datetime('now') WHERE id = ?",
        (spec_id,),
    )
    db.commit()
    return get_spec(db, spec.session_id)


def _row_to_spec(row: sqlite3.Row) -> AutonomousSpec:
    return AutonomousSpec(
        id=row["id"],
        session_id=row["session_id"],
        spec_json=json.loads(row["spec_json"]),
        locked_at=parse_dt(row["locked_at"]),
        created_at=parse_dt(row["created_at"]),
    )
