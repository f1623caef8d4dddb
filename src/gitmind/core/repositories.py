"""Repository attachment with a global cap on attached repositories."""

import sqlite3
import uuid

from gitmind.db.engine import immediate_transaction
from gitmind.db.models import Repository, parse_dt
from gitmind.errors import LimitReached, NotFound, StateViolation

DEFAULT_MAX_REPOSITORIES = 5


def attach_repository(
    db: sqlite3.Connection,
    user_id: str,
    owner: str,
    name: str,
    default_branch: str = "main",
    base_path: str | None = None,
    max_repositories: int = DEFAULT_MAX_REPOSITORIES,
) -> Repository:
    """Attach a repository. The count check and insert share one write transaction."""
    repo_id = str(uuid.uuid4())
    with immediate_transaction(db):
        count = db.execute("SELECT COUNT(*) AS n FROM repositories").fetchone()["n"]
        if count >= max_repositories:
            raise LimitReached(
                f"Max {max_repositories} repositories allowed",
                max_repositories=max_repositories,
            )
        db.execute(
            """INSERT INTO repositories (id, user_id, owner, name, default_branch, base_path)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (repo_id, user_id, owner, name, default_branch, base_path),
        )
    return get_repository(db, repo_id)


def get_repository(db: sqlite3.Connection, repo_id: str) -> Repository | None:
    """Get a repository by ID."""
    row = db.execute("SELECT * FROM repositories WHERE id = ?", (repo_id,)).fetchone()
    if not row:
        return None
    return _row_to_repository(row)


def require_repository(db: sqlite3.Connection, repo_id: str) -> Repository:
    repo = get_repository(db, repo_id)
    if not repo:
        raise NotFound(f"Repository not found: {repo_id}", repo_id=repo_id)
    return repo


def list_repositories(db: sqlite3.Connection, user_id: str | None = None) -> list[Repository]:
    """List repositories, newest first."""
    if user_id:
        rows = db.execute(
            "SELECT * FROM repositories WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM repositories ORDER BY created_at DESC, rowid DESC").fetchall()
    return [_row_to_repository(r) for r in rows]


def delete_repository(db: sqlite3.Connection, repo_id: str) -> bool:
    """Detach a repository. Refused while one of its sessions is active."""
    if not get_repository(db, repo_id):
        return False

    active = db.execute(
        "SELECT id FROM sessions WHERE repo_id = ? AND state NOT IN ('IDLE', 'DONE', 'FAILED')",
        (repo_id,),
    ).fetchone()
    if active:
        raise StateViolation(
            f"Repository {repo_id} has an active session",
            active_session_id=active["id"],
        )

    db.execute("DELETE FROM repositories WHERE id = ?", (repo_id,))
    db.commit()
    return True


def _row_to_repository(row: sqlite3.Row) -> Repository:
    return Repository(
        id=row["id"],
        user_id=row["user_id"],
        owner=row["owner"],
        name=row["name"],
        default_branch=row["default_branch"],
        base_path=row["base_path"],
        created_at=parse_dt(row["created_at"]),
    )
