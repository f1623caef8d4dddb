"""MCP server exposing the action pipeline as tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from gitmind.config import Config, get_config
from gitmind.core import activity as activity_mod
from gitmind.core import diffs as diffs_mod
from gitmind.core import executor as executor_mod
from gitmind.core import intents as intents_mod
from gitmind.core import sessions as sessions_mod
from gitmind.core import tasks as tasks_mod
from gitmind.core.pipeline import EXECUTE_ACTION
from gitmind.db.engine import init_db
from gitmind.errors import GitMindError
from gitmind.integrations.generator import get_generator


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("gitmind", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Session Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def create_session(ctx: Context, repo_id: str, mode: str = "action") -> dict:
    """Create a session for a repository. Modes: chat, action, autonomous.

    Fails while another session is active (not IDLE, DONE or FAILED).
    """
    app = _ctx(ctx)
    try:
        session = sessions_mod.create_session(app.db, repo_id, mode)
    except GitMindError as e:
        return e.to_dict()
    return _session_to_dict(session)


@mcp.tool()
def get_session(ctx: Context, session_id: str) -> dict:
    """Get a session's state and the states it may move to next."""
    app = _ctx(ctx)
    session = sessions_mod.get_session(app.db, session_id)
    if not session:
        return {"error": f"Session not found: {session_id}", "kind": "NotFound"}
    return _session_to_dict(session)


@mcp.tool()
def transition_session(ctx: Context, session_id: str, state: str) -> dict:
    """Move a session to a new state.

    Allowed: IDLE->PLANNING, PLANNING->SPEC_LOCKED/EXECUTING/FAILED,
    SPEC_LOCKED->EXECUTING/FAILED, EXECUTING->VALIDATING/DONE/FAILED,
    VALIDATING->EXECUTING/DONE/FAILED, DONE->IDLE, FAILED->IDLE.
    """
    app = _ctx(ctx)
    try:
        session = sessions_mod.transition_session(app.db, session_id, state)
    except GitMindError as e:
        return e.to_dict()
    return _session_to_dict(session)


@mcp.tool()
def get_activity(ctx: Context, session_id: str, action: str | None = None) -> list[dict]:
    """Read a session's audit log, oldest first."""
    app = _ctx(ctx)
    entries = activity_mod.list_activity(app.db, session_id=session_id, action=action)
    return [
        {
            "action": e.action,
            "duration_ms": e.duration_ms,
            "retry_count": e.retry_count,
            "error_type": e.error_type,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in entries
    ]


# ── Pipeline Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def classify_intent(text: str) -> dict:
    """Classify a change request into an intent type, confidence and risk level."""
    result = intents_mod.classify(text)
    return {
        "intent_type": result.intent_type,
        "confidence": result.confidence,
        "risk_level": result.risk_level,
    }


@mcp.tool()
def compile_task(
    ctx: Context,
    session_id: str,
    intent_type: str,
    files: list[str],
    base_path: str | None = None,
) -> dict:
    """Compile a pending task. Only the first 8 file paths are kept."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.compile_task(app.db, session_id, intent_type, files, base_path)
    except GitMindError as e:
        return e.to_dict()
    return _task_to_dict(task)


@mcp.tool()
def execute_action(
    ctx: Context,
    session_id: str,
    intent_type: str,
    files: list[dict],
    user_prompt: str,
    task_id: str | None = None,
) -> dict:
    """Generate a validated unified diff. Each file is {"path": ..., "content": ...}.

    The session must be EXECUTING; move it on to VALIDATING, DONE or FAILED afterwards.
    """
    app = _ctx(ctx)
    config = app.config
    try:
        activity_mod.check_rate_limit(app.db, session_id, EXECUTE_ACTION, config.execute_rate_limit)
        result = executor_mod.execute_action(
            app.db,
            get_generator(config),
            session_id,
            intent_type,
            files,
            user_prompt,
            task_id=task_id,
            max_retries=config.max_retries,
        )
    except GitMindError as e:
        return e.to_dict()
    return result.to_dict()


@mcp.tool()
def validate_patch(
    patch: str,
    allowed_files: list[str] | None = None,
    base_path: str | None = None,
) -> dict:
    """Check a unified diff for format, dangerous code and file-policy violations."""
    result = diffs_mod.validate_patch(patch, allowed_files, base_path)
    return {"valid": result.valid, "errors": result.errors}


# ── Helpers ──────────────────────────────────────────────────────────────────


def _session_to_dict(session) -> dict:
    return {
        "id": session.id,
        "repo_id": session.repo_id,
        "mode": session.mode,
        "state": session.state,
        "next_states": sorted(sessions_mod.VALID_TRANSITIONS.get(session.state, ())),
        "updated_at": session.updated_at.isoformat() if session.updated_at else None,
    }


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "session_id": task.session_id,
        "intent_type": task.intent_type,
        "compiled_prompt_hash": task.compiled_prompt_hash,
        "allowed_files": task.allowed_files,
        "base_path": task.base_path,
        "steps": task.steps,
        "status": task.status,
        "retry_count": task.retry_count,
    }
