"""CLI entry point for the GitMind action pipeline."""

import json
import logging
import sys
from pathlib import Path

import click

from gitmind.config import get_config
from gitmind.core import activity as activity_mod
from gitmind.core import diffs as diffs_mod
from gitmind.core import executor as executor_mod
from gitmind.core import intents as intents_mod
from gitmind.core import repositories as repositories_mod
from gitmind.core import sessions as sessions_mod
from gitmind.core import tasks as tasks_mod
from gitmind.core.pipeline import EXECUTE_ACTION
from gitmind.db.engine import get_db
from gitmind.errors import GitMindError
from gitmind.integrations.generator import get_generator


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(e: GitMindError):
    click.echo(f"Error [{e.kind}]: {e.message}", err=True)
    for key, value in e.details.items():
        if isinstance(value, list):
            for item in value:
                click.echo(f"  {key}: {item}", err=True)
        else:
            click.echo(f"  {key}: {value}", err=True)
    sys.exit(1)


@click.group()
def main():
    """gitmind - AI action pipeline CLI"""
    logging.basicConfig(
        level=get_config().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Session Commands ─────────────────────────────────────────────────────────


@main.group("session")
def session_group():
    """Manage editing sessions."""
    pass


@session_group.command("create")
@click.argument("repo_id")
@click.option("--mode", type=click.Choice(sessions_mod.SESSION_MODES), default="action", help="Session mode")
def session_create(repo_id, mode):
    """Create a new session bound to a repository."""
    with _get_db() as db:
        try:
            session = sessions_mod.create_session(db, repo_id, mode)
        except GitMindError as e:
            _fail(e)
        click.echo(f"Created session: {session.id}")
        click.echo(f"  Repository: {session.repo_id}")
        click.echo(f"  Mode: {session.mode}")
        click.echo(f"  State: {session.state}")


@session_group.command("show")
@click.argument("session_id")
def session_show(session_id):
    """Show a session with its tasks."""
    with _get_db() as db:
        session = sessions_mod.get_session(db, session_id)
        if not session:
            click.echo(f"Session not found: {session_id}", err=True)
            sys.exit(1)

        click.echo(f"Session: {session.id}")
        click.echo(f"  Repository: {session.repo_id}")
        click.echo(f"  Mode: {session.mode}")
        click.echo(f"  State: {session.state}")
        allowed = sorted(sessions_mod.VALID_TRANSITIONS.get(session.state, ()))
        click.echo(f"  Next states: {', '.join(allowed)}")
        if session.updated_at:
            click.echo(f"  Updated: {session.updated_at}")

        tasks = tasks_mod.list_tasks(db, session_id)
        if tasks:
            click.echo(f"  Tasks:")
            for t in tasks:
                click.echo(f"    - {t.id}: {t.intent_type} ({t.status}, retries={t.retry_count})")


@session_group.command("list")
@click.option("--state", default=None, help="Filter by state")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def session_list(state, json_output):
    """List sessions."""
    with _get_db() as db:
        sessions = sessions_mod.list_sessions(db, state=state)

        if json_output:
            click.echo(json.dumps([_session_dict(s) for s in sessions], indent=2))
            return

        if not sessions:
            click.echo("No sessions found.")
            return

        for s in sessions:
            marker = "●" if s.state not in sessions_mod.RESTING_STATES else "○"
            click.echo(f"  {marker} {s.id} [{s.mode}] {s.state} (repo: {s.repo_id})")


@session_group.command("transition")
@click.argument("session_id")
@click.argument("state", type=click.Choice(sessions_mod.STATES, case_sensitive=False))
def session_transition(session_id, state):
    """Move a session to a new state."""
    with _get_db() as db:
        try:
            session = sessions_mod.transition_session(db, session_id, state.upper())
        except GitMindError as e:
            _fail(e)
        click.echo(f"Session {session.id} is now {session.state}")


@session_group.command("log")
@click.argument("session_id")
@click.option("--action", default=None, help="Filter by action (includes sub-actions)")
@click.option("--limit", default=100, type=int, help="Maximum entries to show")
def session_log(session_id, action, limit):
    """Show the activity log of a session."""
    with _get_db() as db:
        entries = activity_mod.list_activity(db, session_id=session_id, action=action, limit=limit)
        if not entries:
            click.echo("No activity recorded.")
            return
        for e in entries:
            extra = []
            if e.duration_ms is not None:
                extra.append(f"{e.duration_ms}ms")
            if e.retry_count is not None:
                extra.append(f"retries={e.retry_count}")
            if e.error_type:
                extra.append(e.error_type)
            suffix = f" ({', '.join(extra)})" if extra else ""
            click.echo(f"  [{e.created_at}] {e.action}{suffix}")


# ── Pipeline Commands ────────────────────────────────────────────────────────


@main.command("classify")
@click.argument("text", required=False, default="")
def classify_command(text):
    """Classify a change request into an intent."""
    result = intents_mod.classify(text)
    click.echo(f"Intent: {result.intent_type}")
    click.echo(f"  Confidence: {result.confidence:.2f}")
    click.echo(f"  Risk: {result.risk_level}")


@main.group("task")
def task_group():
    """Compile and inspect tasks."""
    pass


@task_group.command("compile")
@click.argument("session_id")
@click.argument("intent_type")
@click.argument("files", nargs=-1)
@click.option("--base-path", default=None, help="Repository directory the task is scoped to")
def task_compile(session_id, intent_type, files, base_path):
    """Compile a task from an intent and up to 8 file paths."""
    with _get_db() as db:
        try:
            task = tasks_mod.compile_task(db, session_id, intent_type, list(files), base_path)
        except GitMindError as e:
            _fail(e)
        click.echo(f"Compiled task: {task.id}")
        click.echo(f"  Intent: {task.intent_type}")
        click.echo(f"  Hash: {task.compiled_prompt_hash}")
        click.echo(f"  Files: {', '.join(task.allowed_files) or '(none)'}")
        if len(files) > len(task.allowed_files):
            click.echo(f"  Note: {len(files) - len(task.allowed_files)} file(s) beyond the limit were dropped")
        click.echo(f"  Status: {task.status}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Session: {task.session_id}")
        click.echo(f"  Intent: {task.intent_type}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Retries: {task.retry_count}")
        click.echo(f"  Base path: {task.base_path}")
        click.echo(f"  Files: {', '.join(task.allowed_files) or '(none)'}")
        click.echo(f"  Steps:")
        for step in task.steps:
            click.echo(f"    - {step['action']}")


@main.command("validate")
@click.argument("patch_file", type=click.File("r"))
@click.option("--allow", "allowed", multiple=True, help="Allowed target path (repeatable)")
@click.option("--base-path", default=None, help="Directory every target must lie under")
def validate_command(patch_file, allowed, base_path):
    """Validate a unified diff (use - for stdin)."""
    result = diffs_mod.validate_patch(patch_file.read(), list(allowed) or None, base_path)
    if result.valid:
        click.echo("Patch is valid.")
        return
    click.echo(f"Patch is invalid ({len(result.errors)} error(s)):", err=True)
    for error in result.errors:
        click.echo(f"  - {error}", err=True)
    sys.exit(1)


@main.command("execute")
@click.argument("session_id")
@click.argument("prompt")
@click.option("--file", "-f", "file_paths", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Local file to include as context (repeatable)")
@click.option("--intent", default=None, help="Intent type (classified from the prompt if omitted)")
@click.option("--task", "task_id", default=None, help="Compiled task to record the outcome on")
def execute_command(session_id, prompt, file_paths, intent, task_id):
    """Generate a validated patch for an EXECUTING session."""
    config = get_config()
    intent_type = intent or intents_mod.classify(prompt).intent_type
    files = [{"path": p, "content": Path(p).read_text()} for p in file_paths]

    with _get_db() as db:
        try:
            activity_mod.check_rate_limit(db, session_id, EXECUTE_ACTION, config.execute_rate_limit)
            result = executor_mod.execute_action(
                db,
                get_generator(config),
                session_id,
                intent_type,
                files,
                prompt,
                task_id=task_id,
                max_retries=config.max_retries,
            )
        except GitMindError as e:
            _fail(e)

    click.echo(result.commit_message)
    click.echo(result.patches)
    click.echo(f"(retries: {result.retries})", err=True)


# ── Repository Commands ──────────────────────────────────────────────────────


@main.group("repo")
def repo_group():
    """Manage attached repositories."""
    pass


@repo_group.command("attach")
@click.argument("owner")
@click.argument("name")
@click.option("--user", "user_id", default="local", help="Owning user ID")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--base-path", default=None, help="Directory the pipeline is scoped to")
def repo_attach(owner, name, user_id, branch, base_path):
    """Attach a repository."""
    config = get_config()
    with _get_db() as db:
        try:
            repo = repositories_mod.attach_repository(
                db, user_id, owner, name, branch, base_path, config.max_repositories
            )
        except GitMindError as e:
            _fail(e)
        click.echo(f"Attached repository: {repo.id} ({repo.full_name})")
        click.echo(f"  Branch: {repo.default_branch}")
        if repo.base_path:
            click.echo(f"  Base path: {repo.base_path}")


@repo_group.command("list")
@click.option("--user", "user_id", default=None, help="Filter by user ID")
def repo_list(user_id):
    """List attached repositories."""
    with _get_db() as db:
        repos = repositories_mod.list_repositories(db, user_id=user_id)
        if not repos:
            click.echo("No repositories attached.")
            return
        for r in repos:
            click.echo(f"  {r.id}: {r.full_name} ({r.default_branch})")


@repo_group.command("remove")
@click.argument("repo_id")
def repo_remove(repo_id):
    """Detach a repository."""
    with _get_db() as db:
        try:
            removed = repositories_mod.delete_repository(db, repo_id)
        except GitMindError as e:
            _fail(e)
        if not removed:
            click.echo(f"Repository not found: {repo_id}", err=True)
            sys.exit(1)
        click.echo(f"Removed repository: {repo_id}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API."""
    from gitmind.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from gitmind.mcp.server import mcp
    from gitmind.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _session_dict(session) -> dict:
    return {
        "id": session.id,
        "repo_id": session.repo_id,
        "mode": session.mode,
        "state": session.state,
        "created_at": session.created_at.isoformat() if session.created_at else None,
        "updated_at": session.updated_at.isoformat() if session.updated_at else None,
    }


if __name__ == "__main__":
    main()
