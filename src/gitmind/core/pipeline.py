"""One full action: classify, compile, execute, with the session transitions around it."""

import logging
import sqlite3
from dataclasses import dataclass

from gitmind.core import executor as executor_mod
from gitmind.core import intents as intents_mod
from gitmind.core import sessions as sessions_mod
from gitmind.core import tasks as tasks_mod
from gitmind.core.activity import check_rate_limit
from gitmind.db.models import IntentResult, Session, Task
from gitmind.errors import GitMindError
from gitmind.integrations.generator import Generator

logger = logging.getLogger(__name__)

EXECUTE_ACTION = "ai.execute"


@dataclass
class ActionOutcome:
    session: Session
    intent: IntentResult
    task: Task
    result: executor_mod.ExecutionResult


def run_action(
    db: sqlite3.Connection,
    generator: Generator,
    session_id: str,
    user_prompt: str,
    files,
    base_path: str | None = None,
    max_retries: int = executor_mod.DEFAULT_MAX_RETRIES,
    rate_limit: int | None = None,
) -> ActionOutcome:
    """Drive a resting, PLANNING, SPEC_LOCKED or VALIDATING session through one generation.

    On success the session ends in DONE. On any pipeline error it is moved to
    FAILED and the error is re-raised.
    """
    files = list(files or [])
    if rate_limit is not None:
        check_rate_limit(db, session_id, EXECUTE_ACTION, rate_limit)

    intent = intents_mod.classify(user_prompt)

    # No task is compiled until the session has reached EXECUTING
    session = sessions_mod.require_session(db, session_id)
    if session.state in ("DONE", "FAILED"):
        session = sessions_mod.transition_session(db, session_id, "IDLE")
    if session.state == "IDLE":
        sessions_mod.transition_session(db, session_id, "PLANNING")
    sessions_mod.transition_session(db, session_id, "EXECUTING")

    try:
        paths = [executor_mod.file_parts(f)[0] for f in files]
        task = tasks_mod.compile_task(db, session_id, intent.intent_type, paths, base_path)
        result = executor_mod.execute_action(
            db,
            generator,
            session_id,
            intent.intent_type,
            files,
            user_prompt,
            task_id=task.id,
            max_retries=max_retries,
        )
    except GitMindError:
        sessions_mod.transition_session(db, session_id, "FAILED")
        raise

    session = sessions_mod.transition_session(db, session_id, "DONE")
    return ActionOutcome(
        session=session,
        intent=intent,
        task=tasks_mod.get_task(db, task.id),
        result=result,
    )
