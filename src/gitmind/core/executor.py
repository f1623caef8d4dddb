"""Execution orchestrator: generate a patch, validate it, retry within a fixed budget."""

import logging
import sqlite3
import time
from dataclasses import dataclass, field

from gitmind.core.activity import log_activity
from gitmind.core.diffs import validate_patch
from gitmind.core.sessions import require_session
from gitmind.core.tasks import MAX_TASK_FILES, get_task, update_task_status
from gitmind.db.models import DiffValidationResult
from gitmind.errors import GitMindError, NotFound, PatchValidationFailed, StateViolation
from gitmind.integrations.generator import Generator

logger = logging.getLogger(__name__)

COMMIT_TAG = "[GitMind]"
DEFAULT_COMMIT_MESSAGE = f"{COMMIT_TAG} AI-generated changes"
DEFAULT_MAX_RETRIES = 2
PREVIEW_CHARS = 200

SYSTEM_PROMPT_TEMPLATE = """You are a precise code modification engine. You MUST follow these rules EXACTLY:

1. ONLY modify the files provided below. Never reference or create other files.
2. Return your changes as UNIFIED DIFF format only.
3. Include a commit message on the first line prefixed with "{tag}"
4. Do NOT include any explanation, commentary, or markdown formatting.
5. Each file diff must start with "--- a/<filepath>" and "+++ b/<filepath>"
6. Use proper @@ hunk headers.

Intent: {intent_type}
User request: {user_prompt}

Files:
{file_context}

Respond with ONLY the commit message line followed by unified diff patches."""


@dataclass
class ExecutionResult:
    patches: str
    commit_message: str
    retries: int

    def to_dict(self) -> dict:
        return {
            "patches": self.patches,
            "commit_message": self.commit_message,
            "retries": self.retries,
        }


@dataclass
class GenerationOutcome:
    """Result of the bounded generate/validate loop.

    ``status`` is ``"success"`` when a candidate passed validation and
    ``"exhausted"`` when every attempt produced an invalid patch.
    """

    status: str
    retries: int
    patches: str = ""
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    raw_output: str = ""
    validation: DiffValidationResult = field(default_factory=lambda: DiffValidationResult(valid=False))

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


def file_parts(f) -> tuple[str, str]:
    if isinstance(f, dict):
        return f["path"], f.get("content", "")
    return f.path, f.content


def build_file_context(files) -> str:
    return "\n\n".join(f"--- {path} ---\n{content}" for path, content in map(file_parts, files))


def build_system_prompt(intent_type: str, user_prompt: str, file_context: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        tag=COMMIT_TAG,
        intent_type=intent_type,
        user_prompt=user_prompt,
        file_context=file_context,
    )


def parse_output(raw_output: str) -> tuple[str, str]:
    """Split model output into (commit message, patch).

    The first line is the commit message and always carries the commit tag.
    """
    first, _, rest = (raw_output or "").partition("\n")
    message = first.strip()
    if message.startswith(COMMIT_TAG):
        message = f"{COMMIT_TAG} {message[len(COMMIT_TAG):].lstrip()}".rstrip()
    elif message:
        message = f"{COMMIT_TAG} {message}"
    if message == COMMIT_TAG or not message:
        message = DEFAULT_COMMIT_MESSAGE
    return message, rest.strip()


def run_generation_loop(
    generator: Generator,
    system_prompt: str,
    user_prompt: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    allowed_files: list[str] | None = None,
    base_path: str | None = None,
) -> GenerationOutcome:
    """Call the generator up to ``max_retries + 1`` times until a patch validates.

    Generator errors propagate immediately and are never retried here. The
    index of the failing attempt is recorded as ``retries`` in their details.
    """
    outcome = GenerationOutcome(status="exhausted", retries=0)
    for attempt in range(max_retries + 1):
        try:
            raw_output = generator.generate(system_prompt, user_prompt)
        except GitMindError as e:
            e.details["retries"] = attempt
            raise
        commit_message, patches = parse_output(raw_output)
        validation = validate_patch(patches, allowed_files, base_path)

        outcome = GenerationOutcome(
            status="success" if validation.valid else "exhausted",
            retries=attempt,
            patches=patches,
            commit_message=commit_message,
            raw_output=raw_output,
            validation=validation,
        )
        if validation.valid:
            return outcome

        logger.info(
            "Attempt %d/%d produced an invalid patch: %s",
            attempt + 1, max_retries + 1, "; ".join(validation.errors),
        )
    return outcome


def execute_action(
    db: sqlite3.Connection,
    generator: Generator,
    session_id: str,
    intent_type: str,
    files,
    user_prompt: str,
    task_id: str | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> ExecutionResult:
    """Generate and validate a patch for the given files.

    The session must be EXECUTING; moving it there and on afterwards is the
    caller's job. Writes exactly one audit entry for the outcome. With a task,
    patches must stay inside its allowed files and base path, and the task is
    moved through running to completed/failed.
    """
    session = require_session(db, session_id)
    if session.state != "EXECUTING":
        raise StateViolation(
            f"Session {session_id} is {session.state}, not EXECUTING",
            current_state=session.state,
            target_state="EXECUTING",
        )

    allowed_files, base_path = None, None
    if task_id:
        task = get_task(db, task_id)
        if not task:
            raise NotFound(f"Task not found: {task_id}", task_id=task_id)
        if task.session_id != session_id:
            raise StateViolation(f"Task {task_id} belongs to another session", task_id=task_id)
        allowed_files, base_path = task.allowed_files, task.base_path

    files = list(files or [])[:MAX_TASK_FILES]
    system_prompt = build_system_prompt(intent_type, user_prompt, build_file_context(files))

    if task_id:
        update_task_status(db, task_id, "running")

    start = time.monotonic()
    try:
        outcome = run_generation_loop(
            generator, system_prompt, user_prompt, max_retries, allowed_files, base_path
        )
    except GitMindError as e:
        duration_ms = _elapsed_ms(start)
        retries = e.details.get("retries", 0)
        log_activity(
            db, session_id, "ai.execute.error",
            duration_ms=duration_ms, retry_count=retries, error_type=e.kind,
        )
        if task_id:
            update_task_status(
                db, task_id, "failed",
                retry_count=retries,
                result={"error_kind": e.kind, "error": e.message},
            )
        logger.warning("Execution for session %s failed: %s (%s)", session_id, e.message, e.kind)
        raise

    duration_ms = _elapsed_ms(start)

    if not outcome.succeeded:
        errors = outcome.validation.errors
        log_activity(
            db,
            session_id,
            "ai.execute.failed",
            duration_ms=duration_ms,
            retry_count=outcome.retries,
            error_type="; ".join(errors),
        )
        if task_id:
            update_task_status(
                db, task_id, "failed",
                retry_count=outcome.retries,
                result={"error_kind": PatchValidationFailed.kind, "validation_errors": errors},
            )
        logger.warning("Execution for session %s exhausted %d retries", session_id, outcome.retries)
        raise PatchValidationFailed(
            "AI output validation failed after retries",
            validation_errors=errors,
            retries=outcome.retries,
            raw_output_preview=outcome.raw_output[:PREVIEW_CHARS],
        )

    log_activity(db, session_id, "ai.execute.success", duration_ms=duration_ms, retry_count=outcome.retries)
    result = ExecutionResult(
        patches=outcome.patches,
        commit_message=outcome.commit_message,
        retries=outcome.retries,
    )
    if task_id:
        update_task_status(db, task_id, "completed", retry_count=outcome.retries, result=result.to_dict())
    logger.info("Execution for session %s succeeded after %d retries", session_id, outcome.retries)
    return result


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
