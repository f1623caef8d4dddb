"""HTTP API for the action pipeline."""

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from gitmind.config import get_config
from gitmind.core import activity as activity_mod
from gitmind.core import chat as chat_mod
from gitmind.core import commits as commits_mod
from gitmind.core import diffs as diffs_mod
from gitmind.core import executor as executor_mod
from gitmind.core import intents as intents_mod
from gitmind.core import repositories as repositories_mod
from gitmind.core import sessions as sessions_mod
from gitmind.core import specs as specs_mod
from gitmind.core import tasks as tasks_mod
from gitmind.core.pipeline import EXECUTE_ACTION
from gitmind.db.engine import init_db
from gitmind.errors import GitMindError, NotFound
from gitmind.integrations.generator import get_generator
from gitmind.integrations.github import get_source_host


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _generator(request: Request):
    return request.app.state.generator or get_generator(get_config())


def _source_host(request: Request, repository):
    factory = request.app.state.source_host_factory
    if factory:
        return factory(repository)
    return get_source_host(get_config(), repository)


async def _body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise ValueError("Request body must be a JSON object") from None
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _required(data: dict, *keys: str):
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        raise ValueError(f"Missing required field(s): {', '.join(missing)}")
    return [data[k] for k in keys]


# ── Sessions ─────────────────────────────────────────────────────────────────


async def api_create_session(request: Request):
    data = await _body(request)
    (repo_id,) = _required(data, "repo_id")
    db = _get_db()
    try:
        session = sessions_mod.create_session(db, repo_id, data.get("mode", "action"))
        return JSONResponse(_session_dict(session), status_code=201)
    finally:
        db.close()


async def api_list_sessions(request: Request):
    db = _get_db()
    try:
        sessions = sessions_mod.list_sessions(db, state=request.query_params.get("state"))
        return JSONResponse([_session_dict(s) for s in sessions])
    finally:
        db.close()


async def api_get_session(request: Request):
    session_id = request.path_params["session_id"]
    db = _get_db()
    try:
        session = sessions_mod.require_session(db, session_id)
        sd = _session_dict(session)
        sd["tasks"] = [_task_dict(t) for t in tasks_mod.list_tasks(db, session_id)]
        return JSONResponse(sd)
    finally:
        db.close()


async def api_transition_session(request: Request):
    session_id = request.path_params["session_id"]
    data = await _body(request)
    (state,) = _required(data, "state")
    db = _get_db()
    try:
        session = sessions_mod.transition_session(db, session_id, state)
        return JSONResponse(_session_dict(session))
    finally:
        db.close()


async def api_session_activity(request: Request):
    session_id = request.path_params["session_id"]
    db = _get_db()
    try:
        entries = activity_mod.list_activity(
            db, session_id=session_id, action=request.query_params.get("action")
        )
        return JSONResponse([_activity_dict(e) for e in entries])
    finally:
        db.close()


# ── Pipeline ─────────────────────────────────────────────────────────────────


async def api_classify(request: Request):
    data = await _body(request)
    result = intents_mod.classify(data.get("input") or "")
    return JSONResponse(_intent_dict(result))


async def api_compile_task(request: Request):
    session_id = request.path_params["session_id"]
    data = await _body(request)
    (intent_type,) = _required(data, "intent_type")
    db = _get_db()
    try:
        task = tasks_mod.compile_task(
            db, session_id, intent_type, data.get("files") or [], data.get("base_path")
        )
        return JSONResponse(_task_dict(task), status_code=201)
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            raise NotFound(f"Task not found: {task_id}")
        return JSONResponse(_task_dict(task))
    finally:
        db.close()


async def api_execute(request: Request):
    session_id = request.path_params["session_id"]
    data = await _body(request)
    intent_type, user_prompt = _required(data, "intent_type", "user_prompt")
    files = data.get("files") or []
    if any(not isinstance(f, dict) or "path" not in f for f in files):
        raise ValueError("Each file must be an object with 'path' and 'content'")

    config = get_config()
    generator = _generator(request)

    def execute():
        db = _get_db()
        try:
            activity_mod.check_rate_limit(db, session_id, EXECUTE_ACTION, config.execute_rate_limit)
            return executor_mod.execute_action(
                db,
                generator,
                session_id,
                intent_type,
                files,
                user_prompt,
                task_id=data.get("task_id"),
                max_retries=config.max_retries,
            )
        finally:
            db.close()

    result = await run_in_threadpool(execute)
    return JSONResponse(result.to_dict())


async def api_validate(request: Request):
    data = await _body(request)
    result = diffs_mod.validate_patch(
        data.get("patch") or "",
        allowed_files=data.get("allowed_files"),
        base_path=data.get("base_path"),
    )
    return JSONResponse({"valid": result.valid, "errors": result.errors})


# ── Repositories ─────────────────────────────────────────────────────────────


async def api_attach_repository(request: Request):
    data = await _body(request)
    user_id, owner, name = _required(data, "user_id", "owner", "name")
    config = get_config()
    db = _get_db()
    try:
        repo = repositories_mod.attach_repository(
            db,
            user_id,
            owner,
            name,
            default_branch=data.get("default_branch") or "main",
            base_path=data.get("base_path"),
            max_repositories=config.max_repositories,
        )
        return JSONResponse(_repository_dict(repo), status_code=201)
    finally:
        db.close()


async def api_list_repositories(request: Request):
    db = _get_db()
    try:
        repos = repositories_mod.list_repositories(db, user_id=request.query_params.get("user_id"))
        return JSONResponse([_repository_dict(r) for r in repos])
    finally:
        db.close()


async def api_delete_repository(request: Request):
    repo_id = request.path_params["repo_id"]
    db = _get_db()
    try:
        if not repositories_mod.delete_repository(db, repo_id):
            raise NotFound(f"Repository not found: {repo_id}")
        return JSONResponse({"deleted": repo_id})
    finally:
        db.close()


async def api_repository_tree(request: Request):
    repo_id = request.path_params["repo_id"]
    db = _get_db()
    try:
        repo = repositories_mod.require_repository(db, repo_id)
    finally:
        db.close()
    host = _source_host(request, repo)
    ref = request.query_params.get("ref") or repo.default_branch
    prefix = request.query_params.get("base_path") or repo.base_path
    entries = await run_in_threadpool(host.list_tree, ref, prefix)
    return JSONResponse([{"path": e.path, "size": e.size, "sha": e.sha} for e in entries])


async def api_repository_file(request: Request):
    repo_id = request.path_params["repo_id"]
    path = request.query_params.get("path")
    if not path:
        raise ValueError("Missing required query parameter: path")
    db = _get_db()
    try:
        repo = repositories_mod.require_repository(db, repo_id)
    finally:
        db.close()
    host = _source_host(request, repo)
    f = await run_in_threadpool(host.read_file, path, request.query_params.get("ref"))
    return JSONResponse({"path": f.path, "content": f.content, "sha": f.sha, "size": f.size})


async def api_commit_file(request: Request):
    repo_id = request.path_params["repo_id"]
    data = await _body(request)
    path, content, message = _required(data, "path", "content", "message")
    config = get_config()

    def commit():
        db = _get_db()
        try:
            repo = repositories_mod.require_repository(db, repo_id)
            return commits_mod.commit_file(
                db,
                _source_host(request, repo),
                data.get("session_id"),
                path,
                content,
                message,
                data.get("sha"),
                branch=data.get("branch") or repo.default_branch,
                limit=config.commit_rate_limit,
            )
        finally:
            db.close()

    result = await run_in_threadpool(commit)
    return JSONResponse({"commit_id": result.commit_id, "path": result.path, "message": result.message})


# ── Autonomous specs ─────────────────────────────────────────────────────────


async def api_save_spec(request: Request):
    session_id = request.path_params["session_id"]
    data = await _body(request)
    spec_json = data.get("spec")
    if not isinstance(spec_json, dict):
        raise ValueError("'spec' must be a JSON object")
    db = _get_db()
    try:
        spec = specs_mod.save_spec(db, session_id, spec_json)
        return JSONResponse(_spec_dict(spec))
    finally:
        db.close()


async def api_get_spec(request: Request):
    session_id = request.path_params["session_id"]
    db = _get_db()
    try:
        spec = specs_mod.get_spec(db, session_id)
        if not spec:
            raise NotFound(f"No spec for session: {session_id}")
        return JSONResponse(_spec_dict(spec))
    finally:
        db.close()


async def api_lock_spec(request: Request):
    spec_id = request.path_params["spec_id"]
    db = _get_db()
    try:
        spec = specs_mod.lock_spec(db, spec_id)
        return JSONResponse(_spec_dict(spec))
    finally:
        db.close()


# ── Chat ─────────────────────────────────────────────────────────────────────


async def api_chat_messages(request: Request):
    session_id = request.path_params["session_id"]
    db = _get_db()
    try:
        if request.method == "POST":
            data = await _body(request)
            role, content = _required(data, "role", "content")
            msg = chat_mod.save_message(db, session_id, role, content, data.get("file_context"))
            return JSONResponse(_message_dict(msg), status_code=201)
        return JSONResponse([_message_dict(m) for m in chat_mod.get_messages(db, session_id)])
    finally:
        db.close()


async def api_chat_revert(request: Request):
    session_id = request.path_params["session_id"]
    data = await _body(request)
    (message_id,) = _required(data, "message_id")
    db = _get_db()
    try:
        messages = chat_mod.revert_to_message(db, session_id, int(message_id))
        return JSONResponse([_message_dict(m) for m in messages])
    finally:
        db.close()


async def api_chat_reply(request: Request):
    session_id = request.path_params["session_id"]
    data = await _body(request)
    (content,) = _required(data, "content")
    generator = _generator(request)

    def answer():
        db = _get_db()
        try:
            return chat_mod.reply(db, generator, session_id, content, data.get("file_context"))
        finally:
            db.close()

    msg = await run_in_threadpool(answer)
    return JSONResponse(_message_dict(msg))


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt):
    return dt.isoformat() if dt else None


def _session_dict(s) -> dict:
    return {
        "id": s.id,
        "repo_id": s.repo_id,
        "mode": s.mode,
        "state": s.state,
        "created_at": _iso(s.created_at),
        "updated_at": _iso(s.updated_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "session_id": t.session_id,
        "intent_type": t.intent_type,
        "compiled_prompt_hash": t.compiled_prompt_hash,
        "allowed_files": t.allowed_files,
        "base_path": t.base_path,
        "steps": t.steps,
        "status": t.status,
        "retry_count": t.retry_count,
        "result": t.result,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def _intent_dict(r) -> dict:
    return {
        "intent_type": r.intent_type,
        "confidence": r.confidence,
        "risk_level": r.risk_level,
    }


def _activity_dict(e) -> dict:
    return {
        "id": e.id,
        "session_id": e.session_id,
        "action": e.action,
        "duration_ms": e.duration_ms,
        "retry_count": e.retry_count,
        "error_type": e.error_type,
        "created_at": _iso(e.created_at),
    }


def _repository_dict(r) -> dict:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "owner": r.owner,
        "name": r.name,
        "default_branch": r.default_branch,
        "base_path": r.base_path,
        "created_at": _iso(r.created_at),
    }


def _spec_dict(s) -> dict:
    return {
        "id": s.id,
        "session_id": s.session_id,
        "spec": s.spec_json,
        "locked_at": _iso(s.locked_at),
        "created_at": _iso(s.created_at),
    }


def _message_dict(m) -> dict:
    return {
        "id": m.id,
        "session_id": m.session_id,
        "role": m.role,
        "content": m.content,
        "file_context": m.file_context,
        "created_at": _iso(m.created_at),
    }


# ── Errors ───────────────────────────────────────────────────────────────────


async def _pipeline_error(request: Request, exc: GitMindError):
    headers = None
    if "retry_after" in exc.details:
        headers = {"Retry-After": str(exc.details["retry_after"])}
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


async def _bad_request(request: Request, exc: ValueError):
    return JSONResponse({"error": str(exc), "kind": "BadRequest"}, status_code=400)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(generator=None, source_host_factory=None) -> Starlette:
    """Build the API app. Collaborators default to the configured clients."""
    routes = [
        Route("/api/sessions", api_create_session, methods=["POST"]),
        Route("/api/sessions", api_list_sessions, methods=["GET"]),
        Route("/api/sessions/{session_id}", api_get_session),
        Route("/api/sessions/{session_id}/transition", api_transition_session, methods=["POST"]),
        Route("/api/sessions/{session_id}/activity", api_session_activity),
        Route("/api/sessions/{session_id}/tasks", api_compile_task, methods=["POST"]),
        Route("/api/sessions/{session_id}/execute", api_execute, methods=["POST"]),
        Route("/api/sessions/{session_id}/spec", api_get_spec, methods=["GET"]),
        Route("/api/sessions/{session_id}/spec", api_save_spec, methods=["PUT", "POST"]),
        Route("/api/sessions/{session_id}/messages", api_chat_messages, methods=["GET", "POST"]),
        Route("/api/sessions/{session_id}/messages/revert", api_chat_revert, methods=["POST"]),
        Route("/api/sessions/{session_id}/chat", api_chat_reply, methods=["POST"]),
        Route("/api/specs/{spec_id}/lock", api_lock_spec, methods=["POST"]),
        Route("/api/intents/classify", api_classify, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/diffs/validate", api_validate, methods=["POST"]),
        Route("/api/repositories", api_attach_repository, methods=["POST"]),
        Route("/api/repositories", api_list_repositories, methods=["GET"]),
        Route("/api/repositories/{repo_id}", api_delete_repository, methods=["DELETE"]),
        Route("/api/repositories/{repo_id}/tree", api_repository_tree),
        Route("/api/repositories/{repo_id}/file", api_repository_file),
        Route("/api/repositories/{repo_id}/commits", api_commit_file, methods=["POST"]),
    ]
    app = Starlette(
        routes=routes,
        exception_handlers={GitMindError: _pipeline_error, ValueError: _bad_request},
    )
    app.state.generator = generator
    app.state.source_host_factory = source_host_factory
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
