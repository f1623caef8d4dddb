"""Tests for the HTTP API."""

import os
import tempfile
from pathlib import Path

import pytest
from starlette.concurrency import run_in_threadpool
from starlette.testclient import TestClient

from conftest import INVALID_OUTPUT, VALID_OUTPUT, FakeGenerator, FakeSourceHost
from gitmind.core import repositories as repositories_mod
from gitmind.db.engine import init_db
from gitmind.web import app as web_app
from gitmind.web.app import create_app

ENV_KEYS = ("GITMIND_DB_PATH", "GITMIND_AI_API_KEY", "GITHUB_TOKEN", "GITMIND_EXECUTE_RATE_LIMIT")


@pytest.fixture
def web_env():
    """Set up a temp environment with a seeded repository and fake collaborators."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        old_env = {k: os.environ.get(k) for k in ENV_KEYS}
        for k in ENV_KEYS:
            os.environ.pop(k, None)
        os.environ["GITMIND_DB_PATH"] = str(db_path)

        db = init_db(db_path)
        repo = repositories_mod.attach_repository(db, "u1", "acme", "shop", base_path="src")
        db.close()

        generator = FakeGenerator()
        host = FakeSourceHost()
        app = create_app(generator=generator, source_host_factory=lambda repository: host)
        client = TestClient(app)
        yield client, generator, host, repo

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _create_session(client, mode="action"):
    resp = client.post("/api/sessions", json={"repo_id": "repo-1", "mode": mode})
    assert resp.status_code == 201
    return resp.json()


def _executing_session(client):
    session = _create_session(client)
    for state in ("PLANNING", "EXECUTING"):
        resp = client.post(f"/api/sessions/{session['id']}/transition", json={"state": state})
        assert resp.status_code == 200
    return resp.json()


class TestSessionsAPI:
    def test_create_and_get(self, web_env):
        client, *_ = web_env
        session = _create_session(client)
        assert session["state"] == "IDLE"

        resp = client.get(f"/api/sessions/{session['id']}")
        assert resp.status_code == 200
        assert resp.json()["tasks"] == []

    def test_missing_repo_id(self, web_env):
        client, *_ = web_env
        resp = client.post("/api/sessions", json={})
        assert resp.status_code == 400
        assert resp.json()["kind"] == "BadRequest"

    def test_non_object_body(self, web_env):
        client, *_ = web_env
        resp = client.post("/api/sessions", json=["repo-1"])
        assert resp.status_code == 400

    def test_second_active_session_conflicts(self, web_env):
        client, *_ = web_env
        session = _create_session(client)
        client.post(f"/api/sessions/{session['id']}/transition", json={"state": "PLANNING"})

        resp = client.post("/api/sessions", json={"repo_id": "repo-2"})
        assert resp.status_code == 409
        body = resp.json()
        assert body["kind"] == "StateViolation"
        assert body["error"] == "Max 1 active session allowed"
        assert body["active_session_id"] == session["id"]

    def test_invalid_transition(self, web_env):
        client, *_ = web_env
        session = _create_session(client)
        resp = client.post(f"/api/sessions/{session['id']}/transition", json={"state": "DONE"})
        assert resp.status_code == 409
        assert resp.json()["current_state"] == "IDLE"

        activity = client.get(f"/api/sessions/{session['id']}/activity").json()
        assert activity[0]["action"] == "session.transition.rejected"

    def test_unknown_session(self, web_env):
        client, *_ = web_env
        resp = client.get("/api/sessions/nope")
        assert resp.status_code == 404
        assert resp.json()["kind"] == "NotFound"

    def test_list_by_state(self, web_env):
        client, *_ = web_env
        session = _create_session(client)
        client.post(f"/api/sessions/{session['id']}/transition", json={"state": "PLANNING"})
        assert [s["id"] for s in client.get("/api/sessions?state=PLANNING").json()] == [session["id"]]
        assert client.get("/api/sessions?state=DONE").json() == []


class TestPipelineAPI:
    def test_classify(self, web_env):
        client, *_ = web_env
        resp = client.post("/api/intents/classify", json={"input": "fix the bug"})
        assert resp.json() == {"intent_type": "bugfix", "confidence": 0.88, "risk_level": "low"}

    def test_compile_task(self, web_env):
        client, *_ = web_env
        session = _create_session(client)
        files = [f"src/f{i}.py" for i in range(10)]
        resp = client.post(
            f"/api/sessions/{session['id']}/tasks",
            json={"intent_type": "refactor", "files": files, "base_path": "src"},
        )
        assert resp.status_code == 201
        task = resp.json()
        assert task["allowed_files"] == files[:8]
        assert task["status"] == "pending"

        assert client.get(f"/api/tasks/{task['id']}").json()["id"] == task["id"]

    def test_validate(self, web_env):
        client, *_ = web_env
        resp = client.post("/api/diffs/validate", json={"patch": "not a diff"})
        assert resp.json()["valid"] is False
        assert len(resp.json()["errors"]) == 3

    def test_execute_success(self, web_env):
        client, generator, *_ = web_env
        generator.outputs = [INVALID_OUTPUT, VALID_OUTPUT]
        session = _executing_session(client)

        resp = client.post(
            f"/api/sessions/{session['id']}/execute",
            json={
                "intent_type": "bugfix",
                "user_prompt": "fix the answer",
                "files": [{"path": "src/app.py", "content": "return 41"}],
            },
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["retries"] == 1
        assert body["commit_message"] == "[GitMind] Fix the answer"
        assert body["patches"].startswith("--- a/src/app.py")

    def test_execute_exhausted(self, web_env):
        client, generator, *_ = web_env
        generator.outputs = [INVALID_OUTPUT] * 3
        session = _executing_session(client)

        resp = client.post(
            f"/api/sessions/{session['id']}/execute",
            json={"intent_type": "bugfix", "user_prompt": "fix", "files": []},
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["kind"] == "PatchValidationFailed"
        assert body["retries"] == 2
        assert "Missing hunk header (@@)" in body["validation_errors"]

    def test_execute_rate_limited(self, web_env):
        client, generator, *_ = web_env
        os.environ["GITMIND_EXECUTE_RATE_LIMIT"] = "1"
        generator.outputs = [VALID_OUTPUT]
        session = _executing_session(client)
        payload = {"intent_type": "bugfix", "user_prompt": "fix", "files": []}

        assert client.post(f"/api/sessions/{session['id']}/execute", json=payload).status_code == 200
        resp = client.post(f"/api/sessions/{session['id']}/execute", json=payload)
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert resp.json()["kind"] == "RateLimitExceeded"

    def test_execute_outside_executing_state(self, web_env):
        client, generator, *_ = web_env
        generator.outputs = [VALID_OUTPUT]
        session = _create_session(client)

        resp = client.post(
            f"/api/sessions/{session['id']}/execute",
            json={"intent_type": "bugfix", "user_prompt": "fix", "files": []},
        )
        assert resp.status_code == 409
        assert resp.json()["kind"] == "StateViolation"
        assert generator.calls == []
        assert client.get(f"/api/sessions/{session['id']}").json()["state"] == "IDLE"

    def test_execute_without_generator(self, web_env):
        client, *_ = web_env
        session = _create_session(client)
        no_ai = TestClient(create_app())
        resp = no_ai.post(
            f"/api/sessions/{session['id']}/execute",
            json={"intent_type": "bugfix", "user_prompt": "fix", "files": []},
        )
        assert resp.status_code == 503
        assert resp.json()["kind"] == "ConfigurationMissing"

    def test_execute_bad_files(self, web_env):
        client, *_ = web_env
        session = _create_session(client)
        resp = client.post(
            f"/api/sessions/{session['id']}/execute",
            json={"intent_type": "bugfix", "user_prompt": "fix", "files": ["src/app.py"]},
        )
        assert resp.status_code == 400


class TestSpecsAndChatAPI:
    def test_spec_lock_flow(self, web_env):
        client, *_ = web_env
        session = _create_session(client, mode="autonomous")
        spec = client.put(f"/api/sessions/{session['id']}/spec", json={"spec": {"goal": "x"}}).json()
        client.post(f"/api/sessions/{session['id']}/transition", json={"state": "PLANNING"})

        resp = client.post(f"/api/specs/{spec['id']}/lock")
        assert resp.status_code == 200
        assert resp.json()["locked_at"] is not None
        assert client.get(f"/api/sessions/{session['id']}").json()["state"] == "SPEC_LOCKED"

    def test_chat(self, web_env):
        client, generator, *_ = web_env
        generator.reply = "It returns 41."
        session = _create_session(client, mode="chat")

        resp = client.post(f"/api/sessions/{session['id']}/chat", json={"content": "what is returned?"})
        assert resp.json()["content"] == "It returns 41."

        messages = client.get(f"/api/sessions/{session['id']}/messages").json()
        assert [m["role"] for m in messages] == ["user", "assistant"]

        reverted = client.post(
            f"/api/sessions/{session['id']}/messages/revert", json={"message_id": messages[0]["id"]}
        ).json()
        assert len(reverted) == 1


class TestRepositoriesAPI:
    def test_list(self, web_env):
        client, _, _, repo = web_env
        data = client.get("/api/repositories").json()
        assert [r["id"] for r in data] == [repo.id]

    def test_cap(self, web_env):
        client, *_ = web_env
        for i in range(4):
            resp = client.post("/api/repositories", json={"user_id": "u1", "owner": "acme", "name": f"r{i}"})
            assert resp.status_code == 201
        resp = client.post("/api/repositories", json={"user_id": "u1", "owner": "acme", "name": "r5"})
        assert resp.status_code == 409
        assert resp.json()["kind"] == "LimitReached"

    def test_tree_uses_base_path(self, web_env):
        client, _, host, repo = web_env
        host.files["docs/readme.md"] = "# hi"
        data = client.get(f"/api/repositories/{repo.id}/tree").json()
        assert [e["path"] for e in data] == ["src/app.py"]

    def test_file(self, web_env):
        client, _, _, repo = web_env
        resp = client.get(f"/api/repositories/{repo.id}/file", params={"path": "src/app.py"})
        assert resp.json()["sha"] == "sha-src/app.py"

        assert client.get(f"/api/repositories/{repo.id}/file").status_code == 400
        missing = client.get(f"/api/repositories/{repo.id}/file", params={"path": "nope.py"})
        assert missing.status_code == 404

    def test_commit(self, web_env):
        client, _, host, repo = web_env
        resp = client.post(
            f"/api/repositories/{repo.id}/commits",
            json={"path": "src/app.py", "content": "return 42", "message": "[GitMind] Fix", "sha": "sha-src/app.py"},
        )
        assert resp.status_code == 200
        assert resp.json()["commit_id"] == "commit-1"
        assert host.writes[0][4] == "main"

    def test_delete(self, web_env):
        client, _, _, repo = web_env
        assert client.delete(f"/api/repositories/{repo.id}").status_code == 200
        assert client.delete(f"/api/repositories/{repo.id}").status_code == 404


class TestBlockingCalls:
    @pytest.fixture
    def pooled(self, monkeypatch):
        """Record every callable the app hands to the threadpool."""
        calls = []

        async def recording(func, *args, **kwargs):
            calls.append(func)
            return await run_in_threadpool(func, *args, **kwargs)

        monkeypatch.setattr(web_app, "run_in_threadpool", recording)
        return calls

    def test_generator_calls_leave_the_event_loop(self, web_env, pooled):
        client, generator, *_ = web_env
        generator.outputs = [VALID_OUTPUT]
        session = _executing_session(client)
        resp = client.post(
            f"/api/sessions/{session['id']}/execute",
            json={"intent_type": "bugfix", "user_prompt": "fix", "files": []},
        )
        assert resp.status_code == 200
        assert len(pooled) == 1

    def test_chat_reply_leaves_the_event_loop(self, web_env, pooled):
        client, *_ = web_env
        session = _create_session(client, mode="chat")
        client.post(f"/api/sessions/{session['id']}/chat", json={"content": "hi"})
        assert len(pooled) == 1

    def test_source_host_calls_leave_the_event_loop(self, web_env, pooled):
        client, _, host, repo = web_env
        client.get(f"/api/repositories/{repo.id}/tree")
        client.get(f"/api/repositories/{repo.id}/file", params={"path": "src/app.py"})
        assert pooled == [host.list_tree, host.read_file]

        client.post(
            f"/api/repositories/{repo.id}/commits",
            json={"path": "src/app.py", "content": "return 42", "message": "[GitMind] Fix", "sha": "sha-src/app.py"},
        )
        assert len(pooled) == 3
        assert host.writes
