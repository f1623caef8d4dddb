"""Shared fixtures: temporary databases and in-memory collaborators."""

import tempfile
from pathlib import Path

import pytest

from gitmind.db.engine import init_db
from gitmind.errors import UpstreamHostError
from gitmind.integrations.github import CommitResult, SourceFile, TreeEntry

VALID_PATCH = """--- a/src/app.py
+++ b/src/app.py
@@ -1,3 +1,3 @@
 def answer():
-    return 41
+    return 42
"""

VALID_OUTPUT = "[GitMind] Fix the answer\n" + VALID_PATCH
INVALID_OUTPUT = "[GitMind] Attempted fix\nI changed the return value to 42."


class FakeGenerator:
    """Returns canned outputs in order; exceptions in the list are raised."""

    def __init__(self, outputs=None, reply="Looks good."):
        self.outputs = list(outputs or [])
        self.reply = reply
        self.calls = []
        self.chat_calls = []

    def generate(self, system_prompt, user_prompt):
        self.calls.append((system_prompt, user_prompt))
        out = self.outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return out

    def chat(self, messages, system_prompt):
        self.chat_calls.append((list(messages), system_prompt))
        return self.reply


class FakeSourceHost:
    def __init__(self, files=None, fail_with=None):
        self.files = dict(files or {"src/app.py": "def answer():\n    return 41\n"})
        self.fail_with = fail_with
        self.writes = []

    def list_tree(self, ref, path_prefix=None):
        prefix = (path_prefix or "").strip("/")
        return [
            TreeEntry(path=p, size=len(c), sha=f"sha-{p}")
            for p, c in sorted(self.files.items())
            if not prefix or p.startswith(prefix + "/")
        ]

    def read_file(self, path, ref=None):
        if path not in self.files:
            raise UpstreamHostError(f"Not found: {path}", reason="not_found")
        content = self.files[path]
        return SourceFile(path=path, content=content, sha=f"sha-{path}", size=len(content))

    def write_file(self, path, content, message, expected_sha, branch):
        if self.fail_with:
            raise self.fail_with
        self.writes.append((path, content, message, expected_sha, branch))
        self.files[path] = content
        return CommitResult(commit_id=f"commit-{len(self.writes)}", path=path, message=message)


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"
