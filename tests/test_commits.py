"""Tests for rate-limited commits."""

import pytest

from conftest import FakeSourceHost
from gitmind.core import activity as activity_mod
from gitmind.core import commits as commits_mod
from gitmind.errors import RateLimitExceeded, StateViolation, UpstreamHostError


class TestCommitFile:
    def test_commit_is_logged(self, db):
        host = FakeSourceHost()
        result = commits_mod.commit_file(db, host, "s1", "src/app.py", "x = 2\n", "[GitMind] Fix", "sha-1")

        assert result.commit_id == "commit-1"
        assert host.writes == [("src/app.py", "x = 2\n", "[GitMind] Fix", "sha-1", "main")]
        entries = activity_mod.list_activity(db, session_id="s1")
        assert [e.action for e in entries] == ["github.commit"]

    def test_rate_limited(self, db):
        host = FakeSourceHost()
        for i in range(2):
            commits_mod.commit_file(db, host, "s1", f"f{i}.py", "x", "msg", None, limit=2)

        with pytest.raises(RateLimitExceeded):
            commits_mod.commit_file(db, host, "s1", "f2.py", "x", "msg", None, limit=2)
        assert len(host.writes) == 2

        # Other sessions keep their own budget
        commits_mod.commit_file(db, host, "s2", "f3.py", "x", "msg", None, limit=2)

    def test_blocked_file(self, db):
        host = FakeSourceHost()
        with pytest.raises(StateViolation):
            commits_mod.commit_file(db, host, "s1", ".env", "SECRET=1", "msg", None)
        assert host.writes == []

    def test_conflict_is_logged_and_raised(self, db):
        host = FakeSourceHost(fail_with=UpstreamHostError("sha mismatch", reason="conflict"))
        with pytest.raises(UpstreamHostError) as exc_info:
            commits_mod.commit_file(db, host, "s1", "src/app.py", "x", "msg", "stale")
        assert exc_info.value.status_code == 409

        entries = activity_mod.list_activity(db, session_id="s1")
        assert [e.action for e in entries] == ["github.commit.failed"]
        assert entries[0].error_type == "UpstreamHostError: conflict"

    def test_failed_commits_count_toward_limit(self, db):
        host = FakeSourceHost(fail_with=UpstreamHostError("down"))
        with pytest.raises(UpstreamHostError):
            commits_mod.commit_file(db, host, "s1", "a.py", "x", "msg", None, limit=1)
        with pytest.raises(RateLimitExceeded):
            commits_mod.commit_file(db, host, "s1", "a.py", "x", "msg", None, limit=1)
