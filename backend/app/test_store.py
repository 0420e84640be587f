"""Tests for session persistence.

Run:
    python -m pytest backend/app/test_store.py -v
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

_ROOT = Path(__file__).resolve().parents[2]
for _p in (_ROOT, _ROOT / "backend"):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

from app.store import InMemorySessionStore, JsonFileSessionStore, SessionRepository
from shared.schemas import Attempt, AttemptStatus, Bug, BugCategory, Session, SessionStatus
from shared.scoring import calculate_score


def _session(session_id: str, user_id: str = "u1", created_at: str = "2026-01-01T00:00:00+00:00") -> Session:
    return Session(id=session_id, user_id=user_id, repo_url="https://github.com/o/r", created_at=created_at)


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionStore()
    return JsonFileSessionStore(tmp_path / "sessions")


class TestStores:

    def test_put_and_get(self, store):
        store.put(_session("s1"))
        assert store.get("s1").repo_url == "https://github.com/o/r"
        assert store.get("missing") is None

    def test_returned_documents_are_copies(self, store):
        store.put(_session("s1"))
        fetched = store.get("s1")
        fetched.status = SessionStatus.FAILED
        assert store.get("s1").status is SessionStatus.CLONING

    def test_list_is_newest_first_and_filtered(self, store):
        store.put(_session("old", created_at="2026-01-01T00:00:00+00:00"))
        store.put(_session("new", created_at="2026-03-01T00:00:00+00:00"))
        store.put(_session("other", user_id="u2", created_at="2026-02-01T00:00:00+00:00"))

        assert [s.id for s in store.list_sessions()] == ["new", "other", "old"]
        assert [s.id for s in store.list_sessions(user_id="u1")] == ["new", "old"]
        assert [s.id for s in store.list_sessions(limit=1)] == ["new"]


class TestJsonFileSessionStore:

    def test_survives_reopen(self, tmp_path):
        JsonFileSessionStore(tmp_path).put(_session("s1"))
        assert JsonFileSessionStore(tmp_path).get("s1") is not None

    def test_corrupt_file_is_skipped_in_listing(self, tmp_path):
        store = JsonFileSessionStore(tmp_path)
        store.put(_session("s1"))
        (tmp_path / "broken.json").write_text("{")
        assert [s.id for s in store.list_sessions()] == ["s1"]


class TestSessionRepository:

    def test_update_and_finalize(self):
        repo = SessionRepository(InMemorySessionStore())
        repo.create(_session("s1"))

        repo.update("s1", status=SessionStatus.TESTING, current_attempt=2)
        assert repo.get("s1").current_attempt == 2

        bug = Bug(id="bug-1", category=BugCategory.LOGIC, file_path="a.py", line=1, message="m", fixed=True)
        attempt = Attempt(1, AttemptStatus.PASSED, "", 1, 1, 10)
        score = calculate_score(1, 1, True, 1, 1, 5)
        final = repo.finalize("s1", SessionStatus.COMPLETED, [bug], [attempt], score, pr_url="https://x/pull/1")

        assert final.status is SessionStatus.COMPLETED
        assert final.completed_at is not None
        stored = repo.get("s1")
        assert stored.bugs[0].fixed
        assert stored.score.final_score == score.final_score
        assert stored.pr_url == "https://x/pull/1"

    def test_unknown_field_is_logged_not_raised(self):
        repo = SessionRepository(InMemorySessionStore())
        repo.create(_session("s1"))
        assert repo.update("s1", not_a_field=1) is None
        assert repo.get("s1") is not None

    def test_backend_failures_are_swallowed(self):
        broken = MagicMock()
        broken.get.side_effect = OSError("disk gone")
        broken.put.side_effect = OSError("disk gone")
        broken.list_sessions.side_effect = OSError("disk gone")
        repo = SessionRepository(broken)

        assert repo.create(_session("s1")) is False
        assert repo.get("s1") is None
        assert repo.list_sessions() == []
        assert repo.update("s1", current_attempt=1) is None
