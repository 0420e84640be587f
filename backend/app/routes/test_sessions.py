"""Tests for the session HTTP endpoints.

Run:
    python -m pytest backend/app/routes/test_sessions.py -v
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from types import SimpleNamespace

from fastapi import FastAPI
from fastapi.testclient import TestClient

_ROOT = Path(__file__).resolve().parents[3]
for _p in (_ROOT, _ROOT / "backend"):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

from app.events import ProgressBroker
from app.routes import health, sessions
from app.routes.sessions import _event_generator
from app.store import InMemorySessionStore, SessionRepository
from shared.schemas import Session


class StubOrchestrator:
    """Records start requests instead of running the healing loop."""

    def __init__(self, repo: SessionRepository):
        self.repo = repo
        self.started: list[dict] = []
        self.active_sessions = 0
        self.scanner = SimpleNamespace(enabled=False)

    def start_healing(self, repo_url, user_id, team_name=None, leader_name=None):
        self.started.append(dict(repo_url=repo_url, user_id=user_id, team_name=team_name, leader_name=leader_name))
        session_id = f"sess-{len(self.started)}"
        self.repo.create(Session(id=session_id, user_id=user_id, repo_url=repo_url))
        return session_id


def _client() -> tuple[TestClient, StubOrchestrator, ProgressBroker]:
    repo = SessionRepository(InMemorySessionStore())
    orchestrator = StubOrchestrator(repo)
    broker = ProgressBroker()

    app = FastAPI()
    app.state.orchestrator = orchestrator
    app.state.sessions = repo
    app.state.broker = broker
    app.include_router(health.router)
    app.include_router(sessions.router)
    return TestClient(app), orchestrator, broker


class TestSessionRoutes:

    def test_start_returns_id_immediately(self):
        client, orchestrator, _ = _client()
        resp = client.post("/sessions", json={
            "repo_url": "https://github.com/octo/hello", "user_id": "u1", "team_name": "Team",
        })
        assert resp.status_code == 202
        body = resp.json()
        assert body["session_id"] == "sess-1"
        assert body["status"] == "cloning"
        assert orchestrator.started[0]["team_name"] == "Team"
        assert orchestrator.started[0]["leader_name"] is None

    def test_start_validates_body(self):
        client, _, _ = _client()
        assert client.post("/sessions", json={"repo_url": "", "user_id": "u1"}).status_code == 422

    def test_get_and_list(self):
        client, _, _ = _client()
        client.post("/sessions", json={"repo_url": "https://github.com/a/b", "user_id": "u1"})
        client.post("/sessions", json={"repo_url": "https://github.com/c/d", "user_id": "u2"})

        assert client.get("/sessions/sess-1").json()["repo_url"] == "https://github.com/a/b"
        assert client.get("/sessions/nope").status_code == 404

        listed = client.get("/sessions", params={"user_id": "u2"}).json()["sessions"]
        assert [s["id"] for s in listed] == ["sess-2"]

    def test_stream_unknown_session_is_404(self):
        client, _, _ = _client()
        assert client.get("/sessions/nope/stream").status_code == 404

    def test_stream_of_finished_session_sends_snapshot(self):
        client, _, _ = _client()
        client.post("/sessions", json={"repo_url": "https://github.com/a/b", "user_id": "u1"})

        resp = client.get("/sessions/sess-1/stream")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.text.startswith("event: session\n")

    def test_health(self):
        client, _, _ = _client()
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["active_sessions"] == 0
        assert body["ai_enabled"] is False


class TestEventGenerator:

    def test_snapshot_then_live_events(self):
        async def scenario():
            broker = ProgressBroker()
            emitter = broker.create("s1")
            emitter.log("cloning")
            session = Session(id="s1", user_id="u1", repo_url="https://github.com/a/b")

            chunks: list[str] = []

            async def consume():
                async for chunk in _event_generator(session, broker):
                    chunks.append(chunk)

            consumer = asyncio.create_task(consume())
            await asyncio.sleep(0)
            emitter.status("testing", "Running tests")
            await broker.remove_after_grace_period("s1", 0)
            await asyncio.wait_for(consumer, timeout=5)
            return chunks

        chunks = asyncio.run(scenario())
        assert [c.split("\n", 1)[0] for c in chunks] == ["event: session", "event: log", "event: status"]
        payload = json.loads(chunks[2].split("data: ", 1)[1])
        assert payload["type"] == "status"
        assert payload["data"]["phase"] == "testing"
