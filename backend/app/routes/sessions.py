"""Healing session endpoints.

POST /sessions                – start a healing session, returns session_id immediately
GET  /sessions?user_id=       – newest-first list of sessions
GET  /sessions/{id}           – full session document
GET  /sessions/{id}/stream    – SSE stream of live progress events
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.events import ProgressBroker
from app.orchestrator import HealingOrchestrator
from app.store import LIST_LIMIT, SessionRepository
from shared.schemas import Session

router = APIRouter()
logger = logging.getLogger(__name__)


# ── Request / Response schemas ───────────────────────────────────────

class StartHealingRequest(BaseModel):
    repo_url: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    team_name: str | None = None
    leader_name: str | None = None


class StartHealingResponse(BaseModel):
    session_id: str
    status: str
    message: str


# ── Dependencies ─────────────────────────────────────────────────────

def _orchestrator(request: Request) -> HealingOrchestrator:
    return request.app.state.orchestrator


def _sessions(request: Request) -> SessionRepository:
    return request.app.state.sessions


def _broker(request: Request) -> ProgressBroker:
    return request.app.state.broker


# ── POST /sessions ───────────────────────────────────────────────────

@router.post("/sessions", response_model=StartHealingResponse, status_code=202)
async def start_session(body: StartHealingRequest, request: Request):
    """Create a session, launch the healing loop in the background, and
    return the session_id immediately."""
    session_id = _orchestrator(request).start_healing(
        repo_url=body.repo_url,
        user_id=body.user_id,
        team_name=body.team_name,
        leader_name=body.leader_name,
    )
    return StartHealingResponse(
        session_id=session_id,
        status="cloning",
        message=f"Self-healing started for {body.repo_url}",
    )


# ── GET /sessions ────────────────────────────────────────────────────

@router.get("/sessions")
async def list_sessions(
    request: Request,
    user_id: str | None = Query(None, description="Only sessions started by this user"),
):
    sessions = await asyncio.to_thread(_sessions(request).list_sessions, user_id=user_id, limit=LIST_LIMIT)
    return {"sessions": [s.to_dict() for s in sessions]}


# ── GET /sessions/{id} ───────────────────────────────────────────────

@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    session = await asyncio.to_thread(_sessions(request).get, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session.to_dict()


# ── GET /sessions/{id}/stream  (Server-Sent Events) ──────────────────

@router.get("/sessions/{session_id}/stream")
async def stream_session(session_id: str, request: Request):
    """Stream progress events as Server-Sent Events (SSE).

    The first event is a snapshot of the session document (clients may
    join mid-stream).  The stream ends when the session's progress channel
    is retired, shortly after the session reaches a terminal state.
    """
    session = await asyncio.to_thread(_sessions(request).get, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")

    return StreamingResponse(
        _event_generator(session, _broker(request)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _event_generator(session: Session, broker: ProgressBroker):
    """Yield SSE-formatted events until the channel closes."""
    yield f"event: session\ndata: {json.dumps(session.to_dict())}\n\n"

    async for event in broker.subscribe(session.id):
        yield f"event: {event.kind.value}\ndata: {json.dumps(event.to_dict())}\n\n"
