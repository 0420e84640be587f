"""Session store – persistence for healing sessions.

Two interchangeable backends keep one document per session:

* :class:`InMemorySessionStore` – process-local dict (the default)
* :class:`JsonFileSessionStore` – one ``<session_id>.json`` file per session

Both store serialised copies, so callers never share mutable state with the
store.  :class:`SessionRepository` wraps a store with the narrow operations
the orchestrator needs and turns storage failures into log lines: a broken
disk must not kill a healing run.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable

from shared.schemas import Attempt, Bug, Score, Session, SessionStatus, utcnow_iso

logger = logging.getLogger(__name__)

LIST_LIMIT = 50


# ── Store interface ──────────────────────────────────────────────────

class SessionStore(ABC):
    """Key-value persistence for :class:`Session` documents."""

    @abstractmethod
    def get(self, session_id: str) -> Session | None: ...

    @abstractmethod
    def put(self, session: Session) -> None: ...

    @abstractmethod
    def list_sessions(self, user_id: str | None = None, limit: int = LIST_LIMIT) -> list[Session]:
        """Newest first, optionally filtered by owner."""


def _newest_first(sessions: Iterable[Session], user_id: str | None, limit: int) -> list[Session]:
    selected = [s for s in sessions if user_id is None or s.user_id == user_id]
    selected.sort(key=lambda s: s.created_at, reverse=True)
    return selected[:limit]


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._docs: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            doc = self._docs.get(session_id)
        return Session.from_dict(doc) if doc is not None else None

    def put(self, session: Session) -> None:
        doc = session.to_dict()
        with self._lock:
            self._docs[session.id] = doc

    def list_sessions(self, user_id: str | None = None, limit: int = LIST_LIMIT) -> list[Session]:
        with self._lock:
            docs = list(self._docs.values())
        return _newest_first((Session.from_dict(d) for d in docs), user_id, limit)


class JsonFileSessionStore(SessionStore):
    """One JSON document per session under *directory*; writes are atomic."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, session_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_-]", "_", session_id)
        return self.directory / f"{safe}.json"

    def get(self, session_id: str) -> Session | None:
        path = self._path(session_id)
        with self._lock:
            if not path.is_file():
                return None
            doc = json.loads(path.read_text(encoding="utf-8"))
        return Session.from_dict(doc)

    def put(self, session: Session) -> None:
        payload = json.dumps(session.to_dict(), indent=2)
        path = self._path(session.id)
        with self._lock:
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".session-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise

    def list_sessions(self, user_id: str | None = None, limit: int = LIST_LIMIT) -> list[Session]:
        sessions: list[Session] = []
        with self._lock:
            paths = sorted(self.directory.glob("*.json"))
            for path in paths:
                try:
                    sessions.append(Session.from_dict(json.loads(path.read_text(encoding="utf-8"))))
                except (OSError, ValueError, KeyError) as exc:
                    logger.warning("Skipping unreadable session file %s: %s", path.name, exc)
        return _newest_first(sessions, user_id, limit)


# ── Repository ───────────────────────────────────────────────────────

class SessionRepository:
    """Narrow, failure-isolating facade over a :class:`SessionStore`.

    Reads return None (or []) and writes return False when the backend
    fails; the failure is logged.
    """

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def create(self, session: Session) -> bool:
        try:
            self.store.put(session)
            return True
        except Exception:
            logger.exception("Could not create session %s", session.id)
            return False

    def get(self, session_id: str) -> Session | None:
        try:
            return self.store.get(session_id)
        except Exception:
            logger.exception("Could not read session %s", session_id)
            return None

    def list_sessions(self, user_id: str | None = None, limit: int = LIST_LIMIT) -> list[Session]:
        try:
            return self.store.list_sessions(user_id=user_id, limit=limit)
        except Exception:
            logger.exception("Could not list sessions")
            return []

    def update(self, session_id: str, **fields: Any) -> Session | None:
        """Apply *fields* to the stored session (last write wins)."""
        try:
            session = self.store.get(session_id)
            if session is None:
                logger.warning("update: unknown session %s", session_id)
                return None
            for name, value in fields.items():
                if not hasattr(session, name):
                    raise AttributeError(f"Session has no field {name!r}")
                setattr(session, name, value)
            session.updated_at = utcnow_iso()
            self.store.put(session)
            return session
        except Exception:
            logger.exception("Could not update session %s (%s)", session_id, ", ".join(fields))
            return None

    def finalize(
        self,
        session_id: str,
        status: SessionStatus,
        bugs: list[Bug],
        attempts: list[Attempt],
        score: Score | None,
        error: str | None = None,
        **fields: Any,
    ) -> Session | None:
        """Write the terminal state of a session."""
        return self.update(
            session_id,
            status=status,
            bugs=list(bugs),
            attempts=list(attempts),
            score=score,
            error=error,
            completed_at=utcnow_iso(),
            **fields,
        )
