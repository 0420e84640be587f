"""Progress events – per-session live channels feeding the SSE stream.

The orchestrator publishes through a :class:`SessionEmitter`; HTTP clients
subscribe through :meth:`ProgressBroker.subscribe`.  Publishing never
blocks: each subscriber owns a bounded queue and events are dropped for a
subscriber whose queue is full.  Recent events are kept per channel and
replayed to late subscribers.  A channel stays open for a grace period
after its session ends so clients can drain it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

from shared.schemas import Bug, Score, utcnow_iso

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000
HISTORY_SIZE = 500


class EventKind(str, Enum):
    LOG = "log"
    STATUS = "status"
    BUG_FOUND = "bugFound"
    TEST_RESULT = "testResult"
    FIX_APPLIED = "fixApplied"
    ATTEMPT_COMPLETE = "attemptComplete"
    SCORE = "score"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    session_id: str
    kind: EventKind
    data: dict[str, Any]
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "sessionId": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


_CLOSED = object()


class _Channel:
    def __init__(self) -> None:
        self.subscribers: list[asyncio.Queue] = []
        self.history: deque[ProgressEvent] = deque(maxlen=HISTORY_SIZE)


# ── Broker ───────────────────────────────────────────────────────────

class ProgressBroker:
    """Registry of live per-session channels."""

    def __init__(self) -> None:
        self._channels: dict[str, _Channel] = {}

    def create(self, session_id: str) -> "SessionEmitter":
        self._channels.setdefault(session_id, _Channel())
        return SessionEmitter(self, session_id)

    def has_channel(self, session_id: str) -> bool:
        return session_id in self._channels

    def publish(self, session_id: str, kind: EventKind, data: dict[str, Any]) -> None:
        """Fan *data* out to every subscriber.  Never blocks, never raises."""
        channel = self._channels.get(session_id)
        if channel is None:
            return
        event = ProgressEvent(session_id=session_id, kind=kind, data=data)
        channel.history.append(event)
        for queue in channel.subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Subscriber queue full for %s, dropping %s", session_id, kind.value)

    async def subscribe(self, session_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield the channel's recent history, then live events until it closes."""
        channel = self._channels.get(session_id)
        if channel is None:
            return
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        for event in channel.history:
            queue.put_nowait(event)
        channel.subscribers.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if queue in channel.subscribers:
                channel.subscribers.remove(queue)

    def close(self, session_id: str) -> None:
        """Drop the channel and end every subscription."""
        channel = self._channels.pop(session_id, None)
        if channel is None:
            return
        for queue in channel.subscribers:
            while True:
                try:
                    queue.put_nowait(_CLOSED)
                    break
                except asyncio.QueueFull:
                    queue.get_nowait()  # make room for the sentinel
        logger.debug("Closed progress channel %s", session_id)

    async def remove_after_grace_period(self, session_id: str, delay_s: float) -> None:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        self.close(session_id)


# ── Emitter ──────────────────────────────────────────────────────────

class SessionEmitter:
    """Typed publishing helpers bound to one session."""

    def __init__(self, broker: ProgressBroker, session_id: str) -> None:
        self.broker = broker
        self.session_id = session_id

    def _emit(self, kind: EventKind, data: dict[str, Any]) -> None:
        self.broker.publish(self.session_id, kind, data)

    def log(self, text: str) -> None:
        logger.info("[%s] %s", self.session_id[:8], text)
        self._emit(EventKind.LOG, {"message": text})

    def status(self, phase: str, message: str) -> None:
        self._emit(EventKind.STATUS, {"phase": phase, "message": message})

    def bug_found(self, bug: Bug) -> None:
        self._emit(EventKind.BUG_FOUND, {
            "bugId": bug.id,
            "category": bug.category.value,
            "filePath": bug.file_path,
            "line": bug.line,
            "message": bug.message,
        })

    def test_result(self, passed: bool, output: str, error_count: int, attempt: int) -> None:
        self._emit(EventKind.TEST_RESULT, {
            "passed": passed,
            "output": output,
            "errorCount": error_count,
            "attempt": attempt,
        })

    def fix_applied(self, file_path: str, description: str, bug_id: str) -> None:
        self._emit(EventKind.FIX_APPLIED, {
            "filePath": file_path,
            "description": description,
            "bugId": bug_id,
        })

    def attempt_complete(
        self, attempt: int, status: str, bugs_found: int, bugs_fixed: int, duration_ms: int
    ) -> None:
        self._emit(EventKind.ATTEMPT_COMPLETE, {
            "attempt": attempt,
            "status": status,
            "bugsFound": bugs_found,
            "bugsFixed": bugs_fixed,
            "durationMs": duration_ms,
        })

    def score(self, score: Score) -> None:
        self._emit(EventKind.SCORE, score.to_dict())

    def error(self, message: str) -> None:
        logger.error("[%s] %s", self.session_id[:8], message)
        self._emit(EventKind.ERROR, {"message": message})
