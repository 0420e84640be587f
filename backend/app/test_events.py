"""Tests for the progress broker and session emitter.

Run:
    python -m pytest backend/app/test_events.py -v
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

_ROOT = Path(__file__).resolve().parents[2]
for _p in (_ROOT, _ROOT / "backend"):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

from app import events
from app.events import EventKind, ProgressBroker
from shared.schemas import Bug, BugCategory


async def _collect(broker: ProgressBroker, session_id: str) -> list:
    return [event async for event in broker.subscribe(session_id)]


class TestProgressBroker:

    def test_subscriber_receives_events_until_close(self):
        async def scenario():
            broker = ProgressBroker()
            emitter = broker.create("s1")
            consumer = asyncio.create_task(_collect(broker, "s1"))
            await asyncio.sleep(0)

            emitter.status("testing", "Running tests")
            emitter.test_result(False, "boom", 2, 1)
            await broker.remove_after_grace_period("s1", 0)
            return await asyncio.wait_for(consumer, timeout=5)

        received = asyncio.run(scenario())
        assert [e.kind for e in received] == [EventKind.STATUS, EventKind.TEST_RESULT]
        assert received[1].data == {"passed": False, "output": "boom", "errorCount": 2, "attempt": 1}

    def test_late_subscriber_gets_history(self):
        async def scenario():
            broker = ProgressBroker()
            emitter = broker.create("s1")
            emitter.log("cloned")
            emitter.bug_found(Bug(id="bug-1", category=BugCategory.SYNTAX,
                                  file_path="a.py", line=3, message="expected ':'"))
            consumer = asyncio.create_task(_collect(broker, "s1"))
            await asyncio.sleep(0)
            broker.close("s1")
            return await asyncio.wait_for(consumer, timeout=5)

        received = asyncio.run(scenario())
        assert [e.kind for e in received] == [EventKind.LOG, EventKind.BUG_FOUND]
        payload = received[1].to_dict()
        assert payload["type"] == "bugFound"
        assert payload["sessionId"] == "s1"
        assert payload["data"]["filePath"] == "a.py"

    def test_publishing_without_subscribers_or_channel_is_a_noop(self):
        broker = ProgressBroker()
        broker.publish("nobody", EventKind.LOG, {"message": "x"})
        emitter = broker.create("s1")
        emitter.error("still fine")
        assert broker.has_channel("s1")
        broker.close("s1")
        assert not broker.has_channel("s1")
        emitter.log("after close")  # dropped silently

    def test_full_subscriber_queue_drops_instead_of_blocking(self, monkeypatch):
        monkeypatch.setattr(events, "SUBSCRIBER_QUEUE_SIZE", 2)

        async def scenario():
            broker = ProgressBroker()
            emitter = broker.create("s1")
            stream = broker.subscribe("s1")
            first = asyncio.ensure_future(stream.__anext__())
            await asyncio.sleep(0)
            for n in range(10):
                emitter.log(f"line {n}")
            event = await asyncio.wait_for(first, timeout=5)
            broker.close("s1")
            rest = [e async for e in stream]
            return [event] + rest

        received = asyncio.run(scenario())
        assert received[0].data["message"] == "line 0"
        assert len(received) <= 3

    def test_subscribe_to_unknown_channel_ends_immediately(self):
        assert asyncio.run(_collect(ProgressBroker(), "missing")) == []
