from __future__ import annotations

import asyncio
import json

import pytest
from fastapi import HTTPException

from portaldb.apps.accounts import models as account_models
from portaldb.apps.events import broker as events_broker
from portaldb.apps.events import router as events_router
from portaldb.apps.events.broker import EventBroker, EventEnvelope
from portaldb.security import create_access_token


def _envelope(event_id: str, org_id: str, action: str = "start") -> EventEnvelope:
    return EventEnvelope(
        id=event_id,
        type=events_broker.BREAKLOCK_CHANGED,
        entityType="breaklock.pool",
        entityId=f"break-{event_id}",
        action=action,
        timestamp="2026-03-02T09:00:00+00:00",
        metadata={"orgId": org_id, "module": "breaklock"},
    )


class _DummyRequest:
    def __init__(self, query_params=None):
        self.query_params = query_params or {}
        self.headers = {}


class _StreamRequest(_DummyRequest):
    """Reports the client gone after `polls` connection checks."""

    def __init__(self, polls: int):
        super().__init__()
        self._polls = polls

    async def is_disconnected(self) -> bool:
        self._polls -= 1
        return self._polls < 0


class _BusyBroker(EventBroker):
    """Publishes a burst of events as soon as the stream subscribes."""

    def __init__(self, burst):
        super().__init__()
        self._burst = burst

    def subscribe(self):
        q = super().subscribe()
        for event in self._burst:
            self.publish(event)
        return q


def test_publish_reaches_every_subscriber():
    event_broker = EventBroker()
    first = event_broker.subscribe()
    second = event_broker.subscribe()

    event_broker.publish(_envelope("e1", "org-a"))

    assert first.get_nowait().id == "e1"
    assert second.get_nowait().id == "e1"
    event_broker.unsubscribe(first)
    assert event_broker.subscriber_count == 1


def test_slow_subscriber_keeps_the_newest_events():
    event_broker = EventBroker(queue_size=2)
    q = event_broker.subscribe()

    for idx in range(4):
        event_broker.publish(_envelope(f"e{idx}", "org-a"))

    assert [q.get_nowait().id, q.get_nowait().id] == ["e2", "e3"]
    assert q.empty()


def test_replay_since_filters_by_org_and_flags_unknown_cursor():
    event_broker = EventBroker(replay_size=3)
    for idx, org in enumerate(["org-a", "org-b", "org-a", "org-a"]):
        event_broker.publish(_envelope(f"e{idx}", org))

    replay, reset = event_broker.replay_since(last_event_id="e1", org_id="org-a")
    assert reset is False
    assert [event.id for event in replay] == ["e2", "e3"]

    # e0 fell out of the three-event window.
    replay, reset = event_broker.replay_since(last_event_id="e0", org_id="org-a")
    assert reset is True
    assert replay == []


def test_replay_frames_emit_reset_for_expired_cursor():
    event_broker = EventBroker()
    event_broker.publish(_envelope("e1", "org-a"))

    frames = events_router.replay_frames(event_broker, org_id="org-a", last_event_id="gone")

    assert len(frames) == 1
    assert frames[0].startswith("event: reset\n")
    payload = json.loads(frames[0].split("data: ", 1)[1])
    assert payload["lastEventId"] == "gone"


def test_format_sse_writes_id_event_and_data_lines():
    frame = events_broker.format_sse('{"a": 1}', event="breaklock.changed", event_id="e9")

    assert frame == 'id: e9\nevent: breaklock.changed\ndata: {"a": 1}\n\n'


def test_notify_pool_changed_never_raises(monkeypatch):
    def broken_publish(_event):
        raise RuntimeError("broker down")

    monkeypatch.setattr(events_broker, "publish_event", broken_publish)

    event = events_broker.notify_pool_changed(org_id="org-a", action="end", entity_id="b1", actor_user_id="u1")

    assert event.org_id == "org-a"
    assert event.actor == {"userId": "u1"}


def test_stream_auth_reads_token_from_query(db_session):
    org = account_models.Org(code="SSE01", name="Stream Org")
    db_session.add(org)
    db_session.commit()
    user = account_models.User(org_id=org.id, email="sse@example.com", full_name="Sse User")
    db_session.add(user)
    db_session.commit()

    token = create_access_token(data={"sub": user.id, "org_id": org.id})
    resolved = events_router.get_current_active_user_from_query(_DummyRequest({"token": token}), db=db_session)
    assert resolved.id == user.id

    with pytest.raises(HTTPException) as excinfo:
        events_router.get_current_active_user_from_query(_DummyRequest(), db=db_session)
    assert excinfo.value.status_code == 401

    user.is_active = False
    db_session.commit()
    with pytest.raises(HTTPException) as excinfo:
        events_router.get_current_active_user_from_query(_DummyRequest({"token": token}), db=db_session)
    assert excinfo.value.status_code == 400


def test_live_stream_only_yields_the_callers_org(monkeypatch):
    monkeypatch.setattr(events_router, "HEARTBEAT_SECONDS", 0.01)
    event_broker = _BusyBroker(
        [
            _envelope("e1", "org-a"),
            _envelope("e2", "org-b"),
            _envelope("e3", "org-a", action="end"),
            _envelope("e4", "org-b", action="end"),
        ]
    )

    async def collect():
        frames = []
        async for frame in events_router._event_generator(_StreamRequest(polls=5), "org-a", event_broker=event_broker):
            frames.append(frame)
        return frames

    frames = asyncio.run(collect())

    ids = [frame.split("\n", 1)[0] for frame in frames if frame.startswith("id: ")]
    assert ids == ["id: e1", "id: e3"]
    assert all("org-b" not in frame for frame in frames)
    assert frames[-1].startswith("event: heartbeat\n")
    assert event_broker.subscriber_count == 0
