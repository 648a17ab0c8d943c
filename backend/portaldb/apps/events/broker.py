from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, Optional

from portaldb.utils.identifiers import generate_uuid7

logger = logging.getLogger(__name__)

BREAKLOCK_CHANGED = "breaklock.changed"


@dataclass
class EventEnvelope:
    """
    Wake-up signal for observers.

    Payloads only say *that* something changed; observers re-query the
    pool status instead of applying the payload.
    """

    id: str
    type: str
    entityType: str
    entityId: str
    action: str
    timestamp: str
    actor: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def org_id(self) -> Optional[str]:
        value = (self.metadata or {}).get("orgId")
        return str(value) if value else None

    def to_json(self) -> str:
        payload = {
            "id": self.id,
            "type": self.type,
            "entityType": self.entityType,
            "entityId": self.entityId,
            "action": self.action,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "metadata": self.metadata,
        }
        return json.dumps(payload, default=str)


class EventBroker:
    def __init__(self, replay_size: int = 2000, queue_size: int = 400) -> None:
        self._subscribers: set[queue.Queue[EventEnvelope]] = set()
        self._history: Deque[EventEnvelope] = deque(maxlen=replay_size)
        self._queue_size = queue_size
        self._lock = threading.Lock()

    def subscribe(self) -> queue.Queue[EventEnvelope]:
        q: queue.Queue[EventEnvelope] = queue.Queue(maxsize=self._queue_size)
        with self._lock:
            self._subscribers.add(q)
        return q

    def unsubscribe(self, q: queue.Queue[EventEnvelope]) -> None:
        with self._lock:
            self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def replay_since(self, *, last_event_id: str, org_id: Optional[str]) -> tuple[list[EventEnvelope], bool]:
        """Events after `last_event_id`; the flag is True when the id is no longer buffered."""
        with self._lock:
            history = list(self._history)
        ids = [event.id for event in history]
        if last_event_id not in ids:
            return [], True
        replay = history[ids.index(last_event_id) + 1:]
        if org_id:
            replay = [event for event in replay if event.org_id == str(org_id)]
        return replay, False

    def publish(self, event: EventEnvelope) -> None:
        with self._lock:
            self._history.append(event)
            subscribers: Iterable[queue.Queue[EventEnvelope]] = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                # Slow consumer: drop its oldest wake-up, the newest one is enough.
                try:
                    _ = q.get_nowait()
                    q.put_nowait(event)
                except (queue.Empty, queue.Full):
                    pass


broker = EventBroker()


def publish_event(event: EventEnvelope) -> None:
    broker.publish(event)


def notify_pool_changed(
    *,
    org_id: str,
    action: str,
    entity_id: str,
    actor_user_id: Optional[str] = None,
) -> EventEnvelope:
    """
    Publish a `breaklock.changed` wake-up for one tenant's pool.

    Called only after the state change committed. Never raises: a lost
    notification is repaired by the next re-query.
    """
    event = EventEnvelope(
        id=generate_uuid7(),
        type=BREAKLOCK_CHANGED,
        entityType="breaklock.pool",
        entityId=entity_id,
        action=action,
        timestamp=datetime.now(timezone.utc).isoformat(),
        actor={"userId": actor_user_id} if actor_user_id else None,
        metadata={"orgId": org_id, "module": "breaklock"},
    )
    try:
        publish_event(event)
    except Exception:
        logger.warning(
            "Failed to publish change notification",
            extra={"org_id": org_id, "action": action, "entity_id": entity_id},
        )
    return event


def format_sse(data: str, event: Optional[str] = None, event_id: Optional[str] = None) -> str:
    lines = []
    if event_id:
        lines.append(f"id: {event_id}")
    if event:
        lines.append(f"event: {event}")
    for chunk in data.splitlines():
        lines.append(f"data: {chunk}")
    lines.append("")
    return "\n".join(lines) + "\n"


def keepalive_message() -> str:
    payload = json.dumps({"type": "heartbeat", "ts": time.time()})
    return format_sse(payload, event="heartbeat")
