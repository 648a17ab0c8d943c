from __future__ import annotations

import asyncio
import json
import queue
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from portaldb.apps.accounts import models as account_models
from portaldb.database import get_db
from portaldb.security import user_from_token
from .broker import EventBroker, broker, format_sse, keepalive_message

router = APIRouter(prefix="/api", tags=["events"])

HEARTBEAT_SECONDS = 15


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_active_user_from_query(
    request: Request,
    db: Session = Depends(get_db),
) -> account_models.User:
    # EventSource cannot send headers, so the token rides in the query string.
    token = request.query_params.get("token")
    if not token:
        raise _credentials_exception()
    user = user_from_token(token, db)
    if not getattr(user, "is_active", False):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Inactive user account")
    return user


def replay_frames(event_broker: EventBroker, *, org_id: str, last_event_id: str) -> list[str]:
    replay, requires_reset = event_broker.replay_since(last_event_id=last_event_id, org_id=org_id)
    if requires_reset:
        return [
            format_sse(
                json.dumps({"type": "reset", "reason": "last_event_id_out_of_window", "lastEventId": last_event_id}),
                event="reset",
            )
        ]
    return [format_sse(event.to_json(), event=event.type, event_id=event.id) for event in replay]


async def _event_generator(
    request: Request,
    org_id: str,
    event_broker: EventBroker = broker,
) -> AsyncGenerator[str, None]:
    q = event_broker.subscribe()
    try:
        last_event_id = request.headers.get("last-event-id") or request.query_params.get("lastEventId")
        if last_event_id:
            for frame in replay_frames(event_broker, org_id=org_id, last_event_id=last_event_id):
                yield frame
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.to_thread(q.get, True, HEARTBEAT_SECONDS)
                if event.org_id and event.org_id != str(org_id):
                    continue
                yield format_sse(event.to_json(), event=event.type, event_id=event.id)
            except queue.Empty:
                yield keepalive_message()
    finally:
        event_broker.unsubscribe(q)


@router.get("/events")
async def stream_events(
    request: Request,
    user: account_models.User = Depends(get_current_active_user_from_query),
) -> StreamingResponse:
    return StreamingResponse(
        _event_generator(request, str(user.org_id)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
