"""Per-subject WebSocket stream of bus events with a merged summary.

On connect the client receives a snapshot of the subject (records, stats,
summary). Every subsequent bus event is merged into a server-side
SubjectView and forwarded together with the recomputed summary, so clients
can either apply events themselves or just render the latest summary.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from tracker.analytics.view import SubjectView
from tracker.context import AppContext
from tracker.exceptions import ValidationError
from tracker.models import Event
from tracker.notifications import RECORD_SAVED, RECORD_UPDATED, Subscription, subject_topic
from tracker.validation import validate_subject

log = structlog.get_logger(__name__)

router = APIRouter()


async def _forward(
    websocket: WebSocket,
    context: AppContext,
    view: SubjectView,
    subscription: Subscription,
) -> None:
    async for event in subscription:
        changed = view.apply(event)
        if changed and event.type in (RECORD_SAVED, RECORD_UPDATED):
            # new identifiers need prices; known ones are deduplicated by the coordinator
            context.coordinator.submit_prices(view.subject, [s for s in view.stats if s.loading])
        await websocket.send_json(_message(event, view))


def _message(event: Event, view: SubjectView) -> dict:
    summary = view.summary()
    return {
        **event.to_dict(),
        "summary": summary.to_dict() if summary is not None else None,
    }


async def _drain(websocket: WebSocket) -> None:
    # consume client messages to notice disconnects
    while True:
        await websocket.receive_text()


@router.websocket("/ws/{subject}")
async def subject_stream(websocket: WebSocket, subject: str) -> None:
    context: AppContext = websocket.app.state.context
    await websocket.accept()

    try:
        subject = validate_subject(subject)
    except ValidationError as e:
        await websocket.send_json({"type": "error", "error": str(e)})
        await websocket.close(code=1008)
        return

    # subscribe before reading state so nothing between the two is missed
    subscription = context.bus.subscribe(subject_topic(subject))
    forward = drain = None
    try:
        view = await context.lookup.snapshot(subject)
        log.info("subject_ws_connected", subject=subject)
        await websocket.send_json(
            {
                "type": "snapshot",
                "subject": subject,
                "data": view.to_dict(),
                "progress": context.backfill.progress(subject),
            }
        )

        forward = asyncio.create_task(_forward(websocket, context, view, subscription))
        drain = asyncio.create_task(_drain(websocket))
        done, _ = await asyncio.wait({forward, drain}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                log.warning("subject_ws_error", subject=subject, error=repr(exc))
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        tasks = [t for t in (forward, drain) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("subject_ws_disconnected", subject=subject)
