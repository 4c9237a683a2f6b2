"""Live progress stream (SSE) and manual event emission."""

import asyncio
import json
import logging
import time
from typing import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Body, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from app.config import get_settings
from app.core.events import EventBus
from app.deps import Bus
from app.schemas.events import EVENT_CATEGORIES, Event, dump_event, parse_event

settings = get_settings()
logger = logging.getLogger(__name__)

router = APIRouter()

KEEPALIVE_FRAME = ": keepalive\n\n"
_SUBSCRIBER_QUEUE_SIZE = 1000


def format_sse(data: str) -> str:
    """Format an unnamed SSE message (multi-line data split into 'data:' lines)."""
    return "\n".join(f"data: {line}" for line in data.split("\n")) + "\n\n"


def parse_categories(types: str | None) -> list[str]:
    """``"crawl,embed"`` -> ``["crawl", "embed"]``; empty or ``*`` -> ``["*"]``."""
    wanted = [t.strip() for t in (types or "*").split(",") if t.strip()]
    if not wanted or "*" in wanted:
        return ["*"]
    unknown = [t for t in wanted if t not in EVENT_CATEGORIES]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown event types: {', '.join(unknown)}",
        )
    return wanted


async def event_stream(
    bus: EventBus,
    categories: list[str],
    project_id: str | None = None,
    source_id: str | None = None,
    keepalive: float = settings.sse_keepalive_seconds,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for matching events until the consumer goes away.

    The bus subscription lives exactly as long as this generator.
    """
    queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_SIZE)

    def handler(event: Event) -> None:
        if project_id and event.project_id != project_id:
            return
        if source_id and event.source_id != source_id:
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("SSE subscriber queue full, dropping %s", event.type)

    patterns = ["*"] if "*" in categories else [f"{c}:*" for c in categories]
    unsubscribers = [bus.subscribe(pattern, handler) for pattern in patterns]
    try:
        yield format_sse(json.dumps({
            "type": "connection",
            "status": "connected",
            "timestamp": int(time.time() * 1000),
        }))
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    break
                yield KEEPALIVE_FRAME
                continue
            yield format_sse(json.dumps(dump_event(event)))
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
        logger.debug("SSE subscriber closed (project=%s, source=%s)", project_id, source_id)


@router.get("")
async def stream_events(
    request: Request,
    bus: Bus,
    project_id: str | None = None,
    source_id: str | None = None,
    types: str | None = None,
) -> StreamingResponse:
    """Stream crawl/chunk/embed/source events as Server-Sent Events."""
    categories = parse_categories(types)
    return StreamingResponse(
        event_stream(
            bus,
            categories,
            project_id=project_id,
            source_id=source_id,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def emit_event(bus: Bus, payload: dict = Body(...)) -> dict:
    """Publish an event by hand (exercises the bus end to end)."""
    try:
        event = parse_event(payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=json.loads(e.json(include_url=False)),
        )
    await bus.publish(event)
    return {"status": "published", "type": event.type}
