"""Server-Sent Events channel for live session progress."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from catalog_importer.api.dependencies.services import get_app_settings, get_import_service
from catalog_importer.api.routers.session_helpers import http_error
from catalog_importer.core.config import Settings
from catalog_importer.core.errors import EngineError
from catalog_importer.schemas.events import encode_event
from catalog_importer.services.import_service import ImportService
from catalog_importer.services.progress_broadcaster import AsyncQueueSubscriber

logger = logging.getLogger(__name__)

router = APIRouter()

KEEPALIVE_SECONDS = 15


@router.get("/{session_id}/events", summary="Server-Sent Events stream for real-time progress")
async def stream_session_events(
    session_id: str,
    request: Request,
    service: ImportService = Depends(get_import_service),
    settings: Settings = Depends(get_app_settings),
) -> StreamingResponse:
    """Stream session events via Server-Sent Events (SSE).

    The first event is a ``progress`` snapshot of the stored session; after
    that every published event is forwarded as ``event: <type>``. Missed
    events are not replayed on reconnect. The stream closes after a terminal
    event with ``event: close``.

    Example client usage:
    ```javascript
    const source = new EventSource('/api/sessions/{session_id}/events');
    source.addEventListener('progress', (e) => console.log(JSON.parse(e.data)));
    ```
    """
    subscriber = AsyncQueueSubscriber(asyncio.get_running_loop(), maxsize=settings.event_queue_size)
    try:
        await asyncio.to_thread(service.subscribe, session_id, subscriber)
    except EngineError as e:
        raise http_error(e) from e

    async def event_generator() -> AsyncGenerator[str, None]:
        try:
            while True:
                try:
                    event = await subscriber.next_event(timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                if event is None:
                    yield "event: close\ndata: {}\n\n"
                    break
                yield f"event: {event.type}\ndata: {encode_event(event)}\n\n"
        finally:
            service.unsubscribe(session_id, subscriber)
            logger.debug(f"SSE subscriber for session {session_id} disconnected")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
