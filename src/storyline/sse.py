"""Server-Sent Events adapter for broadcast frames."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from storyline.broadcast import CLOSED, Subscriber, SubscriberRegistry

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_frame(frame: dict) -> str:
    """Render one frame as ``data: <json>\\n\\n``."""
    return f"data: {json.dumps(frame, ensure_ascii=False)}\n\n"


async def subscription(
    subscriber: Subscriber,
    registry: SubscriberRegistry,
) -> AsyncIterator[str]:
    """Yield SSE text for a subscriber until it is closed.

    The subscriber must already be registered; it is unregistered when
    the client disconnects, the generator is closed, or the server
    shuts down.
    """
    try:
        while True:
            frame = await subscriber.get()
            if frame is CLOSED:
                break
            yield format_frame(frame)
    except asyncio.CancelledError:
        logger.debug(f"Subscriber {subscriber.id} cancelled")
        raise
    finally:
        registry.unregister(subscriber)
