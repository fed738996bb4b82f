from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 256


class ActivityBroadcaster:
    def __init__(self, *, queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = max(1, int(queue_size))
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        logger.debug(
            "activity.subscriber_added",
            extra={"event": "activity.subscriber_added", "subscribers": len(self._subscribers)},
        )
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._subscribers.discard(queue)

    def publish(self, message: dict[str, Any]) -> None:
        # Fan-out; a slow subscriber loses messages instead of blocking the producer.
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(
                    "activity.subscriber_queue_full",
                    extra={"event": "activity.subscriber_queue_full"},
                )


async def activity_event_stream(
    broadcaster: ActivityBroadcaster,
    *,
    collector: str | None = None,
) -> AsyncGenerator[str, None]:
    queue = broadcaster.subscribe()
    try:
        while True:
            message = await queue.get()
            if collector is not None and message.get("collector") != collector:
                continue
            # Server-Sent Events format: "event: <type>\ndata: <json>\n\n"
            yield f"event: activity\ndata: {json.dumps(message)}\n\n"
    except asyncio.CancelledError:
        logger.debug("activity.stream_disconnected", extra={"event": "activity.stream_disconnected"})
        raise
    finally:
        broadcaster.unsubscribe(queue)
