"""Event Bus: in-process publish/subscribe for progress events.

``emit`` is synchronous and fans out to subscribers in subscription order.
There is no persistence and no replay: a late subscriber only sees what is
emitted after it subscribed, so clients re-query feature state on connect.

``stream()`` adapts the bus for async consumers (the SSE endpoint) with a
bounded queue per consumer, the same way the dashboard activity stream works.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]
GlobalHandler = Callable[[str, Any], None]
Unsubscribe = Callable[[], None]

_STREAM_QUEUE_SIZE = 1000
HEARTBEAT_TOPIC = "heartbeat"


class EventBus:
    """Synchronous topic-based fan-out."""

    def __init__(self) -> None:
        # Subscription order is kept across topic and global handlers by a
        # shared sequence number.
        self._seq = itertools.count()
        self._handlers: dict[str, list[tuple[int, Handler]]] = {}
        self._global_handlers: list[tuple[int, GlobalHandler]] = []

    def subscribe(self, topic: str, handler: Handler) -> Unsubscribe:
        """Register ``handler`` for ``topic``; returns an unsubscribe function."""
        entry = (next(self._seq), handler)
        self._handlers.setdefault(topic, []).append(entry)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic)
            if handlers and entry in handlers:
                handlers.remove(entry)

        return unsubscribe

    def subscribe_all(self, handler: GlobalHandler) -> Unsubscribe:
        """Register ``handler(topic, payload)`` for every topic."""
        entry = (next(self._seq), handler)
        self._global_handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._global_handlers:
                self._global_handlers.remove(entry)

        return unsubscribe

    def emit(self, topic: str, payload: Any) -> None:
        """Deliver ``payload`` to every current subscriber of ``topic``."""
        targets: list[tuple[int, Callable[[], None]]] = []
        for seq, handler in list(self._handlers.get(topic, ())):
            targets.append((seq, _bind(handler, payload)))
        for seq, global_handler in list(self._global_handlers):
            targets.append((seq, _bind(global_handler, topic, payload)))
        targets.sort(key=lambda t: t[0])

        for _, call in targets:
            try:
                call()
            except Exception:
                logger.exception("Event handler error for %s", topic)

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is None:
            return len(self._global_handlers)
        return len(self._handlers.get(topic, ()))

    async def stream(self, heartbeat: float | None = None) -> AsyncIterator[tuple[str, Any]]:
        """Yield ``(topic, payload)`` for every event until the consumer stops.

        With ``heartbeat`` set, ``(HEARTBEAT_TOPIC, None)`` is yielded after that
        many idle seconds. A consumer that falls more than the queue size
        behind is disconnected.
        """
        queue: asyncio.Queue[tuple[str, Any] | None] = asyncio.Queue(
            maxsize=_STREAM_QUEUE_SIZE
        )

        def enqueue(topic: str, payload: Any) -> None:
            try:
                queue.put_nowait((topic, payload))
            except asyncio.QueueFull:
                logger.warning("Event stream consumer too slow, disconnecting")
                unsubscribe()
                # Make room for the end-of-stream marker.
                queue.get_nowait()
                queue.put_nowait(None)

        unsubscribe = self.subscribe_all(enqueue)
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    yield HEARTBEAT_TOPIC, None
                    continue
                if item is None:
                    return
                yield item
        finally:
            unsubscribe()


def _bind(handler: Callable[..., None], *args: Any) -> Callable[[], None]:
    return lambda: handler(*args)
