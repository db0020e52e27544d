"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..contracts import EngineMessage
from .base import BaseTransport

RawMessage = Tuple[str, str, EngineMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue for unit tests.

    Each topic is a heap ordered by the time a message becomes deliverable,
    then by publish order. Raw messages are ``(topic, json, message)``;
    unacknowledged deliveries are tracked so ``nack`` can requeue them.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, List[Tuple[float, int, RawMessage]]] = defaultdict(list)
        self._inflight: Dict[str, RawMessage] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def publish(
        self, topic: str, message: EngineMessage, delay: float = 0.0
    ) -> None:
        """Publish message to in-memory queue."""
        raw = (topic, message.to_json(), message)
        ready_at = time.monotonic() + max(delay, 0.0)
        async with self._lock:
            heapq.heappush(self._queues[topic], (ready_at, next(self._seq), raw))

    def pending(self, topic: str) -> int:
        """Number of queued messages on ``topic``, delayed ones included."""
        return len(self._queues[topic])

    async def take(
        self, topic: str, ignore_delay: bool = False
    ) -> Optional[Tuple[RawMessage, EngineMessage]]:
        """Pop the next deliverable message without blocking.

        ``ignore_delay`` lets tests fast-forward scheduled messages.
        """
        async with self._lock:
            queue = self._queues[topic]
            if not queue:
                return None
            ready_at, _, raw = queue[0]
            if not ignore_delay and ready_at > time.monotonic():
                return None
            heapq.heappop(queue)
            self._inflight[raw[1]] = raw
        # decode a fresh copy so consumers never share objects with publishers
        return raw, type(raw[2]).model_validate_json(raw[1])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, EngineMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            item = await self.take(topic)
            if item is not None:
                yield item
                continue

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: RawMessage) -> None:
        self._inflight.pop(raw_message[1], None)

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        self._inflight.pop(raw_message[1], None)
        if requeue:
            async with self._lock:
                heapq.heappush(
                    self._queues[raw_message[0]],
                    (time.monotonic(), next(self._seq), raw_message),
                )
