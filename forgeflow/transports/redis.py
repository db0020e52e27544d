"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..constants import (
    DEFAULT_LOCK_DURATION,
    DEFAULT_MAX_STALLED_COUNT,
    DEFAULT_STALLED_INTERVAL,
)
from ..contracts import EngineMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis-based reliable queue.

    Deliveries move atomically from ``<queue>`` to ``<queue>:processing``
    and stay there until acknowledged. Each delivery also takes a lease in
    the sorted set ``<queue>:leases`` scored by its claim time; a lease
    older than ``lock_duration`` belongs to a consumer that died, and its
    message is put back on the queue. A message that stalls more than
    ``max_stalled_count`` times is parked on ``<queue>:failed``. Delayed
    messages wait in the sorted set ``<queue>:delayed`` scored by their
    due time.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "forgeflow",
        lock_duration: float = DEFAULT_LOCK_DURATION,
        stalled_interval: float = DEFAULT_STALLED_INTERVAL,
        max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.lock_duration = lock_duration
        self.stalled_interval = stalled_interval
        self.max_stalled_count = max_stalled_count
        self._redis: Optional[Any] = None
        self._last_stalled_check: Dict[str, float] = {}

    def _queue(self, topic: str) -> str:
        return f"{self.key_prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(
        self, topic: str, message: EngineMessage, delay: float = 0.0
    ) -> None:
        if not self._redis:
            await self.connect()

        queue_name = self._queue(topic)
        message_json = message.to_json()
        if delay > 0:
            await self._redis.zadd(
                f"{queue_name}:delayed", {message_json: time.time() + delay}
            )
        else:
            await self._redis.lpush(queue_name, message_json)

    async def _promote_due(self, queue_name: str) -> None:
        """Move delayed messages whose time has come onto the live queue."""
        delayed = f"{queue_name}:delayed"
        due = await self._redis.zrangebyscore(delayed, 0, time.time(), start=0, num=100)
        for item in due:
            # only the consumer that removes the entry re-queues it
            if await self._redis.zrem(delayed, item):
                await self._redis.lpush(queue_name, item)

    async def recover_stalled(self, queue_name: str) -> int:
        """Return deliveries whose lease expired to the queue.

        Returns the number of messages requeued.
        """
        leases = f"{queue_name}:leases"
        stalled_counts = f"{queue_name}:stalled"
        expired = await self._redis.zrangebyscore(
            leases, 0, time.time() - self.lock_duration, start=0, num=100
        )
        requeued = 0
        for item in expired:
            if not await self._redis.zrem(leases, item):
                continue
            await self._redis.lrem(f"{queue_name}:processing", 1, item)
            count = await self._redis.hincrby(stalled_counts, item, 1)
            if count > self.max_stalled_count:
                logger.error(
                    f"Message on {queue_name} stalled {count} times; "
                    f"moving it to {queue_name}:failed"
                )
                await self._redis.hdel(stalled_counts, item)
                await self._redis.lpush(f"{queue_name}:failed", item)
                continue
            logger.warning(f"Requeueing stalled delivery on {queue_name}")
            await self._redis.lpush(queue_name, item)
            requeued += 1
        return requeued

    async def _maybe_recover_stalled(self, queue_name: str) -> None:
        now = time.time()
        if now - self._last_stalled_check.get(queue_name, 0.0) < self.stalled_interval:
            return
        self._last_stalled_check[queue_name] = now
        await self.recover_stalled(queue_name)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], EngineMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue(topic)
        processing = f"{queue_name}:processing"
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            await self._maybe_recover_stalled(queue_name)
            await self._promote_due(queue_name)
            message_json = await self._redis.blmove(
                queue_name, processing, timeout=1, src="RIGHT", dest="LEFT"
            )
            if not message_json:
                continue

            try:
                message = EngineMessage.from_json(message_json)
            except ValidationError as e:
                logger.error(f"Dropping unparseable message on {queue_name}: {e}")
                await self._redis.lrem(processing, 1, message_json)
                continue
            await self._redis.zadd(f"{queue_name}:leases", {message_json: time.time()})
            yield (topic, message_json), message

    async def _release(self, queue_name: str, message_json: str) -> None:
        await self._redis.lrem(f"{queue_name}:processing", 1, message_json)
        await self._redis.zrem(f"{queue_name}:leases", message_json)

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        topic, message_json = raw_message
        queue_name = self._queue(topic)
        await self._release(queue_name, message_json)
        await self._redis.hdel(f"{queue_name}:stalled", message_json)

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        topic, message_json = raw_message
        queue_name = self._queue(topic)
        await self._release(queue_name, message_json)
        if requeue:
            await self._redis.lpush(queue_name, message_json)
