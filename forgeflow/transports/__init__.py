"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ForgeflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[ForgeflowConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("FORGEFLOW_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=redis_conf.key_prefix,
            lock_duration=redis_conf.lock_duration,
            stalled_interval=redis_conf.stalled_interval,
            max_stalled_count=redis_conf.max_stalled_count,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        rabbit_conf = config.transport.rabbitmq
        return RabbitMQTransport(
            url=rabbit_conf.url, prefetch_count=rabbit_conf.prefetch_count
        )
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
