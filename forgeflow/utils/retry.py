from __future__ import annotations

import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..errors import StateConflictError
from ..graph.model import BackoffStrategy, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(policy: RetryPolicy, attempt: int) -> float:
    """Delay in seconds before re-running a step whose ``attempt`` just failed.

    Exponential: ``base * multiplier ** (attempt - 1)`` capped at
    ``max_backoff``; fixed: ``base``. Jitter is added after capping.
    """
    if attempt < 1:
        raise ValueError("attempt numbers start at 1")
    if policy.strategy == BackoffStrategy.FIXED:
        delay = policy.backoff_base
    else:
        delay = policy.backoff_base * policy.multiplier ** (attempt - 1)
    delay = min(delay, policy.max_backoff)
    if policy.jitter:
        delay += random.uniform(0, policy.jitter)
    return delay


def attempts_remain(policy: RetryPolicy, attempt: int) -> bool:
    return attempt < policy.max_attempts


async def retry_on_conflict(operation: Callable[[], Awaitable[T]]) -> T:
    """Run ``operation`` until it completes without losing a CAS race.

    Conflicts indicate contention, not failure, so they are retried
    immediately and never surfaced to callers.
    """
    conflicts = 0
    while True:
        try:
            return await operation()
        except StateConflictError as exc:
            conflicts += 1
            logger.debug(f"State conflict #{conflicts}, retrying: {exc}")
