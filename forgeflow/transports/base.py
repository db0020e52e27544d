"""Base transport interface for the forgeflow job queue."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, AsyncIterator, Generic, Optional, Tuple, TypeVar, Union

from ..contracts import EngineMessage

if TYPE_CHECKING:
    from ..events import StepEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for durable, at-least-once queues."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(
        self,
        topic: str,
        message: Union[EngineMessage, "StepEvent"],
        delay: float = 0.0,
    ) -> None:
        """Send a message to a topic/queue.

        Args:
            topic: Destination queue.
            message: Envelope to deliver.
            delay: Seconds to hold the message back before it becomes
                deliverable. Used for retries and delay nodes.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, EngineMessage]]:
        """Yield raw transport message and EngineMessage pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
