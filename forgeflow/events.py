"""Best-effort publication of execution and step transitions."""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Union

from pydantic import BaseModel, Field

from .constants import EVENTS_TOPIC

if TYPE_CHECKING:
    from .transports import BaseTransport

logger = logging.getLogger(__name__)


class StepEvent(BaseModel):
    """A status change of a step, or of the execution when ``node_id`` is None."""

    execution_id: str
    node_id: Optional[str] = None
    step_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    detail: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json()


Subscriber = Callable[[StepEvent], Union[None, Awaitable[None]]]


class EventEmitter:
    """Fan transitions out to in-process subscribers and, optionally, a topic.

    Delivery is best effort: a failing subscriber is logged and skipped and
    never affects execution state.
    """

    def __init__(
        self,
        transport: "BaseTransport | None" = None,
        topic: str = EVENTS_TOPIC,
    ) -> None:
        self._subscribers: List[Subscriber] = []
        self._transport = transport
        self._topic = topic

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def emit(self, event: StepEvent) -> None:
        logger.debug(
            f"Event {event.execution_id}/{event.node_id or '-'}: "
            f"{event.from_status} -> {event.to_status}"
        )
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(f"Event subscriber {callback!r} failed: {exc}")

        if self._transport is not None:
            try:
                await self._transport.publish(self._topic, event)
            except Exception as exc:
                logger.warning(f"Publishing event to {self._topic} failed: {exc}")

    async def step_changed(
        self,
        execution_id: str,
        node_id: str,
        step_id: str,
        from_status: Optional[str],
        to_status: str,
        **detail: Any,
    ) -> None:
        await self.emit(
            StepEvent(
                execution_id=execution_id,
                node_id=node_id,
                step_id=step_id,
                from_status=from_status,
                to_status=to_status,
                detail=detail,
            )
        )

    async def execution_changed(
        self,
        execution_id: str,
        from_status: Optional[str],
        to_status: str,
        **detail: Any,
    ) -> None:
        await self.emit(
            StepEvent(
                execution_id=execution_id,
                from_status=from_status,
                to_status=to_status,
                detail=detail,
            )
        )
