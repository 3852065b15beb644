"""Per-incident event topics for responders following an SOS live.

Every incident has its own topic.  Only responders the dispatcher has
actually notified for that incident may subscribe; everyone else gets
:class:`NotFoundError` so the existence of an incident is not leaked.
Each subscriber owns a bounded queue; when a slow consumer's queue is full
the oldest event is dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Final

import structlog
from pydantic import BaseModel, Field

from saferelay.services.errors import NotFoundError

logger = structlog.get_logger(__name__)

_QUEUE_SIZE: Final[int] = 100

Authorizer = Callable[[str, str], bool]


class IncidentEvent(BaseModel):
    incident_id: str
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Subscription:
    __slots__ = ("incident_id", "queue", "responder_id")

    def __init__(self, incident_id: str, responder_id: str) -> None:
        self.incident_id = incident_id
        self.responder_id = responder_id
        self.queue: asyncio.Queue[IncidentEvent] = asyncio.Queue(maxsize=_QUEUE_SIZE)

    async def next_event(self) -> IncidentEvent:
        return await self.queue.get()


class IncidentEventHub:
    """Fan events out to the subscribers of one incident topic."""

    __slots__ = ("_authorize", "_topics")

    def __init__(self, authorize: Authorizer) -> None:
        self._authorize = authorize
        self._topics: dict[str, set[Subscription]] = {}

    def subscribe(self, incident_id: str, responder_id: str) -> Subscription:
        if not self._authorize(incident_id, responder_id):
            logger.warning(
                "event_hub.subscribe_denied",
                incident_id=incident_id,
                responder_id=responder_id,
            )
            raise NotFoundError(f"no event topic for {incident_id}")
        subscription = Subscription(incident_id, responder_id)
        self._topics.setdefault(incident_id, set()).add(subscription)
        logger.info("event_hub.subscribed", incident_id=incident_id, responder_id=responder_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._topics.get(subscription.incident_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._topics[subscription.incident_id]

    def publish(self, incident_id: str, event: str, **data: Any) -> int:
        """Deliver an event to every subscriber of the topic.  Returns the count."""
        subscribers = self._topics.get(incident_id)
        if not subscribers:
            return 0
        message = IncidentEvent(incident_id=incident_id, event=event, data=data)
        for subscription in subscribers:
            if subscription.queue.full():
                with contextlib.suppress(asyncio.QueueEmpty):
                    subscription.queue.get_nowait()
            subscription.queue.put_nowait(message)
        return len(subscribers)

    def subscriber_count(self, incident_id: str) -> int:
        return len(self._topics.get(incident_id, ()))
