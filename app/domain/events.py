"""
Domain events

One event per status transition. Subscribers are registered on the EventBus
that the service context builds; the workflow coordinator and the outbox
relay both subscribe to the same stream.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    entity_type: str
    entity_id: int
    from_state: str | None
    to_state: str
    actor_id: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def name(self) -> str:
        return f"{self.entity_type}.{self.to_state}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventSubscriber(Protocol):
    async def __call__(self, db: AsyncSession, event: DomainEvent) -> None: ...


class EventBus:
    """
    In-process dispatcher. Subscribers run in registration order inside the
    caller's unit of work and share its session; an exception propagates to
    the publisher so the whole unit of work is rolled back.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callable[[AsyncSession, DomainEvent], Awaitable[None]]] = []
        self._published: list[DomainEvent] = []
        self.record_history = False

    def subscribe(self, subscriber: Callable[[AsyncSession, DomainEvent], Awaitable[None]]) -> None:
        self._subscribers.append(subscriber)

    async def publish(self, db: AsyncSession, event: DomainEvent) -> None:
        logger.debug(
            "Publishing domain event",
            extra_data={
                "event": event.name,
                "entity_id": event.entity_id,
                "from_state": event.from_state,
            }
        )
        if self.record_history:
            self._published.append(event)
        for subscriber in self._subscribers:
            await subscriber(db, event)

    @property
    def published(self) -> list[DomainEvent]:
        return list(self._published)
