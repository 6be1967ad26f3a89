"""Event publisher - writes events to the outbox inside the caller's transaction."""
from datetime import datetime
from typing import Any, Dict, Protocol

from consultcore.models.event_outbox import EventOutbox
from consultcore.repositories.event_outbox_repository import EventOutboxRepository


class Event(Protocol):
    """Protocol for event types."""

    booking_id: str

    def to_dict(self) -> Dict[str, Any]:
        ...

    def idempotency_key(self) -> str:
        ...


class EventPublisher:
    """Publishes lifecycle events to the outbox for async delivery."""

    def __init__(self, outbox_repository: EventOutboxRepository):
        self.outbox_repo = outbox_repository

    def publish(self, event: Event) -> EventOutbox:
        """
        Queue an event for delivery.

        The row commits or rolls back with the state change that produced it,
        so subscribers never hear about a transition that did not happen.
        """
        payload = event.to_dict()

        # Convert datetime objects to ISO strings for JSON serialization
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()

        return self.outbox_repo.enqueue(
            event_type=type(event).__name__,
            aggregate_id=event.booking_id,
            payload=payload,
            idempotency_key=event.idempotency_key(),
        )
