"""Lifecycle events delivered through the transactional outbox."""

from consultcore.events.handlers import process_event, register_handler, unregister_handler
from consultcore.events.lifecycle_events import (
    BookingStatusChanged,
    ChatWindowClosed,
    ChatWindowOpened,
    RefundIssued,
)
from consultcore.events.publisher import EventPublisher

__all__ = [
    "BookingStatusChanged",
    "ChatWindowClosed",
    "ChatWindowOpened",
    "EventPublisher",
    "RefundIssued",
    "process_event",
    "register_handler",
    "unregister_handler",
]
