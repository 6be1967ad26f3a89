"""Event handlers - deliver outbox events to registered collaborators."""
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], None]


def log_status_change(payload: Dict[str, Any]) -> None:
    logger.info(
        "Booking %s moved %s -> %s (%s)",
        payload.get("booking_id"),
        payload.get("from_status"),
        payload.get("to_status"),
        payload.get("trigger"),
    )


def log_chat_window(payload: Dict[str, Any]) -> None:
    logger.info(
        "Chat window update for booking %s (session %s)",
        payload.get("booking_id"),
        payload.get("session_id"),
    )


def log_refund(payload: Dict[str, Any]) -> None:
    logger.info(
        "Refund %s for booking %s: %s via %s",
        payload.get("status"),
        payload.get("booking_id"),
        payload.get("amount"),
        payload.get("gateway"),
    )


# Registry of event type -> handler functions
EVENT_HANDLERS: Dict[str, List[EventHandler]] = {
    "BookingStatusChanged": [log_status_change],
    "ChatWindowOpened": [log_chat_window],
    "ChatWindowClosed": [log_chat_window],
    "RefundIssued": [log_refund],
}


def register_handler(event_type: str, handler: EventHandler) -> None:
    """Subscribe a collaborator (notifications, messaging, accounting) to an event type."""
    handlers = EVENT_HANDLERS.setdefault(event_type, [])
    if handler not in handlers:
        handlers.append(handler)


def unregister_handler(event_type: str, handler: EventHandler) -> None:
    handlers = EVENT_HANDLERS.get(event_type, [])
    if handler in handlers:
        handlers.remove(handler)


def process_event(event_type: str, payload: Dict[str, Any]) -> bool:
    """
    Run every handler registered for ``event_type``.

    Returns False when no handler is registered. Handler exceptions propagate
    so the dispatcher can schedule a retry.
    """
    handlers = EVENT_HANDLERS.get(event_type)
    if not handlers:
        logger.warning("No handler for event type: %s", event_type)
        return False
    for handler in list(handlers):
        handler(payload)
    return True
