"""Service for logging inbound gateway callbacks."""

from __future__ import annotations

import time
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..core.timezone_utils import now_utc
from ..models.webhook_event import WebhookEvent
from ..repositories.factory import RepositoryFactory
from .base import BaseService

_SENSITIVE_HEADERS = {
    "authorization",
    "stripe-signature",
    "paypal-transmission-sig",
    "x-webhook-signature",
    "x-client-secret",
}


class WebhookLedgerService(BaseService):
    """Business logic for webhook ledger entries."""

    def __init__(self, db: Session) -> None:
        super().__init__(db)
        self.repository = RepositoryFactory.create_webhook_event_repository(db)

    def _register_retry(
        self, existing: WebhookEvent, safe_headers: dict[str, Any] | None
    ) -> WebhookEvent:
        existing.retry_count = (existing.retry_count or 0) + 1
        existing.last_retry_at = now_utc()
        if safe_headers is not None:
            existing.headers = safe_headers
        self.repository.flush()
        return existing

    @BaseService.measure_operation("webhook_ledger.log_received")
    def log_received(
        self,
        *,
        source: str,
        event_type: str,
        event_id: str,
        payload: dict[str, Any],
        headers: dict[str, Any] | None = None,
    ) -> WebhookEvent:
        """
        Log a received webhook before processing.

        A redelivery of a known (source, event_id) bumps the retry counter on
        the existing row instead of inserting a new one.
        """
        safe_headers = self._sanitize_headers(headers) if headers else None
        existing = self.repository.find_by_source_and_event_id(source, event_id)
        if existing:
            return self._register_retry(existing, safe_headers)

        try:
            return self.repository.create(
                source=source,
                event_type=event_type or "unknown",
                event_id=event_id,
                payload=payload,
                headers=safe_headers,
                status="received",
                received_at=now_utc(),
                retry_count=0,
            )
        except RepositoryException as exc:
            # another worker inserted the same delivery first
            if isinstance(exc.__cause__, IntegrityError):
                existing = self.repository.find_by_source_and_event_id(source, event_id)
                if existing is not None:
                    return self._register_retry(existing, safe_headers)
            raise

    def is_duplicate(self, event: WebhookEvent) -> bool:
        """Already fully handled; a redelivery changes nothing."""
        return event.status == "processed"

    @BaseService.measure_operation("webhook_ledger.mark_processed")
    def mark_processed(
        self,
        event: WebhookEvent,
        *,
        related_booking_id: str | None = None,
        duration_ms: int | None = None,
        status: str = "processed",
    ) -> WebhookEvent:
        """Mark webhook as successfully processed."""
        event.status = status
        event.processed_at = now_utc()
        event.processing_error = None
        if related_booking_id is not None:
            event.related_booking_id = related_booking_id
        event.processing_duration_ms = duration_ms
        self.repository.flush()
        return event

    @BaseService.measure_operation("webhook_ledger.mark_failed")
    def mark_failed(
        self,
        event: WebhookEvent,
        *,
        error: str,
        duration_ms: int | None = None,
    ) -> WebhookEvent:
        """Mark webhook as failed."""
        event.status = "failed"
        event.processing_error = error[:2000]
        event.processed_at = now_utc()
        event.processing_duration_ms = duration_ms
        self.repository.flush()
        return event

    def _sanitize_headers(self, headers: dict[str, Any]) -> dict[str, Any]:
        return {
            key: ("***" if key.lower() in _SENSITIVE_HEADERS else value)
            for key, value in headers.items()
        }

    @staticmethod
    def elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
