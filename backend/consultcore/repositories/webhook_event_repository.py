"""Repository for the inbound webhook ledger."""

from __future__ import annotations

from sqlalchemy.orm import Session

from consultcore.models.webhook_event import WebhookEvent
from consultcore.repositories.base_repository import BaseRepository


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, WebhookEvent)

    def find_by_source_and_event_id(self, source: str, event_id: str) -> WebhookEvent | None:
        return self.find_one_by(source=source, event_id=event_id)
