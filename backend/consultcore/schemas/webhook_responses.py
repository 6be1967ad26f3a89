"""Pydantic models for webhook endpoint responses."""

from typing import Optional

from pydantic import ConfigDict

from ._strict_base import StrictModel


class WebhookAckResponse(StrictModel):
    """Standard acknowledgement payload returned by webhook endpoints."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)
    ok: bool = True
    status: str
    event_id: Optional[str] = None


__all__ = ["WebhookAckResponse"]
