"""Responses for the internal lifecycle endpoints."""

from datetime import datetime
from typing import List

from ._strict_base import StrictModel


class SweepReportResponse(StrictModel):
    started_at: datetime
    cancelled: int
    completed: int
    chats_closed: int
    skipped: int
    failed: int
    lock_skipped: bool
    duration_seconds: float
    failed_bookings: List[str]


class HealthResponse(StrictModel):
    status: str
    service: str
    version: str
    environment: str
    timestamp: str


__all__ = ["HealthResponse", "SweepReportResponse"]
