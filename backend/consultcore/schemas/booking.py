"""Request and response schemas for the booking lifecycle routes."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field

from ._strict_base import StrictModel, StrictRequestModel


class CreateBookingRequest(StrictRequestModel):
    """A consultation request; the caller is the requester."""

    provider_id: str = Field(..., min_length=1, max_length=26)
    start_time: datetime
    duration_minutes: int = Field(..., ge=30, le=120)
    amount: Decimal
    currency: str = Field(default="INR", min_length=3, max_length=3)


class CancelBookingRequest(StrictRequestModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CompleteBookingRequest(StrictRequestModel):
    """The six digit code shown to the requester."""

    otp: str = Field(..., min_length=1, max_length=16)


class BookingResponse(StrictModel):
    """Booking as seen by either party."""

    model_config = ConfigDict(extra="forbid", validate_assignment=False)

    id: str
    requester_id: str
    provider_id: str
    start_time: datetime
    end_time: datetime
    amount: Decimal
    currency: str
    status: str
    meeting_link: Optional[str] = None
    recording_link: Optional[str] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None

    @classmethod
    def from_booking(cls, booking: Any) -> "BookingResponse":
        return cls(
            id=booking.id,
            requester_id=booking.requester_id,
            provider_id=booking.provider_id,
            start_time=booking.start_utc,
            end_time=booking.end_utc,
            amount=booking.amount,
            currency=booking.currency,
            status=booking.status,
            meeting_link=booking.meeting_link,
            recording_link=booking.recording_link,
            created_at=booking.created_at,
            confirmed_at=booking.confirmed_at,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
            cancelled_by_id=booking.cancelled_by_id,
            cancellation_reason=booking.cancellation_reason,
            refund_amount=booking.refund_amount,
        )


class BookingStatusResponse(StrictModel):
    """The booking plus its latest payment and, while unpaid, the payment deadline."""

    booking: BookingResponse
    payment_status: Optional[str] = None
    payment_deadline: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "BookingStatusResponse":
        return cls(
            booking=BookingResponse.from_booking(state["booking"]),
            payment_status=state["payment_status"],
            payment_deadline=state["payment_deadline"],
        )


class CancellationResponse(StrictModel):
    booking: BookingResponse
    refund_amount: Decimal
    refund_status: str

    @classmethod
    def from_result(cls, result: Any) -> "CancellationResponse":
        return cls(
            booking=BookingResponse.from_booking(result.booking),
            refund_amount=result.refund_amount,
            refund_status=result.refund_status,
        )


class SessionResponse(StrictModel):
    id: str
    booking_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    chat_expires_at: Optional[datetime] = None
    meeting_link: Optional[str] = None

    @classmethod
    def from_session(cls, session: Any) -> "SessionResponse":
        booking = session.booking
        return cls(
            id=session.id,
            booking_id=session.booking_id,
            started_at=session.started_at,
            ended_at=session.ended_at,
            chat_expires_at=session.chat_expires_at,
            meeting_link=booking.meeting_link if booking is not None else None,
        )


class CompletionOtpResponse(StrictModel):
    booking_id: str
    code: str
    expires_at: datetime


class ChatStateResponse(StrictModel):
    booking_id: str
    open: bool
    expires_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "ChatStateResponse":
        return cls(**state)


__all__ = [
    "BookingResponse",
    "BookingStatusResponse",
    "CancelBookingRequest",
    "CancellationResponse",
    "ChatStateResponse",
    "CompleteBookingRequest",
    "CompletionOtpResponse",
    "CreateBookingRequest",
    "SessionResponse",
]
