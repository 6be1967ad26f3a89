# backend/consultcore/routes/v1/bookings.py
"""
Booking lifecycle routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingLifecycleService and PaymentService.

Endpoints:
    POST / - Request a booking (caller is the requester)
    GET /{booking_id} - Booking with its payment status (either party)
    POST /{booking_id}/payment - Open a payment with the chosen gateway
    POST /{booking_id}/cancel - Cancel a booking (either party)
    POST /{booking_id}/start - Record the session start
    POST /{booking_id}/completion-otp - Issue a completion code (requester)
    POST /{booking_id}/complete - Complete with the code (requester)
    GET /{booking_id}/chat - Post-session chat window state
"""

import asyncio
from datetime import timedelta
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.params import Path

from ...api.dependencies import get_current_actor, get_lifecycle_service, get_payment_service
from ...core.exceptions import DomainException
from ...core.ulid_helper import ULID_PATH_PATTERN
from ...schemas.booking import (
    BookingResponse,
    BookingStatusResponse,
    CancelBookingRequest,
    CancellationResponse,
    ChatStateResponse,
    CompleteBookingRequest,
    CompletionOtpResponse,
    CreateBookingRequest,
    SessionResponse,
)
from ...schemas.payment import CreatePaymentRequest, PaymentIntentResponse
from ...services.booking_lifecycle_service import BookingLifecycleService
from ...services.payment_service import PaymentService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: CreateBookingRequest = Body(...),
    actor_id: str = Depends(get_current_actor),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> BookingResponse:
    """Request a consultation. The booking stays PENDING until it is paid."""
    try:
        booking = await asyncio.to_thread(
            lifecycle.create_booking,
            actor_id,
            payload.provider_id,
            payload.start_time,
            payload.start_time + timedelta(minutes=payload.duration_minutes),
            payload.amount,
            payload.currency,
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}", response_model=BookingStatusResponse)
async def get_booking(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_current_actor),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> BookingStatusResponse:
    try:
        state = await asyncio.to_thread(lifecycle.booking_status, booking_id, actor_id)
        return BookingStatusResponse.from_state(state)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/payment",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: CreatePaymentRequest = Body(...),
    actor_id: str = Depends(get_current_actor),
    payment_service: PaymentService = Depends(get_payment_service),
) -> PaymentIntentResponse:
    """
    Open a payment intent for a PENDING booking.

    The response carries the gateway's redirect target: a client secret for
    Stripe, an approval URL for PayPal, a hosted checkout URL for Cashfree.
    """
    try:
        result = await asyncio.to_thread(
            payment_service.create_payment_intent,
            booking_id,
            actor_id,
            payload.gateway,
            payload.to_payer(actor_id),
        )
        return PaymentIntentResponse(**result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/cancel", response_model=CancellationResponse)
async def cancel_booking(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: Optional[CancelBookingRequest] = Body(default=None),
    actor_id: str = Depends(get_current_actor),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> CancellationResponse:
    """Cancel a booking. The cancellation stands even when the refund fails."""
    try:
        result = await asyncio.to_thread(
            lifecycle.cancel_booking,
            booking_id,
            actor_id,
            payload.reason if payload else None,
        )
        return CancellationResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/start", response_model=SessionResponse)
async def start_session(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_current_actor),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(lifecycle.start_session, booking_id, actor_id)
        return await asyncio.to_thread(SessionResponse.from_session, session)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/completion-otp",
    response_model=CompletionOtpResponse,
    status_code=status.HTTP_201_CREATED,
)
async def issue_completion_otp(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_current_actor),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> CompletionOtpResponse:
    """Issue a fresh completion code; any earlier code for the booking stops working."""
    try:
        issued = await asyncio.to_thread(lifecycle.issue_completion_otp, booking_id, actor_id)
        return CompletionOtpResponse(
            booking_id=booking_id, code=issued.code, expires_at=issued.expires_at
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: CompleteBookingRequest = Body(...),
    actor_id: str = Depends(get_current_actor),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            lifecycle.complete_booking, booking_id, actor_id, payload.otp
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}/chat", response_model=ChatStateResponse)
async def get_chat_state(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_current_actor),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> ChatStateResponse:
    try:
        state = await asyncio.to_thread(lifecycle.chat_state, booking_id, actor_id)
        return ChatStateResponse.from_state(state)
    except DomainException as e:
        handle_domain_exception(e)
