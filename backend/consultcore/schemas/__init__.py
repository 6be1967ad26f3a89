from .booking import (
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
from .lifecycle import HealthResponse, SweepReportResponse
from .payment import CreatePaymentRequest, PaymentIntentResponse, ReconcileResponse
from .webhook_responses import WebhookAckResponse

__all__ = [
    "BookingResponse",
    "BookingStatusResponse",
    "CancelBookingRequest",
    "CancellationResponse",
    "ChatStateResponse",
    "CompleteBookingRequest",
    "CompletionOtpResponse",
    "CreateBookingRequest",
    "CreatePaymentRequest",
    "HealthResponse",
    "PaymentIntentResponse",
    "ReconcileResponse",
    "SessionResponse",
    "SweepReportResponse",
    "WebhookAckResponse",
]
