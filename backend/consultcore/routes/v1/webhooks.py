# backend/consultcore/routes/v1/webhooks.py
"""
Gateway webhook receivers.

The raw body is handed to the gateway binding untouched because every
provider signs the exact bytes it sent.

Endpoints:
    POST /{gateway} - Stripe, PayPal and Cashfree callbacks
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.params import Path

from ...api.dependencies import get_payment_service
from ...core.exceptions import DomainException
from ...payments.base import normalize_headers
from ...schemas.webhook_responses import WebhookAckResponse
from ...services.payment_service import PaymentService
from .bookings import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks-v1"])


@router.post("/{gateway}", response_model=WebhookAckResponse)
async def receive_gateway_webhook(
    request: Request,
    gateway: str = Path(..., min_length=1, max_length=20),
    payment_service: PaymentService = Depends(get_payment_service),
) -> WebhookAckResponse:
    """
    Verify and apply a gateway callback.

    Signature failures answer 400 so the provider retries; duplicates and
    notices for unknown intents are acknowledged.
    """
    body = await request.body()
    headers = normalize_headers(request.headers)
    try:
        outcome = await asyncio.to_thread(payment_service.handle_webhook, gateway, body, headers)
    except DomainException as e:
        logger.warning(
            "Webhook rejected",
            extra={"gateway": gateway, "error_code": e.code},
        )
        handle_domain_exception(e)
    return WebhookAckResponse(status=outcome["status"], event_id=outcome.get("event_id"))
