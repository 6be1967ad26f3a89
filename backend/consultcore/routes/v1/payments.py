# backend/consultcore/routes/v1/payments.py
"""
Payment status routes - API v1

Used by the frontend return page after a gateway redirect: the status is
pulled from the gateway and applied before answering.

Endpoints:
    GET /{gateway}/status/{intent_ref} - Poll and reconcile one payment (either party)
"""

import asyncio
import logging

from fastapi import APIRouter, Depends
from fastapi.params import Path

from ...api.dependencies import get_current_actor, get_payment_service
from ...core.exceptions import DomainException
from ...schemas.payment import ReconcileResponse
from ...services.payment_service import PaymentService
from .bookings import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments-v1"])


@router.get("/{gateway}/status/{intent_ref}", response_model=ReconcileResponse)
async def get_payment_status(
    gateway: str = Path(..., min_length=1, max_length=20),
    intent_ref: str = Path(..., min_length=1, max_length=128),
    actor_id: str = Depends(get_current_actor),
    payment_service: PaymentService = Depends(get_payment_service),
) -> ReconcileResponse:
    try:
        outcome = await asyncio.to_thread(
            payment_service.payment_status, gateway, intent_ref, actor_id
        )
        return ReconcileResponse(**outcome)
    except DomainException as e:
        handle_domain_exception(e)
