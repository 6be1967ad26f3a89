"""Payment intent and reconciliation schemas."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import EmailStr, Field

from ..payments.base import PayerInfo
from ._strict_base import StrictModel, StrictRequestModel


class CreatePaymentRequest(StrictRequestModel):
    gateway: str = Field(..., description="stripe, paypal or cashfree")
    payer_email: Optional[EmailStr] = None
    payer_name: Optional[str] = Field(default=None, max_length=200)
    payer_phone: Optional[str] = Field(default=None, max_length=20)

    def to_payer(self, actor_id: str) -> PayerInfo:
        return PayerInfo(
            payer_id=actor_id,
            email=str(self.payer_email) if self.payer_email else None,
            name=self.payer_name,
            phone=self.payer_phone,
        )


class PaymentIntentResponse(StrictModel):
    transaction_id: str
    booking_id: str
    gateway: str
    intent_ref: str
    redirect_target: Optional[str] = None
    status: str
    amount: Decimal
    currency: str
    gateway_amount: Decimal
    gateway_currency: str


class ReconcileResponse(StrictModel):
    transaction_id: str
    booking_id: str
    gateway: str
    intent_ref: str
    payment_status: str
    booking_status: Optional[str] = None


__all__ = ["CreatePaymentRequest", "PaymentIntentResponse", "ReconcileResponse"]
