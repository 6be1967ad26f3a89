"""Stripe PaymentIntents binding."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe

from consultcore.core.config import settings
from consultcore.core.exceptions import GatewayException, WebhookSignatureException
from consultcore.payments.base import (
    GatewayName,
    GatewayNotice,
    NormalizedPaymentStatus,
    PayerInfo,
    PaymentGateway,
    PaymentIntentResult,
    PaymentStatusResult,
    RefundResult,
    from_minor_units,
    map_status,
    normalize_headers,
    to_minor_units,
)

STRIPE_STATUS_MAP: Dict[str, NormalizedPaymentStatus] = {
    "requires_payment_method": NormalizedPaymentStatus.PENDING,
    "requires_confirmation": NormalizedPaymentStatus.PENDING,
    "requires_action": NormalizedPaymentStatus.PENDING,
    "processing": NormalizedPaymentStatus.PENDING,
    "requires_capture": NormalizedPaymentStatus.PENDING,
    "succeeded": NormalizedPaymentStatus.COMPLETED,
    "canceled": NormalizedPaymentStatus.CANCELLED,
}

STRIPE_EVENT_HINTS: Dict[str, NormalizedPaymentStatus] = {
    "payment_intent.succeeded": NormalizedPaymentStatus.COMPLETED,
    "payment_intent.payment_failed": NormalizedPaymentStatus.FAILED,
    "payment_intent.canceled": NormalizedPaymentStatus.CANCELLED,
    "payment_intent.processing": NormalizedPaymentStatus.PENDING,
}


class StripeGateway(PaymentGateway):
    name = GatewayName.STRIPE.value

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        sdk: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key or settings.stripe_secret_key.get_secret_value()
        self._webhook_secret = webhook_secret or settings.stripe_webhook_secret.get_secret_value()
        self._sdk = sdk or stripe
        if self._sdk is stripe:
            # retries are handled by PaymentGateway.call
            stripe.max_network_retries = 0
            stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    def is_transient(self, exc: Exception) -> bool:
        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
            return True
        return super().is_transient(exc)

    def create_intent(
        self,
        booking_id: str,
        amount: Decimal,
        currency: str,
        payer: PayerInfo,
        *,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        stripe_currency = (currency or settings.stripe_currency).lower()

        def _create() -> Any:
            return self._sdk.PaymentIntent.create(
                api_key=self._api_key,
                amount=to_minor_units(amount),
                currency=stripe_currency,
                automatic_payment_methods={"enabled": True},
                receipt_email=payer.email,
                metadata={"booking_id": booking_id, "payer_id": payer.payer_id},
                idempotency_key=idempotency_key,
            )

        intent = self.call("create_intent", _create, retryable=True)
        return PaymentIntentResult(
            intent_ref=intent.id,
            redirect_target=getattr(intent, "client_secret", None),
            raw_status=intent.status,
            currency=stripe_currency,
            gateway_amount=amount,
        )

    def verify_status(self, intent_ref: str) -> PaymentStatusResult:
        intent = self.call(
            "verify_status",
            lambda: self._sdk.PaymentIntent.retrieve(intent_ref, api_key=self._api_key),
            retryable=True,
        )
        raw_status = intent.status
        status = map_status(self.name, raw_status, STRIPE_STATUS_MAP)
        received = getattr(intent, "amount_received", None)
        return PaymentStatusResult(
            status=status,
            raw_status=raw_status,
            paid_amount=from_minor_units(received) if received else None,
        )

    def refund(
        self,
        intent_ref: str,
        amount: Decimal,
        *,
        currency: str,
        idempotency_key: str,
        paid_total: Optional[Decimal] = None,
    ) -> RefundResult:
        def _refund() -> Any:
            return self._sdk.Refund.create(
                api_key=self._api_key,
                payment_intent=intent_ref,
                amount=to_minor_units(amount),
                reason="requested_by_customer",
                idempotency_key=idempotency_key,
            )

        refund = self.call("refund", _refund, retryable=True)
        raw_status = getattr(refund, "status", None) or "unknown"
        if raw_status in {"failed", "canceled"}:
            raise GatewayException(
                "Stripe rejected the refund",
                gateway=self.name,
                attempted_status=raw_status,
            )
        return RefundResult(refund_ref=refund.id, raw_status=raw_status)

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayNotice:
        signature = normalize_headers(headers).get("stripe-signature")
        if not signature or not self._webhook_secret:
            raise WebhookSignatureException("Missing Stripe signature", code="INVALID_SIGNATURE")
        try:
            event = self._sdk.Webhook.construct_event(body, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise WebhookSignatureException(
                "Invalid Stripe webhook signature", code="INVALID_SIGNATURE"
            ) from exc

        event_type = event["type"]
        obj = event["data"]["object"]
        intent_ref = obj["id"] if str(event_type).startswith("payment_intent.") else None
        return GatewayNotice(
            intent_ref=intent_ref,
            event_id=event["id"],
            event_type=event_type,
            status_hint=STRIPE_EVENT_HINTS.get(event_type),
        )
