"""Cashfree Payment Gateway (PG) orders binding."""

from __future__ import annotations

import base64
from decimal import Decimal
import hashlib
import hmac
import json
import re
from typing import Any, Dict, Mapping, Optional

import httpx

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
    map_status,
    normalize_headers,
)
from consultcore.payments.http_client import GatewayHttpClient

CASHFREE_STATUS_MAP: Dict[str, NormalizedPaymentStatus] = {
    "ACTIVE": NormalizedPaymentStatus.PENDING,
    "TERMINATION_REQUESTED": NormalizedPaymentStatus.PENDING,
    "PAID": NormalizedPaymentStatus.COMPLETED,
    "EXPIRED": NormalizedPaymentStatus.CANCELLED,
    "TERMINATED": NormalizedPaymentStatus.CANCELLED,
}

CASHFREE_EVENT_HINTS: Dict[str, NormalizedPaymentStatus] = {
    "PAYMENT_SUCCESS_WEBHOOK": NormalizedPaymentStatus.COMPLETED,
    "PAYMENT_FAILED_WEBHOOK": NormalizedPaymentStatus.FAILED,
    "PAYMENT_USER_DROPPED_WEBHOOK": NormalizedPaymentStatus.PENDING,
}

CHECKOUT_URL = "https://payments.cashfree.com/pay/order?session-id={session_id}"

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_MAX_ORDER_ID_LENGTH = 45
_MAX_REFUND_ID_LENGTH = 40


def cashfree_safe_id(key: str, max_length: int = _MAX_ORDER_ID_LENGTH) -> str:
    """Cashfree ids accept only alphanumerics, '_' and '-'."""
    return _UNSAFE_ID_CHARS.sub("_", key)[:max_length]


def compute_webhook_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    message = timestamp.encode() + raw_body
    digest = hmac.new(secret.encode(), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class CashfreeGateway(PaymentGateway):
    name = GatewayName.CASHFREE.value

    def __init__(
        self,
        *,
        app_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        transport: httpx.BaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._secret_key = secret_key or settings.cashfree_secret_key.get_secret_value()
        self._http = GatewayHttpClient(
            gateway=self.name,
            base_url=base_url or settings.cashfree_base_url,
            timeout=self.timeout,
            transport=transport,
            default_headers={
                "x-client-id": app_id or settings.cashfree_app_id.get_secret_value(),
                "x-client-secret": self._secret_key,
                "x-api-version": api_version or settings.cashfree_api_version,
                "Content-Type": "application/json",
            },
        )

    def _post_or_fetch(self, path: str, body: Dict[str, Any], existing_path: str) -> Dict[str, Any]:
        """POST a create call; a 409 means the id already exists, so read it back."""
        try:
            return self._http.request("POST", path, json_body=body)
        except GatewayException as exc:
            if exc.upstream_status != 409:
                raise
            self.logger.info(
                "Cashfree resource already exists, fetching it",
                extra={"path": existing_path},
            )
            return self._http.request("GET", existing_path)

    def create_intent(
        self,
        booking_id: str,
        amount: Decimal,
        currency: str,
        payer: PayerInfo,
        *,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        order_id = cashfree_safe_id(idempotency_key)
        order_currency = (currency or settings.cashfree_currency).upper()
        body = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": order_currency,
            "customer_details": {
                "customer_id": cashfree_safe_id(payer.payer_id),
                "customer_name": payer.name or "Customer",
                "customer_email": payer.email,
                "customer_phone": payer.phone or settings.cashfree_default_phone,
            },
            "order_meta": {
                "return_url": (
                    f"{settings.public_base_url.rstrip('/')}/payments/cashfree/return"
                    f"?order_id={order_id}"
                ),
                "notify_url": f"{settings.api_base_url.rstrip('/')}/api/v1/webhooks/cashfree",
            },
            "order_note": f"Booking {booking_id}",
            "order_tags": {"booking_id": booking_id},
        }

        order = self.call(
            "create_intent",
            lambda: self._post_or_fetch("/orders", body, f"/orders/{order_id}"),
            retryable=True,
        )
        session_id = order.get("payment_session_id")
        return PaymentIntentResult(
            intent_ref=str(order.get("order_id") or order_id),
            redirect_target=CHECKOUT_URL.format(session_id=session_id) if session_id else None,
            raw_status=str(order.get("order_status", "")),
            currency=order_currency,
            gateway_amount=amount,
        )

    def verify_status(self, intent_ref: str) -> PaymentStatusResult:
        order = self.call(
            "verify_status",
            lambda: self._http.request("GET", f"/orders/{intent_ref}"),
            retryable=True,
        )
        raw_status = order.get("order_status")
        status = map_status(self.name, raw_status, CASHFREE_STATUS_MAP)
        paid_amount = None
        if status == NormalizedPaymentStatus.COMPLETED and order.get("order_amount") is not None:
            paid_amount = Decimal(str(order["order_amount"]))
        return PaymentStatusResult(status=status, raw_status=str(raw_status), paid_amount=paid_amount)

    def refund(
        self,
        intent_ref: str,
        amount: Decimal,
        *,
        currency: str,
        idempotency_key: str,
        paid_total: Optional[Decimal] = None,
    ) -> RefundResult:
        refund_id = cashfree_safe_id(idempotency_key, _MAX_REFUND_ID_LENGTH)
        body = {
            "refund_amount": float(amount),
            "refund_id": refund_id,
            "refund_note": "Booking cancelled",
        }
        refund = self.call(
            "refund",
            lambda: self._post_or_fetch(
                f"/orders/{intent_ref}/refunds",
                body,
                f"/orders/{intent_ref}/refunds/{refund_id}",
            ),
            retryable=True,
        )
        raw_status = str(refund.get("refund_status", "unknown"))
        if raw_status == "CANCELLED":
            raise GatewayException(
                "Cashfree rejected the refund",
                gateway=self.name,
                attempted_status=raw_status,
            )
        return RefundResult(
            refund_ref=str(refund.get("cf_refund_id") or refund.get("refund_id") or refund_id),
            raw_status=raw_status,
        )

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayNotice:
        lowered = normalize_headers(headers)
        signature = lowered.get("x-webhook-signature")
        timestamp = lowered.get("x-webhook-timestamp")
        if not signature or not timestamp or not self._secret_key:
            raise WebhookSignatureException(
                "Missing Cashfree signature headers", code="INVALID_SIGNATURE"
            )
        expected = compute_webhook_signature(self._secret_key, timestamp, body)
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            raise WebhookSignatureException(
                "Invalid Cashfree webhook signature", code="INVALID_SIGNATURE"
            )
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise WebhookSignatureException(
                "Cashfree webhook body is not valid JSON", code="INVALID_PAYLOAD"
            ) from exc

        event_type = str(event.get("type", ""))
        data = event.get("data") or {}
        order_id = (data.get("order") or {}).get("order_id")
        payment_id = (data.get("payment") or {}).get("cf_payment_id")
        event_id = (
            f"{payment_id}:{event_type}"
            if payment_id
            else f"{order_id}:{event_type}:{event.get('event_time', timestamp)}"
        )
        return GatewayNotice(
            intent_ref=order_id,
            event_id=event_id,
            event_type=event_type,
            status_hint=CASHFREE_EVENT_HINTS.get(event_type),
        )
