"""
PayPal Orders v2 binding.

Orders are created with ``intent=CAPTURE`` in the PayPal settlement currency
(USD); booking amounts are converted with ``paypal_fx_rate``. An order the
payer has approved is captured during ``verify_status`` so that a single
reconcile call moves the booking forward.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
import json
import threading
import time
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

PAYPAL_STATUS_MAP: Dict[str, NormalizedPaymentStatus] = {
    "CREATED": NormalizedPaymentStatus.PENDING,
    "SAVED": NormalizedPaymentStatus.PENDING,
    "APPROVED": NormalizedPaymentStatus.PENDING,
    "PAYER_ACTION_REQUIRED": NormalizedPaymentStatus.PENDING,
    "COMPLETED": NormalizedPaymentStatus.COMPLETED,
    "VOIDED": NormalizedPaymentStatus.CANCELLED,
}

PAYPAL_EVENT_HINTS: Dict[str, NormalizedPaymentStatus] = {
    "CHECKOUT.ORDER.APPROVED": NormalizedPaymentStatus.PENDING,
    "CHECKOUT.ORDER.COMPLETED": NormalizedPaymentStatus.COMPLETED,
    "CHECKOUT.ORDER.VOIDED": NormalizedPaymentStatus.CANCELLED,
    "PAYMENT.CAPTURE.COMPLETED": NormalizedPaymentStatus.COMPLETED,
    "PAYMENT.CAPTURE.PENDING": NormalizedPaymentStatus.PENDING,
    "PAYMENT.CAPTURE.DENIED": NormalizedPaymentStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": NormalizedPaymentStatus.FAILED,
}

_FAILED_CAPTURE_STATUSES = {"DECLINED", "FAILED"}
_TRANSMISSION_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)
_CENT = Decimal("0.01")


class PayPalGateway(PaymentGateway):
    name = GatewayName.PAYPAL.value

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        webhook_id: Optional[str] = None,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
        fx_rate: Optional[Decimal] = None,
        transport: httpx.BaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._client_id = client_id or settings.paypal_client_id.get_secret_value()
        self._client_secret = client_secret or settings.paypal_client_secret.get_secret_value()
        self._webhook_id = webhook_id if webhook_id is not None else settings.paypal_webhook_id
        self.currency = (currency or settings.paypal_currency).upper()
        self.fx_rate = Decimal(fx_rate if fx_rate is not None else settings.paypal_fx_rate)
        self._http = GatewayHttpClient(
            gateway=self.name,
            base_url=base_url or settings.paypal_base_url,
            timeout=self.timeout,
            transport=transport,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            payload = self._http.request(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self._client_id, self._client_secret),
            )
            token = payload.get("access_token")
            if not token:
                raise GatewayException("PayPal did not return an access token", gateway=self.name)
            # refresh a minute early
            ttl = max(int(payload.get("expires_in", 0)) - 60, 0)
            self._token = str(token)
            self._token_expires_at = time.monotonic() + ttl
            return self._token

    def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def convert_amount(self, amount: Decimal, currency: str) -> Decimal:
        """Booking amount expressed in the PayPal settlement currency."""
        if (currency or "").upper() == self.currency:
            return Decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP)
        return (Decimal(amount) / self.fx_rate).quantize(_CENT, rounding=ROUND_HALF_UP)

    def _get_order(self, order_id: str) -> Dict[str, Any]:
        return self._http.request("GET", f"/v2/checkout/orders/{order_id}", headers=self._headers())

    def _capture(self, order_id: str) -> Dict[str, Any]:
        try:
            return self._http.request(
                "POST",
                f"/v2/checkout/orders/{order_id}/capture",
                json_body={},
                headers=self._headers(request_id=f"capture-{order_id}"),
            )
        except GatewayException as exc:
            # ORDER_ALREADY_CAPTURED and friends come back as 422
            if exc.upstream_status != 422:
                raise
            self.logger.info(
                "PayPal capture rejected, re-reading order",
                extra={"intent_ref": order_id, "upstream_status": exc.upstream_status},
            )
            return self._get_order(order_id)

    @staticmethod
    def _first_capture(order: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        for unit in order.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None

    @staticmethod
    def _approval_link(order: Mapping[str, Any]) -> Optional[str]:
        for link in order.get("links") or []:
            if link.get("rel") in {"approve", "payer-action"}:
                return link.get("href")
        return None

    # ------------------------------------------------------------------
    # Gateway interface
    # ------------------------------------------------------------------

    def create_intent(
        self,
        booking_id: str,
        amount: Decimal,
        currency: str,
        payer: PayerInfo,
        *,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        gateway_amount = self.convert_amount(amount, currency)
        return_base = settings.public_base_url.rstrip("/")
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": booking_id,
                    "custom_id": booking_id,
                    "amount": {"currency_code": self.currency, "value": str(gateway_amount)},
                }
            ],
            "application_context": {
                "return_url": f"{return_base}/payments/paypal/return?booking_id={booking_id}",
                "cancel_url": f"{return_base}/payments/paypal/cancel?booking_id={booking_id}",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }

        order = self.call(
            "create_intent",
            lambda: self._http.request(
                "POST",
                "/v2/checkout/orders",
                json_body=body,
                headers=self._headers(request_id=idempotency_key),
            ),
            retryable=True,
        )
        order_id = order.get("id")
        if not order_id:
            raise GatewayException("PayPal order response missing id", gateway=self.name)
        return PaymentIntentResult(
            intent_ref=str(order_id),
            redirect_target=self._approval_link(order),
            raw_status=str(order.get("status", "")),
            currency=self.currency,
            gateway_amount=gateway_amount,
        )

    def verify_status(self, intent_ref: str) -> PaymentStatusResult:
        def _verify() -> Dict[str, Any]:
            order = self._get_order(intent_ref)
            if order.get("status") == "APPROVED":
                order = self._capture(intent_ref)
            return order

        order = self.call("verify_status", _verify, retryable=True)
        raw_status = order.get("status")
        status = map_status(self.name, raw_status, PAYPAL_STATUS_MAP)
        capture = self._first_capture(order)
        paid_amount: Optional[Decimal] = None
        if status == NormalizedPaymentStatus.COMPLETED:
            capture_status = (capture or {}).get("status")
            if capture_status in _FAILED_CAPTURE_STATUSES:
                status = NormalizedPaymentStatus.FAILED
                raw_status = f"{raw_status}/{capture_status}"
            elif capture_status == "PENDING":
                status = NormalizedPaymentStatus.PENDING
                raw_status = f"{raw_status}/{capture_status}"
            elif capture and capture.get("amount"):
                paid_amount = Decimal(str(capture["amount"]["value"]))
        return PaymentStatusResult(status=status, raw_status=str(raw_status), paid_amount=paid_amount)

    def refund_value(
        self,
        capture: Mapping[str, Any],
        amount: Decimal,
        currency: str,
        paid_total: Optional[Decimal],
    ) -> Decimal:
        """
        Share of the captured amount that ``amount`` of ``paid_total`` represents.

        Scaling the capture keeps a full refund equal to what was captured
        even after ``paypal_fx_rate`` has moved.
        """
        captured = (capture.get("amount") or {}).get("value")
        if captured is None or not paid_total:
            return self.convert_amount(amount, currency)
        captured_value = Decimal(str(captured))
        if Decimal(amount) >= Decimal(paid_total):
            return captured_value.quantize(_CENT, rounding=ROUND_HALF_UP)
        return (captured_value * Decimal(amount) / Decimal(paid_total)).quantize(
            _CENT, rounding=ROUND_HALF_UP
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
        def _refund() -> Dict[str, Any]:
            capture = self._first_capture(self._get_order(intent_ref))
            if not capture or not capture.get("id"):
                raise GatewayException(
                    "PayPal order has no capture to refund",
                    gateway=self.name,
                )
            refund_amount = self.refund_value(capture, amount, currency, paid_total)
            capture_currency = (capture.get("amount") or {}).get("currency_code") or self.currency
            return self._http.request(
                "POST",
                f"/v2/payments/captures/{capture['id']}/refund",
                json_body={
                    "amount": {"currency_code": capture_currency, "value": str(refund_amount)},
                    "note_to_payer": "Booking cancelled",
                },
                headers=self._headers(request_id=idempotency_key),
            )

        refund = self.call("refund", _refund, retryable=True)
        raw_status = str(refund.get("status", "unknown"))
        if raw_status in {"CANCELLED", "FAILED"}:
            raise GatewayException(
                "PayPal rejected the refund",
                gateway=self.name,
                attempted_status=raw_status,
            )
        return RefundResult(refund_ref=str(refund.get("id")), raw_status=raw_status)

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayNotice:
        lowered = normalize_headers(headers)
        missing = [name for name in _TRANSMISSION_HEADERS if not lowered.get(name)]
        if missing or not self._webhook_id:
            raise WebhookSignatureException(
                "Missing PayPal transmission headers",
                code="INVALID_SIGNATURE",
                details={"missing": missing},
            )
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise WebhookSignatureException(
                "PayPal webhook body is not valid JSON", code="INVALID_PAYLOAD"
            ) from exc

        verification = self.call(
            "verify_webhook",
            lambda: self._http.request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json_body={
                    "auth_algo": lowered["paypal-auth-algo"],
                    "cert_url": lowered["paypal-cert-url"],
                    "transmission_id": lowered["paypal-transmission-id"],
                    "transmission_sig": lowered["paypal-transmission-sig"],
                    "transmission_time": lowered["paypal-transmission-time"],
                    "webhook_id": self._webhook_id,
                    "webhook_event": event,
                },
                headers=self._headers(),
            ),
            retryable=True,
        )
        if verification.get("verification_status") != "SUCCESS":
            raise WebhookSignatureException(
                "Invalid PayPal webhook signature", code="INVALID_SIGNATURE"
            )

        event_type = str(event.get("event_type", ""))
        resource = event.get("resource") or {}
        if event_type.startswith("PAYMENT.CAPTURE."):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            intent_ref = related.get("order_id")
        elif event_type.startswith("CHECKOUT.ORDER."):
            intent_ref = resource.get("id")
        else:
            intent_ref = None
        return GatewayNotice(
            intent_ref=intent_ref,
            event_id=str(event.get("id", "")),
            event_type=event_type,
            status_hint=PAYPAL_EVENT_HINTS.get(event_type),
        )
