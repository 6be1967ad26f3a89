from decimal import Decimal
import json

import httpx
import pytest

from consultcore.core.exceptions import GatewayException, WebhookSignatureException
from consultcore.payments.base import NormalizedPaymentStatus, PayerInfo
from consultcore.payments.cashfree_gateway import (
    CashfreeGateway,
    cashfree_safe_id,
    compute_webhook_signature,
)

BASE_URL = "https://cashfree.test/pg"
SECRET = "cf_secret"


class CashfreeStub:
    def __init__(self):
        self.requests = []
        self.routes = {}

    def on(self, method, path, status, payload):
        self.routes[(method, path)] = (status, payload)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, payload = self.routes.get(
            (request.method, request.url.path), (404, {"message": "not found"})
        )
        return httpx.Response(status, json=payload)


@pytest.fixture
def stub():
    return CashfreeStub()


@pytest.fixture
def gateway(stub):
    return CashfreeGateway(
        app_id="cf_app",
        secret_key=SECRET,
        base_url=BASE_URL,
        api_version="2023-08-01",
        transport=httpx.MockTransport(stub),
        timeout=1,
        max_retries=0,
        sleep=lambda _: None,
    )


def test_safe_id():
    assert cashfree_safe_id("refund:B1") == "refund_B1"
    assert cashfree_safe_id("pay_B1_cashfree_1") == "pay_B1_cashfree_1"
    assert len(cashfree_safe_id("x" * 80)) == 45
    assert len(cashfree_safe_id("x" * 80, 40)) == 40


def test_create_order(gateway, stub):
    stub.on(
        "POST",
        "/pg/orders",
        200,
        {"order_id": "pay_B1_cashfree_1", "order_status": "ACTIVE", "payment_session_id": "sess_1"},
    )

    result = gateway.create_intent(
        "B1",
        Decimal("2000.00"),
        "inr",
        PayerInfo(payer_id="U1", email="payer@example.com"),
        idempotency_key="pay_B1_cashfree_1",
    )

    assert result.intent_ref == "pay_B1_cashfree_1"
    assert result.redirect_target == "https://payments.cashfree.com/pay/order?session-id=sess_1"
    assert result.currency == "INR"
    (request,) = stub.requests
    assert request.headers["x-client-id"] == "cf_app"
    assert request.headers["x-client-secret"] == SECRET
    assert request.headers["x-api-version"] == "2023-08-01"
    body = json.loads(request.content)
    assert body["order_id"] == "pay_B1_cashfree_1"
    assert body["order_amount"] == 2000.0
    assert body["customer_details"]["customer_phone"] == "9999999999"
    assert body["order_tags"] == {"booking_id": "B1"}


def test_existing_order_is_fetched_on_conflict(gateway, stub):
    stub.on("POST", "/pg/orders", 409, {"message": "order already exists"})
    stub.on(
        "GET",
        "/pg/orders/pay_B1_cashfree_1",
        200,
        {"order_id": "pay_B1_cashfree_1", "order_status": "ACTIVE", "payment_session_id": "sess_1"},
    )

    result = gateway.create_intent(
        "B1", Decimal("10"), "INR", PayerInfo(payer_id="U1"), idempotency_key="pay_B1_cashfree_1"
    )

    assert result.intent_ref == "pay_B1_cashfree_1"
    assert [r.method for r in stub.requests] == ["POST", "GET"]


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("ACTIVE", NormalizedPaymentStatus.PENDING),
        ("PAID", NormalizedPaymentStatus.COMPLETED),
        ("EXPIRED", NormalizedPaymentStatus.CANCELLED),
    ],
)
def test_verify_status(gateway, stub, raw, expected):
    stub.on("GET", "/pg/orders/ord_1", 200, {"order_status": raw, "order_amount": 2000})

    result = gateway.verify_status("ord_1")

    assert result.status == expected
    if expected == NormalizedPaymentStatus.COMPLETED:
        assert result.paid_amount == Decimal("2000")
    else:
        assert result.paid_amount is None


def test_unknown_status(gateway, stub):
    stub.on("GET", "/pg/orders/ord_1", 200, {"order_status": "LIMBO"})
    with pytest.raises(GatewayException):
        gateway.verify_status("ord_1")


def test_refund(gateway, stub):
    stub.on(
        "POST",
        "/pg/orders/ord_1/refunds",
        200,
        {"cf_refund_id": "cf_ref_9", "refund_id": "refund_B1", "refund_status": "PENDING"},
    )

    result = gateway.refund("ord_1", Decimal("500.00"), currency="INR", idempotency_key="refund:B1")

    assert result.refund_ref == "cf_ref_9"
    assert result.raw_status == "PENDING"
    body = json.loads(stub.requests[0].content)
    assert body["refund_id"] == "refund_B1"
    assert body["refund_amount"] == 500.0


def test_cancelled_refund_raises(gateway, stub):
    stub.on("POST", "/pg/orders/ord_1/refunds", 200, {"refund_status": "CANCELLED"})
    with pytest.raises(GatewayException):
        gateway.refund("ord_1", Decimal("1"), currency="INR", idempotency_key="refund:B1")


class TestParseWebhook:
    def _signed(self, payload, timestamp="1736942400"):
        body = json.dumps(payload).encode()
        headers = {
            "x-webhook-timestamp": timestamp,
            "x-webhook-signature": compute_webhook_signature(SECRET, timestamp, body),
        }
        return body, headers

    def test_payment_event(self, gateway):
        body, headers = self._signed(
            {
                "type": "PAYMENT_SUCCESS_WEBHOOK",
                "data": {"order": {"order_id": "ord_1"}, "payment": {"cf_payment_id": 555}},
            }
        )

        notice = gateway.parse_webhook(body, headers)

        assert notice.intent_ref == "ord_1"
        assert notice.event_id == "555:PAYMENT_SUCCESS_WEBHOOK"
        assert notice.status_hint == NormalizedPaymentStatus.COMPLETED

    def test_event_without_payment_id(self, gateway):
        body, headers = self._signed(
            {
                "type": "PAYMENT_USER_DROPPED_WEBHOOK",
                "event_time": "2030-01-15T12:00:00+05:30",
                "data": {"order": {"order_id": "ord_1"}},
            }
        )

        notice = gateway.parse_webhook(body, headers)

        assert notice.event_id == "ord_1:PAYMENT_USER_DROPPED_WEBHOOK:2030-01-15T12:00:00+05:30"

    def test_tampered_body(self, gateway):
        body, headers = self._signed({"type": "PAYMENT_SUCCESS_WEBHOOK", "data": {}})
        with pytest.raises(WebhookSignatureException) as exc_info:
            gateway.parse_webhook(body + b" ", headers)
        assert exc_info.value.code == "INVALID_SIGNATURE"

    def test_missing_signature(self, gateway):
        with pytest.raises(WebhookSignatureException):
            gateway.parse_webhook(b"{}", {"x-webhook-timestamp": "1"})
