from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe

from consultcore.core.exceptions import GatewayException, WebhookSignatureException
from consultcore.payments.base import NormalizedPaymentStatus, PayerInfo
from consultcore.payments.stripe_gateway import StripeGateway


@pytest.fixture
def sdk():
    return MagicMock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def gateway(sdk, sleeps):
    return StripeGateway(
        api_key="sk_test_123",
        webhook_secret="whsec_test",
        sdk=sdk,
        max_retries=2,
        backoff_seconds=0.25,
        sleep=sleeps.append,
    )


def test_create_intent_in_minor_units_with_idempotency_key(gateway, sdk):
    sdk.PaymentIntent.create.return_value = SimpleNamespace(
        id="pi_123", client_secret="pi_123_secret_abc", status="requires_payment_method"
    )

    result = gateway.create_intent(
        "B1",
        Decimal("2000.00"),
        "INR",
        PayerInfo(payer_id="U1", email="payer@example.com"),
        idempotency_key="pay_B1_stripe_1",
    )

    assert result.intent_ref == "pi_123"
    assert result.redirect_target == "pi_123_secret_abc"
    assert result.currency == "inr"
    assert result.gateway_amount == Decimal("2000.00")
    kwargs = sdk.PaymentIntent.create.call_args.kwargs
    assert kwargs["amount"] == 200000
    assert kwargs["currency"] == "inr"
    assert kwargs["idempotency_key"] == "pay_B1_stripe_1"
    assert kwargs["metadata"] == {"booking_id": "B1", "payer_id": "U1"}
    assert kwargs["receipt_email"] == "payer@example.com"
    assert kwargs["api_key"] == "sk_test_123"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("requires_payment_method", NormalizedPaymentStatus.PENDING),
        ("processing", NormalizedPaymentStatus.PENDING),
        ("succeeded", NormalizedPaymentStatus.COMPLETED),
        ("canceled", NormalizedPaymentStatus.CANCELLED),
    ],
)
def test_verify_status_mapping(gateway, sdk, raw, expected):
    sdk.PaymentIntent.retrieve.return_value = SimpleNamespace(status=raw, amount_received=0)
    assert gateway.verify_status("pi_123").status == expected


def test_verify_reports_received_amount(gateway, sdk):
    sdk.PaymentIntent.retrieve.return_value = SimpleNamespace(
        status="succeeded", amount_received=200000
    )
    result = gateway.verify_status("pi_123")
    assert result.paid_amount == Decimal("2000.00")
    assert result.raw_status == "succeeded"


def test_unknown_status_is_an_error(gateway, sdk):
    sdk.PaymentIntent.retrieve.return_value = SimpleNamespace(status="mystery")
    with pytest.raises(GatewayException) as exc_info:
        gateway.verify_status("pi_123")
    assert exc_info.value.attempted_status == "mystery"


def test_connection_errors_are_retried(gateway, sdk, sleeps):
    sdk.PaymentIntent.retrieve.side_effect = [
        stripe.APIConnectionError("network down"),
        SimpleNamespace(status="succeeded", amount_received=100),
    ]

    result = gateway.verify_status("pi_123")

    assert result.status == NormalizedPaymentStatus.COMPLETED
    assert sdk.PaymentIntent.retrieve.call_count == 2
    assert sleeps == [0.25]


def test_invalid_requests_are_not_retried(gateway, sdk, sleeps):
    sdk.Refund.create.side_effect = stripe.InvalidRequestError("bad amount", param="amount")

    with pytest.raises(GatewayException) as exc_info:
        gateway.refund("pi_123", Decimal("10.00"), currency="INR", idempotency_key="refund:B1")

    assert exc_info.value.transient is False
    assert sdk.Refund.create.call_count == 1
    assert sleeps == []


def test_refund(gateway, sdk):
    sdk.Refund.create.return_value = SimpleNamespace(id="re_1", status="succeeded")

    result = gateway.refund(
        "pi_123", Decimal("1000.00"), currency="INR", idempotency_key="refund:B1"
    )

    assert result.refund_ref == "re_1"
    kwargs = sdk.Refund.create.call_args.kwargs
    assert kwargs["payment_intent"] == "pi_123"
    assert kwargs["amount"] == 100000
    assert kwargs["idempotency_key"] == "refund:B1"


def test_failed_refund_raises(gateway, sdk):
    sdk.Refund.create.return_value = SimpleNamespace(id="re_1", status="failed")
    with pytest.raises(GatewayException):
        gateway.refund("pi_123", Decimal("1.00"), currency="INR", idempotency_key="refund:B1")


class TestParseWebhook:
    def test_payment_intent_event(self, gateway, sdk):
        sdk.Webhook.construct_event.return_value = {
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_123", "object": "payment_intent"}},
        }

        notice = gateway.parse_webhook(b"{}", {"Stripe-Signature": "t=1,v1=abc"})

        assert notice.intent_ref == "pi_123"
        assert notice.event_id == "evt_1"
        assert notice.status_hint == NormalizedPaymentStatus.COMPLETED
        sdk.Webhook.construct_event.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test")

    def test_other_events_carry_no_intent(self, gateway, sdk):
        sdk.Webhook.construct_event.return_value = {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1"}},
        }
        notice = gateway.parse_webhook(b"{}", {"stripe-signature": "sig"})
        assert notice.intent_ref is None
        assert notice.status_hint is None

    def test_bad_signature(self, gateway, sdk):
        sdk.Webhook.construct_event.side_effect = ValueError("bad payload")
        with pytest.raises(WebhookSignatureException) as exc_info:
            gateway.parse_webhook(b"{}", {"stripe-signature": "sig"})
        assert exc_info.value.code == "INVALID_SIGNATURE"

    def test_missing_signature(self, gateway, sdk):
        with pytest.raises(WebhookSignatureException):
            gateway.parse_webhook(b"{}", {})
        sdk.Webhook.construct_event.assert_not_called()
