from decimal import Decimal

import pytest

from consultcore.core.exceptions import GatewayException, ValidationException
from consultcore.payments.base import (
    NormalizedPaymentStatus,
    from_minor_units,
    map_status,
    normalize_headers,
    to_minor_units,
)
from consultcore.payments.registry import (
    get_gateway,
    register_gateway,
    reset_gateways,
    supported_gateways,
)


def test_minor_unit_conversion():
    assert to_minor_units(Decimal("2000.00")) == 200000
    assert to_minor_units(Decimal("0.005")) == 1
    assert from_minor_units(150050) == Decimal("1500.50")


def test_headers_are_lowercased():
    assert normalize_headers({"Stripe-Signature": "t=1", "X-Other": "y"}) == {
        "stripe-signature": "t=1",
        "x-other": "y",
    }


def test_map_status_rejects_unknown_vocabulary():
    mapping = {"PAID": NormalizedPaymentStatus.COMPLETED}
    assert map_status("cashfree", "PAID", mapping) == NormalizedPaymentStatus.COMPLETED

    with pytest.raises(GatewayException) as exc_info:
        map_status("cashfree", "SOMETHING_NEW", mapping)
    assert exc_info.value.attempted_status == "SOMETHING_NEW"
    assert exc_info.value.details["gateway"] == "cashfree"


class TestGatewayCallPolicy:
    def test_transient_failures_are_retried_with_backoff(self, fake_gateway):
        sleeps = []
        fake_gateway.max_retries = 2
        fake_gateway.backoff_seconds = 0.5
        fake_gateway._sleep = sleeps.append
        outcomes = [
            GatewayException("timeout", gateway="stripe", transient=True),
            GatewayException("timeout", gateway="stripe", transient=True),
            "ok",
        ]

        def flaky():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert fake_gateway.call("verify_status", flaky, retryable=True) == "ok"
        assert sleeps == [0.5, 1.0]

    def test_non_retryable_calls_fail_fast(self, fake_gateway):
        fake_gateway.max_retries = 3
        calls = []

        def failing():
            calls.append(1)
            raise GatewayException("timeout", gateway="stripe", transient=True)

        with pytest.raises(GatewayException):
            fake_gateway.call("create_intent", failing, retryable=False)
        assert len(calls) == 1

    def test_permanent_failures_are_not_retried(self, fake_gateway):
        fake_gateway.max_retries = 3
        calls = []

        def failing():
            calls.append(1)
            raise GatewayException("declined", gateway="stripe")

        with pytest.raises(GatewayException):
            fake_gateway.call("refund", failing, retryable=True)
        assert len(calls) == 1

    def test_unexpected_errors_are_wrapped(self, fake_gateway):
        def failing():
            raise KeyError("id")

        with pytest.raises(GatewayException) as exc_info:
            fake_gateway.call("create_intent", failing, retryable=True)
        assert exc_info.value.gateway == "stripe"
        assert isinstance(exc_info.value.__cause__, KeyError)


class TestRegistry:
    def test_supported_gateways(self):
        assert supported_gateways() == ["cashfree", "paypal", "stripe"]

    def test_unknown_gateway_is_rejected(self):
        with pytest.raises(ValidationException) as exc_info:
            get_gateway("bitcoin")
        assert exc_info.value.code == "UNSUPPORTED_GATEWAY"

    def test_registered_binding_is_returned_case_insensitively(self, fake_gateway):
        assert get_gateway("stripe") is fake_gateway
        assert get_gateway(" Stripe ") is fake_gateway

    def test_register_rejects_unknown_names(self, fake_gateway):
        with pytest.raises(ValidationException):
            register_gateway("bitcoin", fake_gateway)

    def test_reset_drops_bindings(self, fake_gateway):
        reset_gateways()
        register_gateway("paypal", fake_gateway)
        assert get_gateway("paypal") is fake_gateway
