"""Gateway lookup by the name persisted on a Transaction."""

from __future__ import annotations

import threading
from typing import Callable, Dict

from ..core.exceptions import ValidationException
from .base import GatewayName, PaymentGateway
from .cashfree_gateway import CashfreeGateway
from .paypal_gateway import PayPalGateway
from .stripe_gateway import StripeGateway

_FACTORIES: Dict[str, Callable[[], PaymentGateway]] = {
    GatewayName.STRIPE.value: StripeGateway,
    GatewayName.PAYPAL.value: PayPalGateway,
    GatewayName.CASHFREE.value: CashfreeGateway,
}

_instances: Dict[str, PaymentGateway] = {}
_instances_lock = threading.Lock()


def supported_gateways() -> list[str]:
    return sorted(_FACTORIES)


def get_gateway(name: str) -> PaymentGateway:
    """Return the binding for ``name``; bindings are built once per process."""
    key = (name or "").strip().lower()
    if key not in _FACTORIES:
        raise ValidationException(
            f"Unsupported payment gateway: {name}",
            code="UNSUPPORTED_GATEWAY",
            details={"supported": supported_gateways()},
        )
    with _instances_lock:
        gateway = _instances.get(key)
        if gateway is None:
            gateway = _FACTORIES[key]()
            _instances[key] = gateway
        return gateway


def register_gateway(name: str, gateway: PaymentGateway) -> None:
    """Install a ready-made binding, e.g. one built with a mock transport."""
    key = name.strip().lower()
    if key not in _FACTORIES:
        raise ValidationException(f"Unsupported payment gateway: {name}", code="UNSUPPORTED_GATEWAY")
    with _instances_lock:
        _instances[key] = gateway


def reset_gateways() -> None:
    with _instances_lock:
        _instances.clear()
