"""Payment gateway bindings."""

from .base import (
    GatewayName,
    GatewayNotice,
    NormalizedPaymentStatus,
    PayerInfo,
    PaymentGateway,
    PaymentIntentResult,
    PaymentStatusResult,
    RefundResult,
)
from .registry import get_gateway, register_gateway, reset_gateways, supported_gateways

__all__ = [
    "GatewayName",
    "GatewayNotice",
    "NormalizedPaymentStatus",
    "PayerInfo",
    "PaymentGateway",
    "PaymentIntentResult",
    "PaymentStatusResult",
    "RefundResult",
    "get_gateway",
    "register_gateway",
    "reset_gateways",
    "supported_gateways",
]
