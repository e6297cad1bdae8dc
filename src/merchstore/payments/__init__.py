"""Payment gateway integration for merchstore."""

from .adapter import PaymentAdapter, reason_for
from .gateway_protocol import (
    GatewayResult,
    PaymentGateway,
    PaymentIntentHandle,
    WebhookEvent,
    intent_id_from_secret,
)
from .registry import create_gateway, supported_gateways
from .sandbox import SandboxGateway
from .stripe_gateway import StripeGateway

__all__ = [
    # Adapter
    "PaymentAdapter",
    "reason_for",
    # Protocol types
    "GatewayResult",
    "PaymentGateway",
    "PaymentIntentHandle",
    "WebhookEvent",
    "intent_id_from_secret",
    # Implementations
    "SandboxGateway",
    "StripeGateway",
    # Selection
    "create_gateway",
    "supported_gateways",
]
