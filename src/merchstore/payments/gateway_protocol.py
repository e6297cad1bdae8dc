"""Protocol definition for payment gateways."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol


@dataclass(frozen=True)
class PaymentIntentHandle:
    """A server-side payment intent and the client secret that confirms it."""

    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class GatewayResult:
    """Provider response normalized to succeeded / requires_action / failed."""

    status: str  # "succeeded" | "requires_action" | "failed"
    transaction_id: str | None = None
    next_action_url: str | None = None
    error_category: str | None = None  # card_error | validation_error | api_error | network_error
    error_reason: str | None = None
    error_code: str | None = None

    @classmethod
    def succeeded(cls, transaction_id: str) -> "GatewayResult":
        return cls(status="succeeded", transaction_id=transaction_id)

    @classmethod
    def requires_action(cls, transaction_id: str, next_action_url: str | None = None) -> "GatewayResult":
        return cls(status="requires_action", transaction_id=transaction_id, next_action_url=next_action_url)

    @classmethod
    def failed(
        cls,
        category: str,
        reason: str | None = None,
        code: str | None = None,
        transaction_id: str | None = None,
    ) -> "GatewayResult":
        return cls(
            status="failed",
            transaction_id=transaction_id,
            error_category=category,
            error_reason=reason,
            error_code=code,
        )


@dataclass(frozen=True)
class WebhookEvent:
    """A verified gateway event relevant to order payment state."""

    id: str
    type: str
    intent_id: str | None
    amount_minor: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def intent_id_from_secret(client_secret: str) -> str | None:
    """Client secrets have the form '<intent_id>_secret_<random>'."""
    if not client_secret or "_secret_" not in client_secret:
        return None
    intent_id = client_secret.split("_secret_", 1)[0]
    return intent_id or None


class PaymentGateway(Protocol):
    """Protocol for payment gateway implementations.

    Implementations only ever receive gateway-issued references (client
    secrets, payment method tokens); raw card data never reaches them.
    """

    def create_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str]
    ) -> PaymentIntentHandle:
        """Create a payment intent for the given amount.

        Raises:
            PaymentError: If the provider rejects the request.
        """
        ...

    def confirm(self, client_secret: str, billing_details: dict[str, Any]) -> GatewayResult:
        """Confirm the intent identified by the client secret.

        Provider errors are returned as a failed GatewayResult, not raised.
        """
        ...

    def retrieve(self, intent_id: str) -> GatewayResult:
        """Re-read the current state of an intent (e.g. after 3-D Secure)."""
        ...

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """Verify and decode a webhook delivery.

        Raises:
            WebhookError: If the signature or payload is invalid.
        """
        ...
