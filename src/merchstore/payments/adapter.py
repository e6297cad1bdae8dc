"""Payment gateway adapter: normalizes gateway outcomes for checkout."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ..errors import PaymentError, ValidationError
from ..models import PaymentConfirmation, PaymentOutcomeStatus
from .gateway_protocol import GatewayResult, PaymentIntentHandle, WebhookEvent

if TYPE_CHECKING:
    from .gateway_protocol import PaymentGateway

logger = logging.getLogger(__name__)

# Keys that would indicate raw card data; only gateway tokens are accepted
RAW_CARD_FIELDS = frozenset(
    {"number", "card_number", "cvc", "cvv", "exp_month", "exp_year", "expiry", "card"}
)

DEFAULT_REASONS = {
    "card_error": "Your card was declined. Please try a different payment method.",
    "validation_error": "Your payment details are invalid. Please check them and try again.",
    "api_error": "An error occurred with the payment provider. Please try again.",
    "network_error": (
        "Network communication with the payment provider failed. "
        "Please check your connection and try again."
    ),
}


def reason_for(category: str, gateway_reason: str | None = None) -> str:
    """Human-readable reason for a failure category.

    Card and validation errors keep the gateway's message when it has one,
    since those describe something the customer can fix.
    """
    if gateway_reason and category in ("card_error", "validation_error"):
        return gateway_reason
    return DEFAULT_REASONS.get(category, DEFAULT_REASONS["api_error"])


def _check_billing_details(billing_details: dict[str, Any]) -> str:
    leaked = RAW_CARD_FIELDS.intersection(billing_details)
    if leaked:
        raise ValidationError(
            "Raw card data is not accepted; submit a gateway payment method token",
            field=sorted(leaked)[0],
        )
    token = billing_details.get("payment_method")
    if not isinstance(token, str) or not token.strip():
        raise ValidationError("A payment method token is required", field="payment_method")
    return token


class PaymentAdapter:
    """Wraps a PaymentGateway behind the checkout-facing contract."""

    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    def create_payment(
        self, amount: Decimal, currency: str, metadata: dict[str, str] | None = None
    ) -> PaymentIntentHandle:
        """
        Ask the gateway for a payment intent and its client secret.

        Raises:
            ValidationError: If the amount isn't positive.
            PaymentError: If the gateway refuses or can't be reached.
        """
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than 0", field="amount")
        try:
            return self.gateway.create_intent(amount, currency, metadata or {})
        except (ConnectionError, TimeoutError) as e:
            raise PaymentError("network_error", reason_for("network_error"), str(e))

    def submit_payment(
        self, client_secret: str, billing_details: dict[str, Any]
    ) -> PaymentConfirmation:
        """
        Confirm a payment with the gateway.

        Returns:
            A PaymentConfirmation that either succeeded (with the provider
            transaction ID) or requires additional customer action, which is a
            pending state and not a failure.

        Raises:
            ValidationError: If billing details carry raw card data or no token.
            PaymentError: On a hard failure, with category card_error,
                validation_error, api_error or network_error.
        """
        if not client_secret:
            raise ValidationError("Client secret is required", field="client_secret")
        _check_billing_details(billing_details)

        try:
            result = self.gateway.confirm(client_secret, billing_details)
        except (ConnectionError, TimeoutError) as e:
            logger.warning(f"Payment gateway unreachable: {e}")
            result = GatewayResult.failed("network_error")

        return self._normalize(result)

    def refresh(self, intent_id: str) -> PaymentConfirmation:
        """Re-poll an intent that previously required action."""
        try:
            result = self.gateway.retrieve(intent_id)
        except (ConnectionError, TimeoutError) as e:
            logger.warning(f"Payment gateway unreachable: {e}")
            result = GatewayResult.failed("network_error")
        return self._normalize(result)

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        return self.gateway.parse_webhook(payload, signature)

    def _normalize(self, result: GatewayResult) -> PaymentConfirmation:
        if result.status == "succeeded" and result.transaction_id:
            logger.info(f"Payment {result.transaction_id} succeeded")
            return PaymentConfirmation(
                status=PaymentOutcomeStatus.SUCCEEDED,
                transaction_id=result.transaction_id,
            )
        if result.status == "requires_action" and result.transaction_id:
            logger.info(f"Payment {result.transaction_id} requires customer action")
            return PaymentConfirmation(
                status=PaymentOutcomeStatus.REQUIRES_ACTION,
                transaction_id=result.transaction_id,
                next_action_url=result.next_action_url,
            )

        category = result.error_category or "api_error"
        logger.info(f"Payment {result.transaction_id or '<unknown>'} failed: {category}")
        raise PaymentError(category, reason_for(category, result.error_reason), result.error_code)
