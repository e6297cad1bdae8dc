"""In-process sandbox payment gateway.

Behaves like a hosted gateway in test mode: payment methods are opaque test
tokens and each token maps to a fixed outcome.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from decimal import Decimal
from typing import Any

from ..config import SandboxGatewayConfig
from ..errors import PaymentError, WebhookError
from ..utils import to_minor_units
from .gateway_protocol import (
    GatewayResult,
    PaymentIntentHandle,
    WebhookEvent,
    intent_id_from_secret,
)

# token -> (status, error category, error code, reason)
TEST_TOKENS: dict[str, tuple[str, str | None, str | None, str | None]] = {
    "pm_card_visa": ("succeeded", None, None, None),
    "pm_card_mastercard": ("succeeded", None, None, None),
    "pm_card_amex": ("succeeded", None, None, None),
    "pm_card_authenticationRequired": ("requires_action", None, None, None),
    "pm_card_chargeDeclined": ("failed", "card_error", "card_declined", "Your card was declined."),
    "pm_card_insufficientFunds": (
        "failed", "card_error", "insufficient_funds", "Your card has insufficient funds.",
    ),
    "pm_card_expired": ("failed", "card_error", "expired_card", "Your card has expired."),
    "pm_card_network": ("failed", "network_error", None, None),
    "pm_card_apiError": ("failed", "api_error", None, None),
}


class SandboxGateway:
    """Deterministic gateway for development and tests."""

    def __init__(self, config: SandboxGatewayConfig | None = None):
        self.config = config or SandboxGatewayConfig()
        self._intents: dict[str, dict[str, Any]] = {}

    def create_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str]
    ) -> PaymentIntentHandle:
        if amount <= 0:
            raise PaymentError("validation_error", "Amount must be greater than 0")
        intent_id = f"pi_sandbox_{secrets.token_hex(8)}"
        client_secret = f"{intent_id}_secret_{secrets.token_hex(12)}"
        self._intents[intent_id] = {
            "client_secret": client_secret,
            "amount": amount,
            "currency": currency.lower(),
            "metadata": dict(metadata),
            "status": "requires_payment_method",
        }
        return PaymentIntentHandle(
            intent_id=intent_id,
            client_secret=client_secret,
            amount=amount,
            currency=currency.lower(),
        )

    def _lookup(self, client_secret: str) -> tuple[str, dict[str, Any]] | None:
        intent_id = intent_id_from_secret(client_secret)
        if intent_id is None:
            return None
        intent = self._intents.get(intent_id)
        if intent is None or not hmac.compare_digest(intent["client_secret"], client_secret):
            return None
        return intent_id, intent

    def confirm(self, client_secret: str, billing_details: dict[str, Any]) -> GatewayResult:
        found = self._lookup(client_secret)
        if found is None:
            return GatewayResult.failed("validation_error", "No such payment intent", "resource_missing")
        intent_id, intent = found

        if intent["status"] == "succeeded":
            return GatewayResult.succeeded(intent_id)

        token = billing_details.get("payment_method", "")
        outcome = TEST_TOKENS.get(token)
        if outcome is None:
            return GatewayResult.failed(
                "validation_error", f"No such payment method: '{token}'", "resource_missing", intent_id
            )

        status, category, code, reason = outcome
        intent["payment_method"] = token
        if status == "succeeded":
            intent["status"] = "succeeded"
            return GatewayResult.succeeded(intent_id)
        if status == "requires_action":
            intent["status"] = "requires_action"
            return GatewayResult.requires_action(
                intent_id, next_action_url=f"https://sandbox.invalid/authenticate/{intent_id}"
            )

        intent["status"] = "requires_payment_method"
        return GatewayResult.failed(category or "api_error", reason, code, intent_id)

    def complete_action(self, intent_id: str, approve: bool = True) -> None:
        """Resolve a pending 3-D Secure challenge, as the customer would."""
        intent = self._intents[intent_id]
        if intent["status"] != "requires_action":
            return
        intent["status"] = "succeeded" if approve else "requires_payment_method"

    def retrieve(self, intent_id: str) -> GatewayResult:
        intent = self._intents.get(intent_id)
        if intent is None:
            return GatewayResult.failed("validation_error", "No such payment intent", "resource_missing")
        status = intent["status"]
        if status == "succeeded":
            return GatewayResult.succeeded(intent_id)
        if status == "requires_action":
            return GatewayResult.requires_action(
                intent_id, next_action_url=f"https://sandbox.invalid/authenticate/{intent_id}"
            )
        return GatewayResult.failed(
            "card_error", "Authentication failed or no payment method attached",
            "payment_intent_authentication_failure", intent_id,
        )

    # Webhooks

    def sign(self, payload: bytes) -> str:
        """Compute the signature a sandbox webhook delivery carries."""
        return hmac.new(
            self.config.webhook_secret.encode("utf-8"), payload, hashlib.sha256
        ).hexdigest()

    def build_event(self, event_type: str, intent_id: str) -> bytes:
        """Serialize an event payload for an intent (used to simulate deliveries)."""
        intent = self._intents.get(intent_id, {})
        amount = intent.get("amount")
        body = {
            "id": f"evt_sandbox_{secrets.token_hex(6)}",
            "type": event_type,
            "data": {
                "object": {
                    "id": intent_id,
                    "amount": to_minor_units(amount) if amount is not None else None,
                }
            },
        }
        return json.dumps(body).encode("utf-8")

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if not signature:
            raise WebhookError("missing signature")
        if not hmac.compare_digest(self.sign(payload), signature):
            raise WebhookError("signature mismatch")
        try:
            body = json.loads(payload)
            obj = body["data"]["object"]
            return WebhookEvent(
                id=body["id"],
                type=body["type"],
                intent_id=obj.get("id"),
                amount_minor=obj.get("amount"),
                raw=body,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookError(f"malformed payload ({e})")
