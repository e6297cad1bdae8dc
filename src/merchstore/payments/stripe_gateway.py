"""Stripe PaymentIntents gateway."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import stripe

from ..config import StripeGatewayConfig
from ..errors import PaymentError, WebhookError
from ..utils import to_minor_units
from .gateway_protocol import (
    GatewayResult,
    PaymentIntentHandle,
    WebhookEvent,
    intent_id_from_secret,
)

logger = logging.getLogger(__name__)


def _category_for(exc: stripe.StripeError) -> str:
    """Map Stripe's error taxonomy onto the four payment error categories."""
    if isinstance(exc, stripe.CardError):
        return "card_error"
    if isinstance(exc, stripe.InvalidRequestError):
        return "validation_error"
    if isinstance(exc, stripe.APIConnectionError):
        return "network_error"
    return "api_error"


def _failed_from_exception(exc: stripe.StripeError, intent_id: str | None = None) -> GatewayResult:
    category = _category_for(exc)
    reason = exc.user_message if category == "card_error" and exc.user_message else None
    return GatewayResult.failed(category, reason, getattr(exc, "code", None), intent_id)


def _next_action_url(intent: Any) -> str | None:
    next_action = getattr(intent, "next_action", None)
    if not next_action:
        return None
    redirect = getattr(next_action, "redirect_to_url", None)
    if not redirect:
        return None
    return getattr(redirect, "url", None)


def _result_from_intent(intent: Any) -> GatewayResult:
    status = intent.status
    if status == "succeeded":
        return GatewayResult.succeeded(intent.id)
    if status in ("requires_action", "processing", "requires_confirmation"):
        return GatewayResult.requires_action(intent.id, _next_action_url(intent))
    if status == "canceled":
        return GatewayResult.failed("api_error", "The payment was canceled.", "canceled", intent.id)

    # requires_payment_method: the last attempt failed
    last_error = getattr(intent, "last_payment_error", None)
    reason = getattr(last_error, "message", None) if last_error else None
    code = getattr(last_error, "code", None) if last_error else None
    return GatewayResult.failed("card_error", reason, code, intent.id)


class StripeGateway:
    """Payment gateway backed by Stripe PaymentIntents."""

    def __init__(self, config: StripeGatewayConfig):
        self.config = config

    def create_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str]
    ) -> PaymentIntentHandle:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self.config.secret_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create payment intent: {e}")
            raise PaymentError(_category_for(e), str(e), getattr(e, "code", None))

        return PaymentIntentHandle(
            intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=amount,
            currency=currency.lower(),
        )

    def confirm(self, client_secret: str, billing_details: dict[str, Any]) -> GatewayResult:
        intent_id = intent_id_from_secret(client_secret)
        if intent_id is None:
            return GatewayResult.failed("validation_error", "Malformed client secret")

        params: dict[str, Any] = {
            "payment_method": billing_details.get("payment_method"),
            "api_key": self.config.secret_key,
        }
        if billing_details.get("email"):
            params["receipt_email"] = billing_details["email"]
        if self.config.return_url:
            params["return_url"] = self.config.return_url

        try:
            intent = stripe.PaymentIntent.confirm(intent_id, **params)
        except stripe.StripeError as e:
            logger.warning(f"Payment confirmation failed for {intent_id}: {e}")
            return _failed_from_exception(e, intent_id)

        return _result_from_intent(intent)

    def retrieve(self, intent_id: str) -> GatewayResult:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.config.secret_key)
        except stripe.StripeError as e:
            return _failed_from_exception(e, intent_id)
        return _result_from_intent(intent)

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self.config.webhook_secret:
            raise WebhookError("webhook secret not configured")
        if not signature:
            raise WebhookError("missing signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
        except stripe.SignatureVerificationError:
            raise WebhookError("signature mismatch")
        except ValueError as e:
            raise WebhookError(f"malformed payload ({e})")

        obj = event.data.object
        return WebhookEvent(
            id=event.id,
            type=event.type,
            intent_id=getattr(obj, "id", None),
            amount_minor=getattr(obj, "amount", None),
        )
