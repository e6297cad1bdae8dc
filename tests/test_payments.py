"""Tests for the payment adapter and gateway implementations."""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from merchstore.config import SandboxGatewayConfig, StripeGatewayConfig
from merchstore.errors import ConfigError, PaymentError, ValidationError, WebhookError
from merchstore.models import PaymentOutcomeStatus
from merchstore.payments import (
    GatewayResult,
    PaymentAdapter,
    SandboxGateway,
    StripeGateway,
    create_gateway,
    intent_id_from_secret,
    reason_for,
    supported_gateways,
)


@pytest.fixture
def handle(adapter):
    return adapter.create_payment(Decimal("32.40"), "USD", {"session_id": "shopper-1"})


class TestSandboxGateway:
    def test_create_intent(self, gateway):
        handle = gateway.create_intent(Decimal("10.00"), "USD", {})
        assert handle.intent_id.startswith("pi_sandbox_")
        assert intent_id_from_secret(handle.client_secret) == handle.intent_id
        assert handle.currency == "usd"

    def test_unknown_token_fails_validation(self, gateway):
        handle = gateway.create_intent(Decimal("10.00"), "USD", {})
        result = gateway.confirm(handle.client_secret, {"payment_method": "pm_card_bogus"})
        assert result.status == "failed"
        assert result.error_category == "validation_error"

    def test_forged_client_secret(self, gateway):
        handle = gateway.create_intent(Decimal("10.00"), "USD", {})
        result = gateway.confirm(f"{handle.intent_id}_secret_guess", {"payment_method": "pm_card_visa"})
        assert result.status == "failed"

    def test_confirm_after_success_is_stable(self, gateway):
        handle = gateway.create_intent(Decimal("10.00"), "USD", {})
        gateway.confirm(handle.client_secret, {"payment_method": "pm_card_visa"})
        result = gateway.confirm(handle.client_secret, {"payment_method": "pm_card_chargeDeclined"})
        assert result.status == "succeeded"


class TestPaymentAdapter:
    def test_successful_payment(self, adapter, handle):
        confirmation = adapter.submit_payment(handle.client_secret, {"payment_method": "pm_card_visa"})
        assert confirmation.status == PaymentOutcomeStatus.SUCCEEDED
        assert confirmation.transaction_id == handle.intent_id

    def test_requires_action_is_not_a_failure(self, adapter, handle):
        confirmation = adapter.submit_payment(
            handle.client_secret, {"payment_method": "pm_card_authenticationRequired"}
        )
        assert confirmation.status == PaymentOutcomeStatus.REQUIRES_ACTION
        assert confirmation.next_action_url.endswith(handle.intent_id)

    @pytest.mark.parametrize("token,category,code", [
        ("pm_card_chargeDeclined", "card_error", "card_declined"),
        ("pm_card_insufficientFunds", "card_error", "insufficient_funds"),
        ("pm_card_expired", "card_error", "expired_card"),
        ("pm_card_network", "network_error", None),
        ("pm_card_apiError", "api_error", None),
    ])
    def test_failures_are_categorized(self, adapter, handle, token, category, code):
        with pytest.raises(PaymentError) as exc_info:
            adapter.submit_payment(handle.client_secret, {"payment_method": token})
        assert exc_info.value.category == category
        assert exc_info.value.code == code
        assert exc_info.value.reason

    def test_card_error_keeps_gateway_reason(self, adapter, handle):
        with pytest.raises(PaymentError) as exc_info:
            adapter.submit_payment(handle.client_secret, {"payment_method": "pm_card_insufficientFunds"})
        assert exc_info.value.reason == "Your card has insufficient funds."

    @pytest.mark.parametrize("field", ["number", "cvc", "card"])
    def test_raw_card_data_rejected(self, adapter, handle, field):
        with pytest.raises(ValidationError) as exc_info:
            adapter.submit_payment(handle.client_secret, {"payment_method": "pm_card_visa", field: "x"})
        assert exc_info.value.field == field

    def test_token_required(self, adapter, handle):
        with pytest.raises(ValidationError):
            adapter.submit_payment(handle.client_secret, {"email": "alex@example.com"})

    def test_client_secret_required(self, adapter):
        with pytest.raises(ValidationError):
            adapter.submit_payment("", {"payment_method": "pm_card_visa"})

    def test_non_positive_amount(self, adapter):
        with pytest.raises(ValidationError):
            adapter.create_payment(Decimal("0.00"), "USD")

    def test_unreachable_gateway_is_network_error(self, handle):
        class Unreachable(SandboxGateway):
            def confirm(self, client_secret, billing_details):
                raise ConnectionError("connection reset")

        adapter = PaymentAdapter(Unreachable())
        with pytest.raises(PaymentError) as exc_info:
            adapter.submit_payment(handle.client_secret, {"payment_method": "pm_card_visa"})
        assert exc_info.value.category == "network_error"

    def test_refresh_after_action(self, adapter, gateway, handle):
        adapter.submit_payment(handle.client_secret, {"payment_method": "pm_card_authenticationRequired"})
        gateway.complete_action(handle.intent_id)
        assert adapter.refresh(handle.intent_id).status == PaymentOutcomeStatus.SUCCEEDED


class TestReasons:
    def test_default_reasons(self):
        assert "network" in reason_for("network_error").lower()
        assert reason_for("something_else") == reason_for("api_error")

    def test_gateway_reason_only_for_customer_fixable_errors(self):
        assert reason_for("card_error", "Card expired") == "Card expired"
        assert reason_for("api_error", "Internal trace 42") != "Internal trace 42"

    def test_unknown_category_coerced(self):
        assert PaymentError("mystery", "oops").category == "api_error"


class TestRegistry:
    def test_supported(self):
        assert supported_gateways() == ["sandbox", "stripe"]

    def test_create_by_kind(self):
        assert isinstance(create_gateway(SandboxGatewayConfig()), SandboxGateway)
        assert isinstance(create_gateway(StripeGatewayConfig(secret_key="sk_test_1")), StripeGateway)

    def test_unsupported_kind(self):
        config = SimpleNamespace(kind="paypal")
        with pytest.raises(ConfigError):
            create_gateway(config)


class TestSandboxWebhooks:
    def test_signed_event_parses(self, gateway, handle):
        payload = gateway.build_event("payment_intent.succeeded", handle.intent_id)
        event = gateway.parse_webhook(payload, gateway.sign(payload))

        assert event.type == "payment_intent.succeeded"
        assert event.intent_id == handle.intent_id
        assert event.amount_minor == 3240

    def test_bad_signature(self, gateway, handle):
        payload = gateway.build_event("payment_intent.succeeded", handle.intent_id)
        with pytest.raises(WebhookError):
            gateway.parse_webhook(payload, "0" * 64)

    def test_missing_signature(self, gateway):
        with pytest.raises(WebhookError):
            gateway.parse_webhook(b"{}", "")

    def test_malformed_payload(self, gateway):
        payload = b'{"id": "evt_1"}'
        with pytest.raises(WebhookError) as exc_info:
            gateway.parse_webhook(payload, gateway.sign(payload))
        assert "malformed" in exc_info.value.reason

    def test_secret_comes_from_config(self):
        gateway = SandboxGateway(SandboxGatewayConfig(webhook_secret="whsec_other"))
        assert gateway.sign(b"x") != SandboxGateway().sign(b"x")


def fake_intent(status, intent_id="pi_123", **extra):
    return SimpleNamespace(id=intent_id, status=status, client_secret=f"{intent_id}_secret_abc", **extra)


class TestStripeGateway:
    @pytest.fixture
    def stripe_gateway(self):
        return StripeGateway(
            StripeGatewayConfig(secret_key="sk_test_1", webhook_secret="whsec_test", return_url="https://shop.example/return")
        )

    def test_create_intent_in_minor_units(self, stripe_gateway, monkeypatch):
        calls = {}

        def create(**kwargs):
            calls.update(kwargs)
            return fake_intent("requires_payment_method")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        handle = stripe_gateway.create_intent(Decimal("32.40"), "USD", {"session_id": "s1"})

        assert calls["amount"] == 3240
        assert calls["currency"] == "usd"
        assert calls["api_key"] == "sk_test_1"
        assert handle.intent_id == "pi_123"
        assert handle.client_secret == "pi_123_secret_abc"

    def test_create_intent_error_raises(self, stripe_gateway, monkeypatch):
        def create(**kwargs):
            raise stripe.APIConnectionError("Network down")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        with pytest.raises(PaymentError) as exc_info:
            stripe_gateway.create_intent(Decimal("10.00"), "USD", {})
        assert exc_info.value.category == "network_error"

    def test_confirm_succeeded(self, stripe_gateway, monkeypatch):
        calls = {}

        def confirm(intent_id, **kwargs):
            calls["intent_id"] = intent_id
            calls.update(kwargs)
            return fake_intent("succeeded", intent_id)

        monkeypatch.setattr(stripe.PaymentIntent, "confirm", confirm)
        result = stripe_gateway.confirm(
            "pi_123_secret_abc", {"payment_method": "pm_card_visa", "email": "alex@example.com"}
        )

        assert result == GatewayResult.succeeded("pi_123")
        assert calls["intent_id"] == "pi_123"
        assert calls["payment_method"] == "pm_card_visa"
        assert calls["receipt_email"] == "alex@example.com"
        assert calls["return_url"] == "https://shop.example/return"

    def test_confirm_requires_action(self, stripe_gateway, monkeypatch):
        next_action = SimpleNamespace(redirect_to_url=SimpleNamespace(url="https://hooks.stripe.com/3ds"))

        monkeypatch.setattr(
            stripe.PaymentIntent, "confirm",
            lambda intent_id, **kwargs: fake_intent("requires_action", intent_id, next_action=next_action),
        )
        result = stripe_gateway.confirm("pi_123_secret_abc", {"payment_method": "pm_card_visa"})
        assert result.status == "requires_action"
        assert result.next_action_url == "https://hooks.stripe.com/3ds"

    def test_card_error_is_returned_not_raised(self, stripe_gateway, monkeypatch):
        def confirm(intent_id, **kwargs):
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr(stripe.PaymentIntent, "confirm", confirm)
        result = stripe_gateway.confirm("pi_123_secret_abc", {"payment_method": "pm_card_visa"})

        assert result.status == "failed"
        assert result.error_category == "card_error"
        assert result.error_code == "card_declined"

    def test_invalid_request_is_validation_error(self, stripe_gateway, monkeypatch):
        def confirm(intent_id, **kwargs):
            raise stripe.InvalidRequestError("No such payment_method", "payment_method")

        monkeypatch.setattr(stripe.PaymentIntent, "confirm", confirm)
        result = stripe_gateway.confirm("pi_123_secret_abc", {"payment_method": "pm_missing"})
        assert result.error_category == "validation_error"

    def test_malformed_secret(self, stripe_gateway):
        result = stripe_gateway.confirm("not-a-secret", {"payment_method": "pm_card_visa"})
        assert result.error_category == "validation_error"

    def test_retrieve_failed_attempt(self, stripe_gateway, monkeypatch):
        last_error = SimpleNamespace(message="Authentication failed", code="payment_intent_authentication_failure")
        monkeypatch.setattr(
            stripe.PaymentIntent, "retrieve",
            lambda intent_id, **kwargs: fake_intent("requires_payment_method", intent_id, last_payment_error=last_error),
        )
        result = stripe_gateway.retrieve("pi_123")
        assert result.error_category == "card_error"
        assert result.error_reason == "Authentication failed"

    def test_adapter_maps_stripe_decline(self, stripe_gateway, monkeypatch):
        def confirm(intent_id, **kwargs):
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr(stripe.PaymentIntent, "confirm", confirm)
        adapter = PaymentAdapter(stripe_gateway)
        with pytest.raises(PaymentError) as exc_info:
            adapter.submit_payment("pi_123_secret_abc", {"payment_method": "pm_card_visa"})
        assert exc_info.value.category == "card_error"
        assert exc_info.value.code == "card_declined"

    def test_webhook_signature_verified(self, stripe_gateway):
        body = {
            "id": "evt_1",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_123", "object": "payment_intent", "amount": 3240}},
        }
        payload = json.dumps(body)
        timestamp = int(time.time())
        digest = hmac.new(b"whsec_test", f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()

        event = stripe_gateway.parse_webhook(payload.encode(), f"t={timestamp},v1={digest}")
        assert event.id == "evt_1"
        assert event.intent_id == "pi_123"
        assert event.amount_minor == 3240

    def test_webhook_bad_signature(self, stripe_gateway):
        with pytest.raises(WebhookError):
            stripe_gateway.parse_webhook(b"{}", f"t={int(time.time())},v1=deadbeef")

    def test_webhook_requires_secret(self):
        gateway = StripeGateway(StripeGatewayConfig(secret_key="sk_test_1"))
        with pytest.raises(WebhookError):
            gateway.parse_webhook(b"{}", "t=1,v1=x")
