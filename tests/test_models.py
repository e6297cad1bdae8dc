"""Tests for data models and utilities."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from merchstore.models import (
    PAYMENT_IN_FLIGHT_TIMEOUT,
    Address,
    Cart,
    CartLineItem,
    CheckoutState,
    CheckoutStep,
    Order,
    OrderStatus,
    PaymentConfirmation,
    PaymentOutcomeStatus,
    Product,
    ProductVariant,
    ShopperSession,
    _utc_now,
    to_money,
)
from merchstore.utils import (
    format_price,
    from_minor_units,
    generate_order_number,
    is_valid_email,
    is_valid_order_number,
    to_minor_units,
)


class TestMoney:
    def test_to_money_rounds_half_up(self):
        assert to_money("2.345") == Decimal("2.35")
        assert to_money(Decimal("2.344")) == Decimal("2.34")

    def test_to_money_from_float_uses_repr(self):
        assert to_money(0.1 + 0.2) == Decimal("0.30")

    def test_minor_units(self):
        assert to_minor_units(Decimal("32.40")) == 3240
        assert from_minor_units(1299) == Decimal("12.99")

    def test_format_price(self):
        assert format_price(Decimal("32.4")) == "$32.40"
        assert format_price(Decimal("1234.5")) == "$1,234.50"
        assert format_price(Decimal("10"), "eur") == "10.00 EUR"


class TestOrderNumbers:
    def test_generate(self):
        assert generate_order_number(42, year=2024) == "PS-2024-000042"

    def test_generate_rejects_zero(self):
        with pytest.raises(ValueError):
            generate_order_number(0)

    def test_validate(self):
        assert is_valid_order_number("PS-2024-000042")
        assert not is_valid_order_number("PS-24-42")
        assert not is_valid_order_number("ORD-2024-000042")


class TestEmail:
    @pytest.mark.parametrize("email", ["a@b.co", "fan.club+merch@example.com"])
    def test_valid(self, email):
        assert is_valid_email(email)

    @pytest.mark.parametrize("email", ["", "no-at-sign", "two@@example.com", "spaces in@example.com"])
    def test_invalid(self, email):
        assert not is_valid_email(email)


class TestProduct:
    def test_unit_price_with_variant_adjustment(self):
        xxl = ProductVariant(id="xxl", name="XXL", sku="T-XXL", price_adjustment=Decimal("2.00"))
        product = Product(id="tee", name="Tee", slug="tee", base_price=Decimal("25.00"), variants=[xxl])

        assert product.unit_price(None) == Decimal("25.00")
        assert product.unit_price(xxl) == Decimal("27.00")
        assert product.find_variant("xxl") is xxl
        assert product.find_variant("missing") is None

    def test_from_dict_defaults_slug(self):
        product = Product.from_dict({"id": "lp", "name": "LP", "base_price": "30"})
        assert product.slug == "lp"
        assert product.base_price == Decimal("30.00")
        assert product.is_active is True

    def test_stock_is_untracked_by_default(self):
        product = Product.from_dict({
            "id": "tee", "name": "Tee", "base_price": "25",
            "variants": [{"id": "m", "name": "M", "stock_quantity": 4}],
        })
        assert product.available_stock(None) is None
        assert product.available_stock(product.variants[0]) == 4
        assert product.to_dict()["variants"][0]["stock_quantity"] == 4
        assert "stock_quantity" not in product.to_dict()


class TestCart:
    def test_line_total_and_subtotal(self):
        cart = Cart(
            items=[
                CartLineItem("1", "tee", "m", "Tee", "M", "T-M", 2, Decimal("25.00")),
                CartLineItem("2", "sticker", None, "Sticker", None, None, 3, Decimal("3.50")),
            ]
        )
        assert cart.items[0].line_total == Decimal("50.00")
        assert cart.subtotal == Decimal("60.50")
        assert cart.item_count == 5
        assert not cart.is_empty

    def test_find_matching(self):
        cart = Cart(items=[CartLineItem("1", "tee", "m", "Tee", "M", "T-M", 1, Decimal("25.00"))])
        assert cart.find_matching("tee", "m") is cart.items[0]
        assert cart.find_matching("tee", "s") is None

    def test_line_serializes_money_as_strings(self):
        item = CartLineItem("1", "tee", None, "Tee", None, None, 2, Decimal("9.99"))
        data = item.to_dict()
        assert data["unit_price"] == "9.99"
        assert data["line_total"] == "19.98"
        assert CartLineItem.from_dict(data) == item


class TestCheckoutState:
    def test_mark_completed_keeps_step_order(self):
        state = CheckoutState()
        state.mark_completed(CheckoutStep.SHIPPING)
        state.mark_completed(CheckoutStep.CART)
        state.mark_completed(CheckoutStep.SHIPPING)
        assert state.completed_steps == [CheckoutStep.CART, CheckoutStep.SHIPPING]

    def test_session_round_trip_with_address_and_payment(self):
        session = ShopperSession(session_id="abc")
        session.checkout.shipping_address = Address(
            first_name="A", last_name="B", address1="1 St", city="C",
            state="S", postal_code="97201", country="US",
        )
        session.checkout.payment = PaymentConfirmation(
            status=PaymentOutcomeStatus.REQUIRES_ACTION,
            transaction_id="pi_1",
            next_action_url="https://example.com/3ds",
        )

        restored = ShopperSession.from_dict(session.to_dict())
        assert restored.checkout.shipping_address == session.checkout.shipping_address
        assert restored.checkout.payment.next_action_url == "https://example.com/3ds"
        assert not restored.checkout.payment.succeeded

    def test_fresh_payment_marker_is_in_flight(self):
        state = CheckoutState(payment_started_at=_utc_now())
        assert state.payment_in_flight
        assert not state.has_stale_payment

    def test_old_payment_marker_is_stale(self):
        started = datetime.now(timezone.utc) - PAYMENT_IN_FLIGHT_TIMEOUT - timedelta(seconds=1)
        state = CheckoutState(payment_started_at=started.isoformat().replace("+00:00", "Z"))
        assert not state.payment_in_flight
        assert state.has_stale_payment

    def test_clear_payment(self):
        state = CheckoutState(payment_intent_id="pi_1", client_secret="pi_1_secret_x", payment_started_at=_utc_now())
        state.clear_payment()
        assert state.payment_intent_id is None
        assert state.client_secret is None
        assert not state.payment_in_flight


class TestOrder:
    def test_from_dict_defaults(self, make_order):
        order = make_order(quantity=2)
        restored = Order.from_dict(order.to_dict())

        assert restored.status == OrderStatus.PENDING
        assert restored.item_count == 2
        assert restored.totals.total == Decimal("32.40")
        assert restored.timeline[0].note == "Order placed"
