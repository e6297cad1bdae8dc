"""Tests for the order status state machine."""

import threading

import pytest

from merchstore.errors import InvalidTransition, OrderNotFoundError, ValidationError
from merchstore.lifecycle import (
    ALLOWED_TRANSITIONS,
    allowed_transitions,
    can_transition,
    parse_status,
)
from merchstore.models import OrderStatus, PaymentStatus
from merchstore.payments import WebhookEvent


@pytest.fixture
def paid_order(lifecycle, make_order):
    order = make_order()
    return lifecycle.record_payment(order.id, PaymentStatus.PAID, "pi_paid")


class TestTransitionTable:
    def test_terminal_states(self):
        assert allowed_transitions(OrderStatus.DELIVERED) == []
        assert allowed_transitions(OrderStatus.CANCELLED) == []

    def test_cancel_only_before_shipping(self):
        for status in (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING):
            assert can_transition(status, OrderStatus.CANCELLED)
        assert not can_transition(OrderStatus.SHIPPED, OrderStatus.CANCELLED)

    def test_no_status_transitions_to_itself(self):
        for status in OrderStatus:
            assert status not in ALLOWED_TRANSITIONS[status]

    def test_parse_status(self):
        assert parse_status("Shipped") == OrderStatus.SHIPPED
        with pytest.raises(ValidationError):
            parse_status("lost")


class TestCreateOrder:
    def test_starts_pending_with_timeline(self, make_order):
        order = make_order()
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.customer_name == "Alex Rivera"
        assert len(order.timeline) == 1
        assert order.timeline[0].status == OrderStatus.PENDING

    def test_requires_items(self, lifecycle, address, make_order):
        totals = make_order().totals
        with pytest.raises(ValidationError):
            lifecycle.create_order("alex@example.com", [], address, address, totals)


class TestTransition:
    def test_full_fulfillment_sequence(self, lifecycle, paid_order):
        for status in ("processing", "shipped", "delivered"):
            order = lifecycle.transition(paid_order.id, status, actor="admin")

        assert order.status == OrderStatus.DELIVERED
        assert [e.status for e in order.timeline] == [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        ]
        assert order.timeline[-1].actor == "admin"

    def test_skipping_a_step_is_rejected(self, lifecycle, paid_order):
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.transition(paid_order.id, OrderStatus.SHIPPED)
        assert exc_info.value.allowed == ["processing", "cancelled"]

    def test_rejected_transition_leaves_order_unchanged(self, lifecycle, order_store, paid_order):
        for status in ("processing", "shipped", "delivered"):
            lifecycle.transition(paid_order.id, status)
        before = order_store.get(paid_order.id)

        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.transition(paid_order.id, "processing")
        assert exc_info.value.allowed == []

        after = order_store.get(paid_order.id)
        assert after.status == OrderStatus.DELIVERED
        assert after.timeline == before.timeline

    def test_cancel_after_shipping_rejected(self, lifecycle, paid_order):
        lifecycle.transition(paid_order.id, "processing")
        lifecycle.transition(paid_order.id, "shipped")
        with pytest.raises(InvalidTransition):
            lifecycle.transition(paid_order.id, "cancelled")

    def test_cancel_pending_order(self, lifecycle, make_order):
        order = lifecycle.transition(make_order().id, "cancelled", note="Customer request")
        assert order.status == OrderStatus.CANCELLED
        assert order.timeline[-1].note == "Customer request"

    def test_confirm_requires_payment(self, lifecycle, make_order):
        order = make_order()
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.transition(order.id, "confirmed")
        assert "payment is pending" in str(exc_info.value)

    def test_same_status_is_rejected(self, lifecycle, paid_order):
        lifecycle.transition(paid_order.id, "processing")
        with pytest.raises(InvalidTransition):
            lifecycle.transition(paid_order.id, "processing")

    def test_unknown_order(self, lifecycle):
        with pytest.raises(OrderNotFoundError):
            lifecycle.transition("missing", "shipped")

    def test_history(self, lifecycle, paid_order):
        lifecycle.transition(paid_order.id, "processing")
        history = lifecycle.history(paid_order.order_number)
        assert [e.status for e in history][-1] == OrderStatus.PROCESSING

    def test_concurrent_transitions_serialize(self, lifecycle, order_store, paid_order):
        barrier = threading.Barrier(2)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                lifecycle.transition(paid_order.id, "processing", actor="admin")
                outcomes.append("ok")
            except InvalidTransition:
                outcomes.append("rejected")

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(outcomes) == ["ok", "rejected"]
        stored = order_store.get(paid_order.id)
        assert stored.status == OrderStatus.PROCESSING
        assert len(stored.timeline) == len(paid_order.timeline) + 1


class TestRecordPayment:
    def test_paid_confirms_pending_order(self, paid_order):
        assert paid_order.payment_status == PaymentStatus.PAID
        assert paid_order.status == OrderStatus.CONFIRMED
        assert paid_order.payment_reference == "pi_paid"
        assert paid_order.timeline[-1].note == "Payment received"

    def test_repeat_report_is_ignored(self, lifecycle, paid_order):
        again = lifecycle.record_payment(paid_order.id, PaymentStatus.PAID)
        assert len(again.timeline) == len(paid_order.timeline)

    def test_failed_then_paid(self, lifecycle, make_order):
        order = make_order()
        failed = lifecycle.record_payment(order.id, PaymentStatus.FAILED)
        assert failed.status == OrderStatus.PENDING

        paid = lifecycle.record_payment(order.id, PaymentStatus.PAID)
        assert paid.status == OrderStatus.CONFIRMED

    def test_paid_cannot_fail(self, lifecycle, paid_order):
        with pytest.raises(InvalidTransition):
            lifecycle.record_payment(paid_order.id, PaymentStatus.FAILED)

    def test_refund(self, lifecycle, paid_order):
        order = lifecycle.record_payment(paid_order.id, PaymentStatus.REFUNDED)
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.status == OrderStatus.CONFIRMED

    def test_payment_after_cancel_keeps_cancelled(self, lifecycle, make_order):
        order = lifecycle.transition(make_order().id, "cancelled")
        order = lifecycle.record_payment(order.id, PaymentStatus.PAID)
        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.PAID


class TestPaymentEvents:
    def _event(self, event_type, intent_id="pi_hook"):
        return WebhookEvent(id="evt_1", type=event_type, intent_id=intent_id)

    @pytest.fixture
    def awaiting_payment(self, order_store, make_order):
        order = make_order()
        return order_store.update(order.id, lambda o: setattr(o, "payment_reference", "pi_hook"))

    def test_succeeded_event_confirms(self, lifecycle, awaiting_payment):
        order = lifecycle.apply_payment_event(self._event("payment_intent.succeeded"))
        assert order.id == awaiting_payment.id
        assert order.status == OrderStatus.CONFIRMED

    def test_failed_event(self, lifecycle, awaiting_payment):
        order = lifecycle.apply_payment_event(self._event("payment_intent.payment_failed"))
        assert order.payment_status == PaymentStatus.FAILED

    def test_irrelevant_event_ignored(self, lifecycle, awaiting_payment):
        assert lifecycle.apply_payment_event(self._event("charge.refunded")) is None

    def test_unknown_intent_ignored(self, lifecycle, awaiting_payment):
        assert lifecycle.apply_payment_event(self._event("payment_intent.succeeded", "pi_other")) is None

    def test_disallowed_change_ignored(self, lifecycle, order_store, awaiting_payment):
        lifecycle.apply_payment_event(self._event("payment_intent.succeeded"))
        assert lifecycle.apply_payment_event(self._event("payment_intent.payment_failed")) is None
        assert order_store.get(awaiting_payment.id).payment_status == PaymentStatus.PAID


class TestTrackingView:
    def test_matching_email(self, lifecycle, make_order):
        order = make_order(email="Alex@Example.com")
        found = lifecycle.tracking_view(order.order_number, " alex@example.com ")
        assert found.id == order.id

    def test_wrong_email_looks_like_missing(self, lifecycle, make_order):
        order = make_order()
        with pytest.raises(OrderNotFoundError):
            lifecycle.tracking_view(order.order_number, "someone@else.com")

    def test_lookup_by_id_not_allowed(self, lifecycle, make_order):
        order = make_order()
        with pytest.raises(OrderNotFoundError):
            lifecycle.tracking_view(order.id, "alex@example.com")

    def test_unknown_order_number(self, lifecycle):
        with pytest.raises(OrderNotFoundError):
            lifecycle.tracking_view("PS-2024-000999", "alex@example.com")
