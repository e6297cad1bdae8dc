"""Order lifecycle: the status state machine and its append-only timeline.

Fulfillment runs pending -> confirmed -> processing -> shipped -> delivered,
one step at a time. Cancellation is possible until the order ships. Payment
status is tracked separately; an order only becomes confirmed once paid.
"""

import logging

from .errors import InvalidTransition, OrderNotFoundError, ValidationError
from .models import (
    Address,
    Order,
    OrderItem,
    OrderStatus,
    OrderTotals,
    PaymentStatus,
    TimelineEntry,
    _generate_id,
    _utc_now,
)
from .order_store import OrderStore
from .payments import WebhookEvent

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[OrderStatus, tuple[OrderStatus, ...]] = {
    OrderStatus.PENDING: (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
    OrderStatus.CONFIRMED: (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
    OrderStatus.PROCESSING: (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
    OrderStatus.SHIPPED: (OrderStatus.DELIVERED,),
    OrderStatus.DELIVERED: (),
    OrderStatus.CANCELLED: (),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, tuple[PaymentStatus, ...]] = {
    PaymentStatus.PENDING: (PaymentStatus.PAID, PaymentStatus.FAILED),
    PaymentStatus.FAILED: (PaymentStatus.PAID,),
    PaymentStatus.PAID: (PaymentStatus.REFUNDED,),
    PaymentStatus.REFUNDED: (),
}

PAYMENT_EVENT_STATUS: dict[str, PaymentStatus] = {
    "payment_intent.succeeded": PaymentStatus.PAID,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
}


def parse_status(value: str | OrderStatus) -> OrderStatus:
    """
    Coerce user input to an OrderStatus.

    Raises:
        ValidationError: If the value isn't a known status.
    """
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"Unknown order status '{value}' (expected one of: {valid})", field="status")


def allowed_transitions(status: OrderStatus) -> list[OrderStatus]:
    return list(ALLOWED_TRANSITIONS[status])


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def _check_transition(order: Order, new_status: OrderStatus) -> None:
    if not can_transition(order.status, new_status):
        raise InvalidTransition(
            order.status.value,
            new_status.value,
            [s.value for s in allowed_transitions(order.status)],
        )
    if new_status == OrderStatus.CONFIRMED and order.payment_status != PaymentStatus.PAID:
        raise InvalidTransition(
            order.status.value,
            new_status.value,
            [s.value for s in allowed_transitions(order.status)],
            reason=f"payment is {order.payment_status.value}",
        )


class OrderLifecycle:
    """Owns order creation and every status change."""

    def __init__(self, store: OrderStore):
        self.store = store

    def create_order(
        self,
        customer_email: str,
        items: list[OrderItem],
        shipping_address: Address,
        billing_address: Address,
        totals: OrderTotals,
        shipping_method_id: str | None = None,
        currency: str = "USD",
        notes: str | None = None,
        payment_reference: str | None = None,
    ) -> Order:
        """
        Create a new pending order with its first timeline entry.

        Raises:
            ValidationError: If the order has no items.
        """
        if not items:
            raise ValidationError("Order must contain at least one item", field="items")

        def build(order_number: str) -> Order:
            now = _utc_now()
            return Order(
                id=_generate_id(),
                order_number=order_number,
                customer_email=customer_email,
                customer_name=shipping_address.full_name,
                items=list(items),
                shipping_address=shipping_address,
                billing_address=billing_address,
                totals=totals,
                shipping_method_id=shipping_method_id,
                status=OrderStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                payment_reference=payment_reference,
                currency=currency,
                notes=notes,
                timeline=[TimelineEntry(status=OrderStatus.PENDING, timestamp=now, note="Order placed")],
                created_at=now,
                updated_at=now,
            )

        order = self.store.create(build)
        logger.info(f"Order {order.order_number} created ({order.totals.total} {currency})")
        return order

    def transition(
        self,
        order_ref: str,
        new_status: str | OrderStatus,
        note: str | None = None,
        actor: str | None = None,
    ) -> Order:
        """
        Move an order to a new status and record it in the timeline.

        The transition is validated against the order as stored at the moment
        the update runs, under the store lock.

        Raises:
            ValidationError: If the status name is unknown.
            OrderNotFoundError: If the order doesn't exist.
            InvalidTransition: If the state machine forbids it. The order and
                its timeline are left unchanged.
        """
        target = parse_status(new_status)
        previous: list[OrderStatus] = []

        def apply(order: Order) -> None:
            _check_transition(order, target)
            previous.append(order.status)
            order.status = target
            order.timeline.append(
                TimelineEntry(status=target, timestamp=_utc_now(), note=note or None, actor=actor)
            )

        order = self.store.update(order_ref, apply)
        logger.info(
            f"Order {order.order_number} status changed from {previous[0].value} "
            f"to {target.value}" + (f" by {actor}" if actor else "")
        )
        return order

    def record_payment(
        self,
        order_ref: str,
        payment_status: PaymentStatus,
        reference: str | None = None,
    ) -> Order:
        """
        Record a payment status change reported by the gateway.

        A payment becoming ``paid`` confirms a pending order. Repeated reports
        of the current payment status are ignored.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            InvalidTransition: If the payment status change isn't allowed.
        """

        def apply(order: Order) -> None:
            if order.payment_status == payment_status:
                return
            if payment_status not in PAYMENT_TRANSITIONS[order.payment_status]:
                raise InvalidTransition(
                    f"payment {order.payment_status.value}",
                    f"payment {payment_status.value}",
                    [s.value for s in PAYMENT_TRANSITIONS[order.payment_status]],
                )
            order.payment_status = payment_status
            if reference:
                order.payment_reference = reference

            if payment_status == PaymentStatus.PAID and order.status == OrderStatus.PENDING:
                order.status = OrderStatus.CONFIRMED
                order.timeline.append(
                    TimelineEntry(
                        status=OrderStatus.CONFIRMED,
                        timestamp=_utc_now(),
                        note="Payment received",
                    )
                )
            elif payment_status == PaymentStatus.PAID and order.status == OrderStatus.CANCELLED:
                logger.warning(f"Payment received for cancelled order {order.order_number}")

        order = self.store.update(order_ref, apply)
        logger.info(f"Order {order.order_number} payment is {order.payment_status.value}")
        return order

    def apply_payment_event(self, event: WebhookEvent) -> Order | None:
        """
        Apply a verified gateway event to the order paid through its intent.

        Returns the updated order, or None when the event is not relevant, no
        order references the intent, or the change is not allowed.
        """
        payment_status = PAYMENT_EVENT_STATUS.get(event.type)
        if payment_status is None or not event.intent_id:
            logger.debug(f"Ignoring webhook event {event.id} ({event.type})")
            return None

        order = self.store.find_by_payment_reference(event.intent_id)
        if order is None:
            logger.info(f"Webhook event {event.id}: no order for intent {event.intent_id}")
            return None

        try:
            return self.record_payment(order.id, payment_status, event.intent_id)
        except InvalidTransition as e:
            logger.warning(f"Webhook event {event.id} ignored for order {order.order_number}: {e}")
            return None

    def history(self, order_ref: str) -> list[TimelineEntry]:
        """Return the order's status timeline, oldest first."""
        return self.store.get(order_ref).timeline

    def tracking_view(self, order_number: str, email: str) -> Order:
        """
        Customer order lookup by order number and email.

        Raises:
            OrderNotFoundError: If the order doesn't exist or the email doesn't match.
        """
        try:
            order = self.store.get(order_number)
        except OrderNotFoundError:
            raise OrderNotFoundError(order_number)
        if order.order_number != order_number or order.customer_email.lower() != email.strip().lower():
            raise OrderNotFoundError(order_number)
        return order
