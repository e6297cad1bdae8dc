"""Admin order console: listing, search and status commands over orders."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from .errors import ValidationError
from .lifecycle import OrderLifecycle, parse_status
from .models import Order, OrderStatus, PaymentStatus, to_money
from .order_store import OrderStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MAX_NOTES_LENGTH = 2000


@dataclass
class OrderPage:
    """A slice of an order listing."""

    orders: list[Order]
    total: int
    offset: int
    limit: int

    @property
    def page(self) -> int:
        return self.offset // self.limit + 1

    @property
    def page_size(self) -> int:
        return self.limit

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.orders) < self.total


@dataclass
class OrderSummary:
    """Aggregate figures for the admin dashboard."""

    order_count: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_payment_status: dict[str, int] = field(default_factory=dict)
    revenue: Decimal = Decimal("0.00")
    average_order_value: Decimal = Decimal("0.00")

    def to_dict(self) -> dict:
        return {
            "order_count": self.order_count,
            "by_status": self.by_status,
            "by_payment_status": self.by_payment_status,
            "revenue": str(self.revenue),
            "average_order_value": str(self.average_order_value),
        }


def _matches(order: Order, term: str) -> bool:
    term = term.lower()
    return (
        term in order.order_number.lower()
        or term in order.customer_email.lower()
        or term in order.customer_name.lower()
    )


class AdminOrderConsole:
    """
    Read and command surface for administrators.

    Status changes go through the lifecycle manager and fail the same way.
    Only status and notes can change; items and totals are fixed at creation.
    """

    def __init__(self, store: OrderStore, lifecycle: OrderLifecycle, page_size: int = DEFAULT_PAGE_SIZE):
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        self.store = store
        self.lifecycle = lifecycle
        self.page_size = page_size

    def list_orders(
        self,
        status: str | OrderStatus | None = None,
        search: str | None = None,
        page: int = 1,
        offset: int | None = None,
        limit: int | None = None,
    ) -> OrderPage:
        """
        List orders newest first, optionally filtered.

        Args:
            status: Only orders in this status.
            search: Case-insensitive substring of order number, email or name.
            page: 1-based page number, used when no offset is given.
            offset: Number of matching orders to skip.
            limit: Maximum orders returned; defaults to the console page size.

        Raises:
            ValidationError: If the status is unknown, page < 1, offset < 0
                or limit is outside 1..MAX_PAGE_SIZE.
        """
        if limit is None:
            limit = self.page_size
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if offset is None:
            if page < 1:
                raise ValidationError("Page must be at least 1", field="page")
            offset = (page - 1) * limit
        elif offset < 0:
            raise ValidationError("Offset must not be negative", field="offset")

        orders = self.store.list_orders()
        if status:
            wanted = parse_status(status)
            orders = [o for o in orders if o.status == wanted]
        if search and search.strip():
            orders = [o for o in orders if _matches(o, search.strip())]

        orders.sort(key=lambda o: (o.created_at, o.order_number), reverse=True)
        return OrderPage(
            orders=orders[offset:offset + limit],
            total=len(orders),
            offset=offset,
            limit=limit,
        )

    def get_order(self, order_ref: str) -> Order:
        return self.store.get(order_ref)

    def update_status(
        self,
        order_ref: str,
        new_status: str | OrderStatus,
        note: str | None = None,
        actor: str | None = "admin",
    ) -> Order:
        """
        Request a status change.

        Raises:
            InvalidTransition: If the lifecycle rejects it; the order is unchanged.
        """
        return self.lifecycle.transition(order_ref, new_status, note=note, actor=actor)

    def update_notes(self, order_ref: str, notes: str | None) -> Order:
        """
        Replace the order's free-text notes.

        Raises:
            ValidationError: If the notes are too long.
        """
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"Notes must be at most {MAX_NOTES_LENGTH} characters", field="notes")

        def apply(order: Order) -> None:
            order.notes = notes.strip() if notes and notes.strip() else None

        order = self.store.update(order_ref, apply)
        logger.info(f"Notes updated on order {order.order_number}")
        return order

    def summary(self) -> OrderSummary:
        """Order counts, revenue from paid non-cancelled orders, and average order value."""
        orders = self.store.list_orders()
        result = OrderSummary(
            order_count=len(orders),
            by_status={s.value: 0 for s in OrderStatus},
            by_payment_status={s.value: 0 for s in PaymentStatus},
        )

        paid_count = 0
        revenue = Decimal("0")
        for order in orders:
            result.by_status[order.status.value] += 1
            result.by_payment_status[order.payment_status.value] += 1
            if order.payment_status == PaymentStatus.PAID and order.status != OrderStatus.CANCELLED:
                paid_count += 1
                revenue += order.totals.total

        result.revenue = to_money(revenue)
        if paid_count:
            result.average_order_value = to_money(revenue / paid_count)
        return result
