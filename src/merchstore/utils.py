"""Utility functions for merchstore."""

import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from .models import Order, to_money

ORDER_NUMBER_PREFIX = "PS"
_ORDER_NUMBER_RE = re.compile(r"^PS-\d{4}-\d{6,8}$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def generate_order_number(sequence: int, year: int | None = None) -> str:
    """
    Format an order number from a sequence value.

    Format: PS-YYYY-NNNNNN (sequence zero-padded to six digits).
    """
    if sequence < 1:
        raise ValueError("sequence must be positive")
    year = year or datetime.now(timezone.utc).year
    return f"{ORDER_NUMBER_PREFIX}-{year}-{sequence:06d}"


def is_valid_order_number(order_number: str) -> bool:
    return bool(_ORDER_NUMBER_RE.match(order_number))


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(_EMAIL_RE.match(email))


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer cents."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return to_money(Decimal(amount) / 100)


def format_price(amount: Decimal, currency: str = "USD") -> str:
    """Format an amount for display, e.g. '$32.40'."""
    value = to_money(amount)
    if currency.upper() == "USD":
        sign = "-" if value < 0 else ""
        return f"{sign}${abs(value):,.2f}"
    return f"{value:,.2f} {currency.upper()}"


def format_order(order: Order, verbose: bool = False) -> str:
    """
    Format an order for CLI display.

    Args:
        order: The order to format.
        verbose: If True, include line items and the status timeline.

    Returns:
        Formatted string representation.
    """
    lines = []
    lines.append(
        f"{order.order_number}  [{order.status.value}/{order.payment_status.value}]  "
        f"{format_price(order.totals.total, order.currency)}"
    )
    lines.append(f"  Customer: {order.customer_name} <{order.customer_email}>")
    lines.append(f"  Placed: {order.created_at}  Items: {order.item_count}")
    if order.notes:
        lines.append(f"  Notes: {order.notes}")

    if verbose:
        lines.append("  Items:")
        for item in order.items:
            variant = f" ({item.variant_name})" if item.variant_name else ""
            lines.append(
                f"    {item.quantity} x {item.product_name}{variant}  "
                f"{format_price(item.line_total, order.currency)}"
            )
        totals = order.totals
        lines.append(
            f"  Subtotal {format_price(totals.subtotal, order.currency)}  "
            f"Shipping {format_price(totals.shipping, order.currency)}  "
            f"Tax {format_price(totals.tax, order.currency)}  "
            f"Discount -{format_price(totals.discount, order.currency)}"
        )
        lines.append("  Timeline:")
        for entry in order.timeline:
            note = f" - {entry.note}" if entry.note else ""
            lines.append(f"    {entry.timestamp}  {entry.status.value}{note}")

    return "\n".join(lines)
