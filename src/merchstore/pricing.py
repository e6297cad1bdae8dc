"""Order totals calculation for merchstore."""

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from .config import FixedAmountPromo, FreeShippingPromo, PercentOffPromo, PricingConfig
from .errors import PromoInvalid, ValidationError
from .models import CartLineItem, OrderTotals, ShippingMethod, to_money

ZERO = Decimal("0.00")


def normalize_promo_code(code: str) -> str:
    return code.strip().upper()


def list_shipping_methods(policy: PricingConfig) -> list[ShippingMethod]:
    """Return the configured shipping methods in display order."""
    return [
        ShippingMethod(
            id=m.id,
            name=m.name,
            cost=to_money(m.cost),
            estimate=m.estimate,
            estimated_days=m.estimated_days,
        )
        for m in policy.shipping_methods
    ]


def get_shipping_method(method_id: str, policy: PricingConfig) -> ShippingMethod:
    """
    Look up a shipping method by ID.

    Raises:
        ValidationError: If no such method is configured.
    """
    for method in list_shipping_methods(policy):
        if method.id == method_id:
            return method
    raise ValidationError(f"Unknown shipping method: {method_id}", field="shipping_method")


def shipping_cost(subtotal: Decimal, method_id: str | None, policy: PricingConfig) -> Decimal:
    """Shipping for the selected method, waived at or above the free-shipping threshold."""
    if method_id is None:
        return ZERO
    method = get_shipping_method(method_id, policy)
    threshold = policy.free_shipping_threshold
    if threshold is not None and subtotal >= threshold:
        return ZERO
    return method.cost


def resolve_discount(
    code: str,
    subtotal: Decimal,
    shipping: Decimal,
    policy: PricingConfig,
    now: datetime | None = None,
) -> tuple[Decimal, str]:
    """
    Validate a promo code and compute its discount.

    Returns:
        Tuple of (discount amount, rule description).

    Raises:
        PromoInvalid: If the code is unknown, expired, or the subtotal is
            below the rule's minimum.
    """
    normalized = normalize_promo_code(code)
    rule = policy.promo_codes.get(normalized)
    if rule is None:
        raise PromoInvalid(normalized, "unknown code")
    if rule.is_expired(now):
        raise PromoInvalid(normalized, "code has expired")
    if subtotal < rule.min_subtotal:
        raise PromoInvalid(
            normalized, f"minimum order of ${to_money(rule.min_subtotal)} required"
        )

    if isinstance(rule, PercentOffPromo):
        amount = subtotal * rule.percent / Decimal(100)
    elif isinstance(rule, FixedAmountPromo):
        amount = min(rule.amount, subtotal)
    elif isinstance(rule, FreeShippingPromo):
        amount = shipping
    else:
        raise PromoInvalid(normalized, f"unsupported rule kind {rule.kind}")

    return to_money(amount), rule.description


def calculate_totals(
    lines: Iterable[CartLineItem],
    shipping_method_id: str | None,
    promo_code: str | None,
    policy: PricingConfig,
    now: datetime | None = None,
) -> OrderTotals:
    """
    Compute subtotal, shipping, tax, discount and total for a cart.

    Pure and idempotent: the same inputs always produce the same totals. An
    invalid promo code does not raise here; the discount is zero and the
    reason is reported in ``promo_error``.
    """
    lines = list(lines)
    subtotal = to_money(sum((line.line_total for line in lines), ZERO))
    shipping = shipping_cost(subtotal, shipping_method_id, policy) if lines else ZERO
    tax = to_money((subtotal + shipping) * policy.tax_rate)

    discount = ZERO
    description = None
    error = None
    normalized = None
    if promo_code:
        normalized = normalize_promo_code(promo_code)
        try:
            discount, description = resolve_discount(normalized, subtotal, shipping, policy, now)
        except PromoInvalid as e:
            error = e.reason

    # Total never goes negative
    discount = min(discount, subtotal + shipping + tax)
    total = to_money(subtotal + shipping + tax - discount)

    return OrderTotals(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        discount=discount,
        total=total,
        promo_code=normalized,
        promo_description=description,
        promo_error=error,
    )
