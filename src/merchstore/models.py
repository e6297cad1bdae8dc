"""Data models for merchstore."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
import uuid

CENT = Decimal("0.01")

PAYMENT_IN_FLIGHT_TIMEOUT = timedelta(minutes=2)


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _age(timestamp: str) -> timedelta:
    """Time elapsed since a timestamp produced by _utc_now()."""
    then = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    return datetime.now(timezone.utc) - then


def _generate_id() -> str:
    """Generate a new record ID."""
    return str(uuid.uuid4())


def to_money(value: Any) -> Decimal:
    """Convert a number or numeric string to a Decimal rounded to cents."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _money_str(value: Decimal) -> str:
    return str(to_money(value))


class OrderStatus(str, Enum):
    """Fulfillment status of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment status tracked alongside the order status."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class CheckoutStep(str, Enum):
    """Stages of the checkout flow, in order."""

    CART = "cart"
    SHIPPING = "shipping"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


STEP_ORDER: list[CheckoutStep] = [
    CheckoutStep.CART,
    CheckoutStep.SHIPPING,
    CheckoutStep.PAYMENT,
    CheckoutStep.CONFIRMATION,
]


class PaymentOutcomeStatus(str, Enum):
    """Non-failure outcomes of a payment confirmation."""

    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"


# Catalog


@dataclass
class ProductVariant:
    """A purchasable variant of a product (size, color, format)."""

    id: str
    name: str
    sku: str
    price_adjustment: Decimal = Decimal("0.00")
    is_active: bool = True
    attributes: dict[str, Any] = field(default_factory=dict)
    # None means stock isn't tracked for this variant
    stock_quantity: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "price_adjustment": _money_str(self.price_adjustment),
            "is_active": self.is_active,
            "attributes": self.attributes,
        }
        if self.stock_quantity is not None:
            result["stock_quantity"] = self.stock_quantity
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProductVariant":
        return cls(
            id=data["id"],
            name=data["name"],
            sku=data.get("sku", ""),
            price_adjustment=to_money(data.get("price_adjustment", "0")),
            is_active=data.get("is_active", True),
            attributes=data.get("attributes", {}),
            stock_quantity=data.get("stock_quantity"),
        )


@dataclass
class Product:
    """A catalog product with its variants."""

    id: str
    name: str
    slug: str
    base_price: Decimal
    description: str | None = None
    is_active: bool = True
    variants: list[ProductVariant] = field(default_factory=list)
    stock_quantity: int | None = None

    def unit_price(self, variant: ProductVariant | None) -> Decimal:
        """Price of one unit: base price plus the variant's adjustment."""
        if variant is None:
            return to_money(self.base_price)
        return to_money(self.base_price + variant.price_adjustment)

    def available_stock(self, variant: ProductVariant | None) -> int | None:
        """Units on hand for the product or variant, None if untracked."""
        if variant is None:
            return self.stock_quantity
        return variant.stock_quantity

    def find_variant(self, variant_id: str) -> ProductVariant | None:
        for v in self.variants:
            if v.id == variant_id:
                return v
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "base_price": _money_str(self.base_price),
            "is_active": self.is_active,
            "variants": [v.to_dict() for v in self.variants],
        }
        if self.description is not None:
            result["description"] = self.description
        if self.stock_quantity is not None:
            result["stock_quantity"] = self.stock_quantity
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            name=data["name"],
            slug=data.get("slug", data["id"]),
            base_price=to_money(data["base_price"]),
            description=data.get("description"),
            is_active=data.get("is_active", True),
            variants=[ProductVariant.from_dict(v) for v in data.get("variants", [])],
            stock_quantity=data.get("stock_quantity"),
        )


# Cart


@dataclass
class Address:
    """A postal address used for shipping or billing."""

    first_name: str
    last_name: str
    address1: str
    city: str
    state: str
    postal_code: str
    country: str
    address2: str | None = None
    company: str | None = None
    phone: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "address1": self.address1,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
        }
        for key in ("address2", "company", "phone"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Address":
        return cls(
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            address1=data.get("address1", ""),
            city=data.get("city", ""),
            state=data.get("state", ""),
            postal_code=data.get("postal_code", ""),
            country=data.get("country", ""),
            address2=data.get("address2"),
            company=data.get("company"),
            phone=data.get("phone"),
        )


@dataclass
class CartLineItem:
    """A line in the cart. The unit price is snapshotted when the line is added."""

    id: str
    product_id: str
    variant_id: str | None
    product_name: str
    variant_name: str | None
    sku: str | None
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price": _money_str(self.unit_price),
            "line_total": _money_str(self.line_total),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CartLineItem":
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            variant_id=data.get("variant_id"),
            product_name=data.get("product_name", ""),
            variant_name=data.get("variant_name"),
            sku=data.get("sku"),
            quantity=data["quantity"],
            unit_price=to_money(data["unit_price"]),
        )

    @classmethod
    def create(
        cls,
        product: Product,
        variant: ProductVariant | None,
        quantity: int,
    ) -> "CartLineItem":
        """Create a new line with a generated ID and the current catalog price."""
        return cls(
            id=_generate_id(),
            product_id=product.id,
            variant_id=variant.id if variant else None,
            product_name=product.name,
            variant_name=variant.name if variant else None,
            sku=variant.sku if variant else None,
            quantity=quantity,
            unit_price=product.unit_price(variant),
        )


@dataclass
class Cart:
    """An ordered collection of line items plus an optional promo code."""

    items: list[CartLineItem] = field(default_factory=list)
    promo_code: str | None = None
    updated_at: str = field(default_factory=_utc_now)

    @property
    def subtotal(self) -> Decimal:
        return to_money(sum((line.line_total for line in self.items), Decimal("0")))

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def find_line(self, line_id: str) -> CartLineItem | None:
        for line in self.items:
            if line.id == line_id:
                return line
        return None

    def find_matching(self, product_id: str, variant_id: str | None) -> CartLineItem | None:
        for line in self.items:
            if line.product_id == product_id and line.variant_id == variant_id:
                return line
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [line.to_dict() for line in self.items],
            "promo_code": self.promo_code,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Cart":
        return cls(
            items=[CartLineItem.from_dict(i) for i in data.get("items", [])],
            promo_code=data.get("promo_code"),
            updated_at=data.get("updated_at", ""),
        )


@dataclass(frozen=True)
class ShippingMethod:
    """A named shipping option with its cost and delivery estimate."""

    id: str
    name: str
    cost: Decimal
    estimate: str
    estimated_days: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cost": _money_str(self.cost),
            "estimate": self.estimate,
            "estimated_days": self.estimated_days,
        }


@dataclass(frozen=True)
class OrderTotals:
    """Derived price breakdown: total = subtotal + shipping + tax - discount."""

    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    promo_code: str | None = None
    promo_description: str | None = None
    promo_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "subtotal": _money_str(self.subtotal),
            "shipping": _money_str(self.shipping),
            "tax": _money_str(self.tax),
            "discount": _money_str(self.discount),
            "total": _money_str(self.total),
        }
        if self.promo_code is not None:
            result["promo_code"] = self.promo_code
        if self.promo_description is not None:
            result["promo_description"] = self.promo_description
        if self.promo_error is not None:
            result["promo_error"] = self.promo_error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderTotals":
        return cls(
            subtotal=to_money(data["subtotal"]),
            shipping=to_money(data["shipping"]),
            tax=to_money(data["tax"]),
            discount=to_money(data["discount"]),
            total=to_money(data["total"]),
            promo_code=data.get("promo_code"),
            promo_description=data.get("promo_description"),
            promo_error=data.get("promo_error"),
        )


# Checkout


@dataclass
class PaymentConfirmation:
    """A non-failed payment outcome reported by the gateway."""

    status: PaymentOutcomeStatus
    transaction_id: str
    next_action_url: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentOutcomeStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": self.status.value,
            "transaction_id": self.transaction_id,
        }
        if self.next_action_url is not None:
            result["next_action_url"] = self.next_action_url
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentConfirmation":
        return cls(
            status=PaymentOutcomeStatus(data["status"]),
            transaction_id=data["transaction_id"],
            next_action_url=data.get("next_action_url"),
        )


@dataclass
class CheckoutState:
    """
    Progress of a shopper through the checkout steps.

    ``payment_totals`` is the price breakdown the payment intent was created
    for; the order is built from it so the stored total matches the charge.
    ``payment_started_at`` marks a submission in flight. A marker older than
    PAYMENT_IN_FLIGHT_TIMEOUT belongs to a worker that never finished and no
    longer blocks the session.
    """

    current_step: CheckoutStep = CheckoutStep.CART
    completed_steps: list[CheckoutStep] = field(default_factory=list)
    customer_email: str | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    shipping_method_id: str | None = None
    notes: str | None = None
    payment_intent_id: str | None = None
    client_secret: str | None = None
    payment_totals: OrderTotals | None = None
    payment: PaymentConfirmation | None = None
    payment_started_at: str | None = None
    order_number: str | None = None

    @property
    def payment_in_flight(self) -> bool:
        if not self.payment_started_at:
            return False
        return _age(self.payment_started_at) < PAYMENT_IN_FLIGHT_TIMEOUT

    @property
    def has_stale_payment(self) -> bool:
        return bool(self.payment_started_at) and not self.payment_in_flight

    def clear_payment(self) -> None:
        """Forget the intent, its amount and any outcome."""
        self.payment_intent_id = None
        self.client_secret = None
        self.payment_totals = None
        self.payment = None
        self.payment_started_at = None

    def mark_completed(self, step: CheckoutStep) -> None:
        if step not in self.completed_steps:
            self.completed_steps.append(step)
            self.completed_steps.sort(key=STEP_ORDER.index)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_step": self.current_step.value,
            "completed_steps": [s.value for s in self.completed_steps],
            "customer_email": self.customer_email,
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
            "billing_address": self.billing_address.to_dict() if self.billing_address else None,
            "shipping_method_id": self.shipping_method_id,
            "notes": self.notes,
            "payment_intent_id": self.payment_intent_id,
            "client_secret": self.client_secret,
            "payment_totals": self.payment_totals.to_dict() if self.payment_totals else None,
            "payment": self.payment.to_dict() if self.payment else None,
            "payment_started_at": self.payment_started_at,
            "payment_in_flight": self.payment_in_flight,
            "order_number": self.order_number,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckoutState":
        shipping = data.get("shipping_address")
        billing = data.get("billing_address")
        payment = data.get("payment")
        payment_totals = data.get("payment_totals")
        return cls(
            current_step=CheckoutStep(data.get("current_step", "cart")),
            completed_steps=[CheckoutStep(s) for s in data.get("completed_steps", [])],
            customer_email=data.get("customer_email"),
            shipping_address=Address.from_dict(shipping) if shipping else None,
            billing_address=Address.from_dict(billing) if billing else None,
            shipping_method_id=data.get("shipping_method_id"),
            notes=data.get("notes"),
            payment_intent_id=data.get("payment_intent_id"),
            client_secret=data.get("client_secret"),
            payment_totals=OrderTotals.from_dict(payment_totals) if payment_totals else None,
            payment=PaymentConfirmation.from_dict(payment) if payment else None,
            payment_started_at=data.get("payment_started_at"),
            order_number=data.get("order_number"),
        )


@dataclass
class ShopperSession:
    """Durable per-visitor state: the cart and checkout progress."""

    session_id: str
    cart: Cart = field(default_factory=Cart)
    checkout: CheckoutState = field(default_factory=CheckoutState)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "cart": self.cart.to_dict(),
            "checkout": self.checkout.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShopperSession":
        return cls(
            session_id=data["session_id"],
            cart=Cart.from_dict(data.get("cart", {})),
            checkout=CheckoutState.from_dict(data.get("checkout", {})),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


# Orders


@dataclass
class OrderItem:
    """Snapshot of a purchased line, independent of later catalog changes."""

    product_id: str
    variant_id: str | None
    product_name: str
    variant_name: str | None
    sku: str | None
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price": _money_str(self.unit_price),
            "line_total": _money_str(self.line_total),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        return cls(
            product_id=data["product_id"],
            variant_id=data.get("variant_id"),
            product_name=data.get("product_name", ""),
            variant_name=data.get("variant_name"),
            sku=data.get("sku"),
            quantity=data["quantity"],
            unit_price=to_money(data["unit_price"]),
            line_total=to_money(data["line_total"]),
        )

    @classmethod
    def from_cart_line(cls, line: CartLineItem) -> "OrderItem":
        return cls(
            product_id=line.product_id,
            variant_id=line.variant_id,
            product_name=line.product_name,
            variant_name=line.variant_name,
            sku=line.sku,
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_total=line.line_total,
        )


@dataclass
class TimelineEntry:
    """One recorded status change of an order."""

    status: OrderStatus
    timestamp: str
    note: str | None = None
    actor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.note is not None:
            result["note"] = self.note
        if self.actor is not None:
            result["actor"] = self.actor
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimelineEntry":
        return cls(
            status=OrderStatus(data["status"]),
            timestamp=data["timestamp"],
            note=data.get("note"),
            actor=data.get("actor"),
        )


@dataclass
class Order:
    """The durable record of a placed order."""

    id: str
    order_number: str
    customer_email: str
    customer_name: str
    items: list[OrderItem]
    shipping_address: Address
    billing_address: Address
    totals: OrderTotals
    shipping_method_id: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_reference: str | None = None
    currency: str = "USD"
    notes: str | None = None
    timeline: list[TimelineEntry] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "items": [i.to_dict() for i in self.items],
            "shipping_address": self.shipping_address.to_dict(),
            "billing_address": self.billing_address.to_dict(),
            "totals": self.totals.to_dict(),
            "shipping_method_id": self.shipping_method_id,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "payment_reference": self.payment_reference,
            "currency": self.currency,
            "notes": self.notes,
            "timeline": [t.to_dict() for t in self.timeline],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            order_number=data["order_number"],
            customer_email=data["customer_email"],
            customer_name=data.get("customer_name", ""),
            items=[OrderItem.from_dict(i) for i in data.get("items", [])],
            shipping_address=Address.from_dict(data["shipping_address"]),
            billing_address=Address.from_dict(data["billing_address"]),
            totals=OrderTotals.from_dict(data["totals"]),
            shipping_method_id=data.get("shipping_method_id"),
            status=OrderStatus(data.get("status", "pending")),
            payment_status=PaymentStatus(data.get("payment_status", "pending")),
            payment_reference=data.get("payment_reference"),
            currency=data.get("currency", "USD"),
            notes=data.get("notes"),
            timeline=[TimelineEntry.from_dict(t) for t in data.get("timeline", [])],
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )
