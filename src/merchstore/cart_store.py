"""Cart operations for a single shopper session."""

import logging

from .catalog import CatalogStore
from .checkout import CheckoutStepController
from .config import PricingConfig
from .errors import (
    CartLineNotFoundError,
    PaymentInProgressError,
    ValidationError,
)
from .models import Cart, CartLineItem, CheckoutStep, OrderTotals, ShopperSession, _utc_now
from .pricing import calculate_totals, normalize_promo_code, resolve_discount, shipping_cost
from .session_store import SessionStore

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 50


def _check_quantity(quantity: int, allow_zero: bool) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Quantity must be a whole number", field="quantity")
    if quantity < 0 or (quantity == 0 and not allow_zero):
        raise ValidationError("Quantity must be at least 1", field="quantity")
    if quantity > MAX_LINE_QUANTITY:
        raise ValidationError(f"Maximum quantity is {MAX_LINE_QUANTITY}", field="quantity")


class CartStore:
    """
    Cart mutations for one session.

    Every mutation loads the session, applies the change, persists it, and
    returns the resulting cart. Editing the cart after checkout has moved on
    sends checkout back to the cart step, since the reviewed contents changed.
    """

    def __init__(
        self,
        sessions: SessionStore,
        session_id: str,
        catalog: CatalogStore,
        pricing: PricingConfig,
    ):
        self.sessions = sessions
        self.session_id = session_id
        self.catalog = catalog
        self.pricing = pricing

    def _load(self) -> ShopperSession:
        return self.sessions.load(self.session_id)

    def _prepare_edit(self, session: ShopperSession) -> None:
        """Guard checkout state before the cart changes and rewind it if needed."""
        state = session.checkout
        if state.payment_in_flight:
            raise PaymentInProgressError(self.session_id)
        if (
            state.current_step != CheckoutStep.CONFIRMATION
            and state.payment is not None
            and state.payment.succeeded
        ):
            raise ValidationError(
                "Cart is locked: payment has succeeded, place the order to finish checkout"
            )
        if state.current_step != CheckoutStep.CART or state.completed_steps or state.payment_intent_id:
            CheckoutStepController(state).restart()

    def _commit(self, session: ShopperSession) -> Cart:
        session.cart.updated_at = _utc_now()
        self.sessions.save(session)
        return session.cart

    def get(self) -> Cart:
        return self._load().cart

    def totals(self) -> OrderTotals:
        """Recompute totals from the persisted cart and the selected shipping method."""
        session = self._load()
        return calculate_totals(
            session.cart.items,
            session.checkout.shipping_method_id,
            session.cart.promo_code,
            self.pricing,
        )

    def add_item(self, product_id: str, variant_id: str | None, quantity: int) -> Cart:
        """
        Add a product to the cart, merging with an existing line for the same variant.

        Raises:
            ValidationError: If quantity <= 0 or the line would exceed
                MAX_LINE_QUANTITY.
            InsufficientStockError: If the line would exceed available stock.
            ProductNotFoundError: If the product or variant is unknown or inactive.
        """
        _check_quantity(quantity, allow_zero=False)
        product, variant = self.catalog.get_variant(product_id, variant_id)

        session = self._load()
        existing = session.cart.find_matching(product.id, variant.id if variant else None)
        wanted = quantity + (existing.quantity if existing else 0)
        if wanted > MAX_LINE_QUANTITY:
            raise ValidationError(f"Maximum quantity is {MAX_LINE_QUANTITY}", field="quantity")
        self.catalog.check_stock(product.id, variant.id if variant else None, wanted)

        self._prepare_edit(session)
        if existing is not None:
            existing.quantity = wanted
        else:
            session.cart.items.append(CartLineItem.create(product, variant, quantity))

        logger.debug(f"Cart {self.session_id}: added {quantity} x {product.id}/{variant_id}")
        return self._commit(session)

    def update_quantity(self, line_id: str, quantity: int) -> Cart:
        """
        Set a line's quantity; zero removes the line.

        Raises:
            ValidationError: If quantity is negative or above MAX_LINE_QUANTITY.
            InsufficientStockError: If the quantity exceeds available stock.
            CartLineNotFoundError: If the line doesn't exist.
        """
        _check_quantity(quantity, allow_zero=True)

        session = self._load()
        line = session.cart.find_line(line_id)
        if line is None:
            raise CartLineNotFoundError(line_id)
        if quantity > 0:
            self.catalog.check_stock(line.product_id, line.variant_id, quantity)

        self._prepare_edit(session)
        if quantity == 0:
            session.cart.items.remove(line)
        else:
            line.quantity = quantity
        return self._commit(session)

    def remove_item(self, line_id: str) -> Cart:
        """
        Remove a line.

        Raises:
            CartLineNotFoundError: If the line doesn't exist.
        """
        session = self._load()
        line = session.cart.find_line(line_id)
        if line is None:
            raise CartLineNotFoundError(line_id)

        self._prepare_edit(session)
        session.cart.items.remove(line)
        return self._commit(session)

    def clear(self) -> Cart:
        """Empty the cart and drop any promo code."""
        session = self._load()
        self._prepare_edit(session)
        session.cart.items = []
        session.cart.promo_code = None
        return self._commit(session)

    def apply_promo(self, code: str) -> Cart:
        """
        Validate and attach a promo code.

        Raises:
            PromoInvalid: If the code can't be applied to the current cart.
                The cart is left unchanged.
        """
        if not code or not code.strip():
            raise ValidationError("Promo code is required", field="promo_code")

        session = self._load()
        subtotal = session.cart.subtotal
        shipping = shipping_cost(subtotal, session.checkout.shipping_method_id, self.pricing)
        resolve_discount(code, subtotal, shipping, self.pricing)

        self._prepare_edit(session)
        session.cart.promo_code = normalize_promo_code(code)
        return self._commit(session)

    def remove_promo(self) -> Cart:
        session = self._load()
        self._prepare_edit(session)
        session.cart.promo_code = None
        return self._commit(session)
