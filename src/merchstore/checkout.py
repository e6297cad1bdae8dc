"""Checkout step navigation and the checkout flow for one shopper session."""

import logging
import re
from typing import Any

from .catalog import CatalogStore
from .config import PricingConfig
from .errors import (
    PaymentError,
    PaymentInProgressError,
    StepIncomplete,
    StepNotAccessible,
    ValidationError,
)
from .lifecycle import OrderLifecycle
from .models import (
    STEP_ORDER,
    Address,
    Cart,
    CheckoutState,
    CheckoutStep,
    Order,
    OrderItem,
    OrderTotals,
    PaymentStatus,
    ShopperSession,
    _utc_now,
)
from .payments import PaymentAdapter, PaymentIntentHandle
from .pricing import calculate_totals, get_shipping_method
from .session_store import SessionStore
from .utils import is_valid_email

logger = logging.getLogger(__name__)

_POSTAL_CODE_PATTERNS = {
    "US": re.compile(r"^\d{5}(-\d{4})?$"),
    "CA": re.compile(r"^[A-Za-z]\d[A-Za-z] ?\d[A-Za-z]\d$"),
    "GB": re.compile(r"^[A-Za-z]{1,2}\d[A-Za-z\d]? ?\d[A-Za-z]{2}$"),
}

_REQUIRED_ADDRESS_FIELDS = ("first_name", "last_name", "address1", "city", "state", "postal_code", "country")


def validate_address(address: Address, field_prefix: str = "shipping_address") -> None:
    """
    Check an address for required fields and a plausible postal code.

    Postal codes are checked for US, CA and GB; other countries accept any
    non-empty value.

    Raises:
        ValidationError: On the first problem found.
    """
    for name in _REQUIRED_ADDRESS_FIELDS:
        value = getattr(address, name)
        if not value or not str(value).strip():
            raise ValidationError(f"{name.replace('_', ' ').capitalize()} is required", field=f"{field_prefix}.{name}")

    country = address.country.strip().upper()
    if len(country) != 2:
        raise ValidationError("Country must be a two-letter code", field=f"{field_prefix}.country")

    pattern = _POSTAL_CODE_PATTERNS.get(country)
    if pattern is not None and not pattern.match(address.postal_code.strip()):
        raise ValidationError(
            f"Invalid postal code for {country}: {address.postal_code}",
            field=f"{field_prefix}.postal_code",
        )


def parse_step(value: str | CheckoutStep) -> CheckoutStep:
    if isinstance(value, CheckoutStep):
        return value
    try:
        return CheckoutStep(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown checkout step: {value}", field="step")


def _next_step(step: CheckoutStep) -> CheckoutStep | None:
    idx = STEP_ORDER.index(step)
    if idx + 1 < len(STEP_ORDER):
        return STEP_ORDER[idx + 1]
    return None


class CheckoutStepController:
    """
    Navigation rules over a CheckoutState.

    Steps move forward one at a time. Going back is allowed to any completed
    step. Confirmation is terminal; only restart() leaves it.
    """

    def __init__(self, state: CheckoutState):
        self.state = state

    @property
    def is_complete(self) -> bool:
        return self.state.current_step == CheckoutStep.CONFIRMATION

    def missing_data(self, step: CheckoutStep, cart: Cart) -> list[str]:
        """Names of the data a step still needs before it can be completed."""
        state = self.state
        missing: list[str] = []
        if step == CheckoutStep.CART:
            if cart.is_empty:
                missing.append("items")
        elif step == CheckoutStep.SHIPPING:
            if not state.customer_email:
                missing.append("customer_email")
            if state.shipping_address is None:
                missing.append("shipping_address")
            else:
                try:
                    validate_address(state.shipping_address)
                except ValidationError:
                    missing.append("shipping_address")
            if not state.shipping_method_id:
                missing.append("shipping_method")
        elif step == CheckoutStep.PAYMENT:
            if state.payment is None or not state.payment.succeeded:
                missing.append("payment")
        return missing

    def can_access(self, step: CheckoutStep) -> bool:
        state = self.state
        if self.is_complete:
            return step == CheckoutStep.CONFIRMATION
        if step == state.current_step or step in state.completed_steps:
            return True
        return (
            step == _next_step(state.current_step)
            and state.current_step in state.completed_steps
            and step != CheckoutStep.CONFIRMATION
        )

    def advance(self, cart: Cart) -> CheckoutStep:
        """
        Complete the current step and move to the next one.

        Raises:
            StepNotAccessible: If checkout is already at confirmation.
            StepIncomplete: If the current step's data is missing.
        """
        current = self.state.current_step
        following = _next_step(current)
        if following is None:
            raise StepNotAccessible(current.value, current.value)

        missing = self.missing_data(current, cart)
        if missing:
            raise StepIncomplete(current.value, missing)

        self.state.mark_completed(current)
        self.state.current_step = following
        return following

    def go_to(self, step: CheckoutStep) -> CheckoutStep:
        """
        Navigate to a completed step or the next reachable one.

        Raises:
            StepNotAccessible: If the step can't be reached from here.
        """
        if not self.can_access(step):
            raise StepNotAccessible(step.value, self.state.current_step.value)
        self.state.current_step = step
        return step

    def restart(self) -> None:
        """Reset to the cart step. Contact and address details are kept."""
        state = self.state
        state.current_step = CheckoutStep.CART
        state.completed_steps = []
        state.clear_payment()
        state.order_number = None

    def invalidate_from(self, step: CheckoutStep) -> None:
        """Forget completion of ``step`` and every later step."""
        cutoff = STEP_ORDER.index(step)
        self.state.completed_steps = [s for s in self.state.completed_steps if STEP_ORDER.index(s) < cutoff]


class CheckoutService:
    """
    Checkout for one shopper session, from shipping details to a placed order.

    Every operation loads the session, applies the change and saves it.
    Payment submission and order placement hold the session lock so a session
    never has two payments in flight or places the same payment twice.
    """

    def __init__(
        self,
        sessions: SessionStore,
        session_id: str,
        pricing: PricingConfig,
        adapter: PaymentAdapter,
        lifecycle: OrderLifecycle,
        catalog: CatalogStore,
        currency: str = "USD",
    ):
        self.sessions = sessions
        self.session_id = session_id
        self.pricing = pricing
        self.adapter = adapter
        self.lifecycle = lifecycle
        self.catalog = catalog
        self.currency = currency

    def _load(self) -> ShopperSession:
        return self.sessions.load(self.session_id)

    def _save(self, session: ShopperSession) -> None:
        self.sessions.save(session)

    @staticmethod
    def _require_step(session: ShopperSession, step: CheckoutStep) -> None:
        current = session.checkout.current_step
        if current != step:
            raise StepNotAccessible(step.value, current.value)

    def _guard_payment(self, state: CheckoutState) -> None:
        if state.payment_in_flight:
            raise PaymentInProgressError(self.session_id)
        if state.payment is not None and state.payment.succeeded and state.current_step != CheckoutStep.CONFIRMATION:
            raise ValidationError("Payment has already succeeded; place the order to finish checkout")

    def _reconcile_stale_payment(self, state: CheckoutState) -> None:
        """Settle a submission whose worker never recorded the outcome."""
        logger.warning(
            f"Payment for session {self.session_id} started at {state.payment_started_at} "
            "never finished; asking the gateway"
        )
        state.payment_started_at = None
        if not state.payment_intent_id:
            return
        try:
            state.payment = self.adapter.refresh(state.payment_intent_id)
        except PaymentError:
            state.payment = None

    def _totals_for(self, session: ShopperSession) -> OrderTotals:
        return calculate_totals(
            session.cart.items,
            session.checkout.shipping_method_id,
            session.cart.promo_code,
            self.pricing,
        )

    def state(self) -> CheckoutState:
        return self._load().checkout

    def totals(self) -> OrderTotals:
        return self._totals_for(self._load())

    def advance(self) -> CheckoutState:
        """
        Complete the current step. At the payment step this places the order.

        Raises:
            StepIncomplete, StepNotAccessible: As for CheckoutStepController.advance.
        """
        session = self._load()
        if session.checkout.current_step == CheckoutStep.PAYMENT:
            self.place_order()
            return self.state()

        CheckoutStepController(session.checkout).advance(session.cart)
        self._save(session)
        return session.checkout

    def go_to(self, step: str | CheckoutStep) -> CheckoutState:
        target = parse_step(step)
        session = self._load()
        if session.checkout.payment_in_flight:
            raise PaymentInProgressError(self.session_id)
        CheckoutStepController(session.checkout).go_to(target)
        self._save(session)
        return session.checkout

    def restart(self) -> CheckoutState:
        """
        Start checkout over from the cart step.

        Raises:
            PaymentInProgressError: If a payment is being processed.
            ValidationError: If a payment succeeded but the order isn't placed yet.
        """
        session = self._load()
        if session.checkout.has_stale_payment:
            self._reconcile_stale_payment(session.checkout)
            self._save(session)
        self._guard_payment(session.checkout)
        CheckoutStepController(session.checkout).restart()
        self._save(session)
        return session.checkout

    def set_shipping(
        self,
        email: str,
        address: Address,
        method_id: str,
        billing: Address | None = None,
        notes: str | None = None,
    ) -> CheckoutState:
        """
        Record contact details, addresses and the shipping method.

        Changing shipping details discards any payment intent, since the
        amount to charge may have changed.

        Raises:
            StepNotAccessible: If checkout isn't at the shipping step.
            ValidationError: If the email, an address or the method is invalid.
        """
        email = (email or "").strip()
        if not is_valid_email(email):
            raise ValidationError("Please enter a valid email address", field="customer_email")
        validate_address(address)
        if billing is not None:
            validate_address(billing, field_prefix="billing_address")
        get_shipping_method(method_id, self.pricing)

        session = self._load()
        state = session.checkout
        self._guard_payment(state)
        self._require_step(session, CheckoutStep.SHIPPING)

        state.customer_email = email
        state.shipping_address = address
        state.billing_address = billing
        state.shipping_method_id = method_id
        state.notes = notes.strip() if notes and notes.strip() else None
        state.clear_payment()
        CheckoutStepController(state).invalidate_from(CheckoutStep.SHIPPING)

        self._save(session)
        return state

    def create_payment(self) -> PaymentIntentHandle:
        """
        Get a client secret for charging the current total.

        An existing intent for this checkout is reused along with the totals
        it was created for.

        Raises:
            StepNotAccessible: If checkout isn't at the payment step.
            InsufficientStockError: If a cart line is no longer in stock.
            PaymentError: If the gateway refuses or can't be reached.
        """
        session = self._load()
        state = session.checkout
        self._require_step(session, CheckoutStep.PAYMENT)
        self._guard_payment(state)

        if state.payment_intent_id and state.client_secret and state.payment_totals is not None:
            return PaymentIntentHandle(
                intent_id=state.payment_intent_id,
                client_secret=state.client_secret,
                amount=state.payment_totals.total,
                currency=self.currency,
            )

        self.catalog.check_lines(session.cart.items)
        totals = self._totals_for(session)
        handle = self.adapter.create_payment(
            totals.total,
            self.currency,
            {"session_id": self.session_id, "customer_email": state.customer_email or ""},
        )
        state.payment_intent_id = handle.intent_id
        state.client_secret = handle.client_secret
        state.payment_totals = totals
        self._save(session)
        logger.info(f"Created payment intent {handle.intent_id} for {totals.total} {self.currency}")
        return handle

    def submit_payment(self, billing_details: dict[str, Any]) -> CheckoutState:
        """
        Confirm the payment with the gateway.

        Only one submission per session may be in flight. A failed payment
        leaves the cart intact and creates no order. A submission left
        unfinished by a dead worker is checked with the gateway before a new
        one starts.

        Raises:
            PaymentInProgressError: If another submission is in flight.
            ValidationError: If there's no payment intent or billing details
                are invalid.
            InsufficientStockError: If a cart line is no longer in stock.
            PaymentError: If the gateway reports a hard failure.
        """
        with self.sessions.lock(self.session_id):
            session = self._load()
            state = session.checkout
            self._require_step(session, CheckoutStep.PAYMENT)
            if state.payment_in_flight:
                raise PaymentInProgressError(self.session_id)
            if state.has_stale_payment:
                self._reconcile_stale_payment(state)
                self._save(session)
            if state.payment is not None and state.payment.succeeded:
                return state
            if not state.client_secret:
                raise ValidationError("No payment has been started for this checkout", field="client_secret")
            self.catalog.check_lines(session.cart.items)
            state.payment_started_at = _utc_now()
            self._save(session)

        try:
            confirmation = self.adapter.submit_payment(state.client_secret, billing_details)
        except PaymentError as e:
            state.payment = None
            logger.info(f"Payment for session {self.session_id} failed: {e.category}")
            raise
        else:
            state.payment = confirmation
        finally:
            with self.sessions.lock(self.session_id):
                state.payment_started_at = None
                self._save(session)

        return state

    def refresh_payment(self) -> CheckoutState:
        """
        Re-poll a payment that required customer action or whose submission
        never finished.

        Raises:
            PaymentInProgressError: If a submission is still in flight.
            ValidationError: If there's no pending payment to refresh.
            PaymentError: If the gateway now reports a failure.
        """
        session = self._load()
        state = session.checkout
        self._require_step(session, CheckoutStep.PAYMENT)
        if state.payment_in_flight:
            raise PaymentInProgressError(self.session_id)
        if state.payment is not None and state.payment.succeeded:
            return state
        if not state.payment_intent_id:
            raise ValidationError("No payment has been started for this checkout", field="payment_intent_id")

        state.payment_started_at = None
        try:
            state.payment = self.adapter.refresh(state.payment_intent_id)
        except PaymentError:
            state.payment = None
            self._save(session)
            raise
        self._save(session)
        return state

    def place_order(self) -> Order:
        """
        Turn a paid checkout into an order.

        Creates the order with the totals the payment was made for, takes the
        items out of stock, records the payment as paid (which confirms the
        order), clears the cart and moves checkout to confirmation. Calling it
        again after confirmation returns the same order.

        Raises:
            StepNotAccessible: If checkout isn't at the payment step.
            StepIncomplete: If the payment hasn't succeeded or shipping data is missing.
            InsufficientStockError: If stock ran out after the payment; no
                order is created.
        """
        with self.sessions.lock(self.session_id):
            session = self._load()
            state = session.checkout
            if state.current_step == CheckoutStep.CONFIRMATION and state.order_number:
                return self.lifecycle.store.get(state.order_number)
            self._require_step(session, CheckoutStep.PAYMENT)

            controller = CheckoutStepController(state)
            for step in (CheckoutStep.CART, CheckoutStep.SHIPPING, CheckoutStep.PAYMENT):
                missing = controller.missing_data(step, session.cart)
                if missing:
                    raise StepIncomplete(step.value, missing)

            reference = state.payment.transaction_id
            order = self.lifecycle.store.find_by_payment_reference(reference)
            if order is None:
                totals = state.payment_totals or self._totals_for(session)
                current = self._totals_for(session)
                if current.total != totals.total:
                    logger.warning(
                        f"Session {self.session_id} totals moved from {totals.total} to {current.total} "
                        "after payment; keeping the charged amount"
                    )
                self.catalog.reserve_stock(session.cart.items)
                order = self.lifecycle.create_order(
                    customer_email=state.customer_email,
                    items=[OrderItem.from_cart_line(line) for line in session.cart.items],
                    shipping_address=state.shipping_address,
                    billing_address=state.billing_address or state.shipping_address,
                    totals=totals,
                    shipping_method_id=state.shipping_method_id,
                    currency=self.currency,
                    notes=state.notes,
                    payment_reference=reference,
                )
            if order.payment_status != PaymentStatus.PAID:
                order = self.lifecycle.record_payment(order.id, PaymentStatus.PAID, reference)

            controller.advance(session.cart)
            state.order_number = order.order_number
            session.cart = Cart()
            self._save(session)

        logger.info(f"Session {self.session_id} placed order {order.order_number}")
        return order
