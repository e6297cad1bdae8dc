"""FastAPI REST API for the merch store: catalog, cart, checkout, orders and admin."""

import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .admin import MAX_PAGE_SIZE, AdminOrderConsole
from .cart_store import CartStore
from .catalog import CatalogStore
from .checkout import CheckoutService, CheckoutStepController
from .config import Settings, load_settings
from .errors import (
    CartLineNotFoundError,
    ConfigError,
    InsufficientStockError,
    InvalidSchemaVersionError,
    InvalidTransition,
    MerchStoreError,
    NotAuthorizedError,
    OrderNotFoundError,
    PaymentError,
    PaymentInProgressError,
    ProductNotFoundError,
    PromoInvalid,
    StepIncomplete,
    StepNotAccessible,
    ValidationError,
    WebhookError,
)
from .lifecycle import OrderLifecycle
from .models import STEP_ORDER, Address, Cart, CheckoutState, Order, OrderTotals, Product
from .order_store import OrderStore
from .payments import PaymentAdapter, PaymentGateway, create_gateway
from .pricing import list_shipping_methods
from .session_store import SessionStore, validate_session_id

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class AddressSchema(BaseModel):
    first_name: str = ""
    last_name: str = ""
    address1: str = ""
    address2: Optional[str] = None
    company: Optional[str] = None
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "US"
    phone: Optional[str] = None

    def to_address(self) -> Address:
        return Address(**self.model_dump())


class ProductVariantSchema(BaseModel):
    id: str
    name: str
    sku: str
    price: str
    attributes: dict[str, Any] = {}
    in_stock: bool = True


class ProductSchema(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    base_price: str
    variants: list[ProductVariantSchema] = []


class ProductListResponse(BaseModel):
    products: list[ProductSchema]
    count: int


class ShippingMethodSchema(BaseModel):
    id: str
    name: str
    cost: str
    estimate: str
    estimated_days: int


class ShippingMethodListResponse(BaseModel):
    methods: list[ShippingMethodSchema]
    free_shipping_threshold: Optional[str] = None


class TotalsSchema(BaseModel):
    subtotal: str
    shipping: str
    tax: str
    discount: str
    total: str
    promo_code: Optional[str] = None
    promo_description: Optional[str] = None
    promo_error: Optional[str] = None


class CartLineSchema(BaseModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    unit_price: str
    line_total: str


class CartResponse(BaseModel):
    items: list[CartLineSchema]
    item_count: int
    promo_code: Optional[str] = None
    totals: TotalsSchema
    updated_at: str = ""


class AddItemRequest(BaseModel):
    """Request body for adding a product to the cart."""

    product_id: str
    variant_id: Optional[str] = None
    quantity: int = 1


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(..., description="New quantity; 0 removes the line")


class PromoRequest(BaseModel):
    code: str


class PaymentConfirmationSchema(BaseModel):
    status: str
    transaction_id: str
    next_action_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    current_step: str
    completed_steps: list[str]
    accessible_steps: list[str]
    customer_email: Optional[str] = None
    shipping_address: Optional[AddressSchema] = None
    billing_address: Optional[AddressSchema] = None
    shipping_method_id: Optional[str] = None
    notes: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment: Optional[PaymentConfirmationSchema] = None
    payment_in_flight: bool = False
    order_number: Optional[str] = None
    totals: TotalsSchema


class ShippingRequest(BaseModel):
    """Request body for the shipping step."""

    email: str
    shipping_address: AddressSchema
    shipping_method_id: str
    billing_address: Optional[AddressSchema] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class GoToRequest(BaseModel):
    step: str


class PaymentIntentResponse(BaseModel):
    intent_id: str
    client_secret: str
    amount: str
    currency: str
    publishable_key: str = ""


class PaymentRequest(BaseModel):
    """
    Request body for confirming a payment.

    Carries the gateway-issued payment method token plus optional billing
    contact details. Extra keys are passed through so raw card fields are
    rejected by the payment adapter instead of being silently dropped.
    """

    model_config = ConfigDict(extra="allow")

    payment_method: str = ""
    name: Optional[str] = None
    email: Optional[str] = None


class OrderItemSchema(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    sku: Optional[str] = None
    quantity: int
    unit_price: str
    line_total: str


class TimelineEntrySchema(BaseModel):
    status: str
    timestamp: str
    note: Optional[str] = None
    actor: Optional[str] = None


class OrderSchema(BaseModel):
    id: str
    order_number: str
    customer_email: str
    customer_name: str
    items: list[OrderItemSchema]
    shipping_address: AddressSchema
    billing_address: AddressSchema
    totals: TotalsSchema
    shipping_method_id: Optional[str] = None
    status: str
    payment_status: str
    payment_reference: Optional[str] = None
    currency: str
    notes: Optional[str] = None
    timeline: list[TimelineEntrySchema]
    created_at: str
    updated_at: str


class OrderTrackingSchema(BaseModel):
    """Customer-facing read-only view of an order."""

    order_number: str
    status: str
    payment_status: str
    items: list[OrderItemSchema]
    totals: TotalsSchema
    shipping_address: AddressSchema
    shipping_method_id: Optional[str] = None
    currency: str
    timeline: list[TimelineEntrySchema]
    created_at: str


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    total: int
    offset: int
    limit: int
    page: int
    page_size: int
    has_more: bool


class OrderSummaryResponse(BaseModel):
    order_count: int
    by_status: dict[str, int]
    by_payment_status: dict[str, int]
    revenue: str
    average_order_value: str


class StatusUpdateRequest(BaseModel):
    """Request body for an admin status change."""

    status: str
    note: Optional[str] = Field(default=None, max_length=1000)


class NotesUpdateRequest(BaseModel):
    notes: Optional[str] = None


class ErrorResponse(BaseModel):
    detail: str
    error_type: str


# --- Helper Functions ---


def product_to_schema(product: Product) -> ProductSchema:
    return ProductSchema(
        id=product.id,
        name=product.name,
        slug=product.slug,
        description=product.description,
        base_price=str(product.unit_price(None)),
        variants=[
            ProductVariantSchema(
                id=v.id,
                name=v.name,
                sku=v.sku,
                price=str(product.unit_price(v)),
                attributes=v.attributes,
                in_stock=v.stock_quantity is None or v.stock_quantity > 0,
            )
            for v in product.variants
            if v.is_active
        ],
    )


def cart_to_response(cart: Cart, totals: OrderTotals) -> CartResponse:
    return CartResponse(
        items=[CartLineSchema(**line.to_dict()) for line in cart.items],
        item_count=cart.item_count,
        promo_code=cart.promo_code,
        totals=TotalsSchema(**totals.to_dict()),
        updated_at=cart.updated_at,
    )


def checkout_to_response(state: CheckoutState, totals: OrderTotals) -> CheckoutResponse:
    data = state.to_dict()
    data.pop("client_secret", None)
    controller = CheckoutStepController(state)
    return CheckoutResponse(
        **data,
        accessible_steps=[s.value for s in STEP_ORDER if controller.can_access(s)],
        totals=TotalsSchema(**totals.to_dict()),
    )


def order_to_schema(order: Order) -> OrderSchema:
    return OrderSchema(**order.to_dict())


def order_to_tracking(order: Order) -> OrderTrackingSchema:
    data = order.to_dict()
    return OrderTrackingSchema(
        order_number=data["order_number"],
        status=data["status"],
        payment_status=data["payment_status"],
        items=data["items"],
        totals=data["totals"],
        shipping_address=data["shipping_address"],
        shipping_method_id=data["shipping_method_id"],
        currency=data["currency"],
        timeline=[
            {"status": t["status"], "timestamp": t["timestamp"], "note": t.get("note")}
            for t in data["timeline"]
        ],
        created_at=data["created_at"],
    )


# --- Dependencies ---


def get_session_id(x_session_id: str = Header(..., alias="X-Session-Id")) -> str:
    return validate_session_id(x_session_id)


def get_cart_store(request: Request, session_id: str = Depends(get_session_id)) -> CartStore:
    state = request.app.state
    return CartStore(state.sessions, session_id, state.catalog, state.settings.pricing)


def get_checkout(request: Request, session_id: str = Depends(get_session_id)) -> CheckoutService:
    state = request.app.state
    return CheckoutService(
        state.sessions,
        session_id,
        state.settings.pricing,
        state.payments,
        state.lifecycle,
        state.catalog,
        currency=state.settings.currency,
    )


def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    expected = request.app.state.settings.admin_token
    if not expected or not x_admin_token or not hmac.compare_digest(expected, x_admin_token):
        raise NotAuthorizedError()


def get_admin(request: Request) -> AdminOrderConsole:
    return request.app.state.admin


# --- Global Exception Handler ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    InsufficientStockError: 400,
    PromoInvalid: 400,
    ConfigError: 500,
    InvalidSchemaVersionError: 500,
    ProductNotFoundError: 404,
    CartLineNotFoundError: 404,
    OrderNotFoundError: 404,
    StepIncomplete: 409,
    StepNotAccessible: 409,
    PaymentError: 402,
    PaymentInProgressError: 409,
    InvalidTransition: 409,
    WebhookError: 400,
    NotAuthorizedError: 401,
}


async def merchstore_error_handler(request: Request, exc: MerchStoreError) -> JSONResponse:
    """Map MerchStoreError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content: dict[str, Any] = {"detail": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, PaymentError):
        content["category"] = exc.category
        if exc.code:
            content["code"] = exc.code
    elif isinstance(exc, InvalidTransition):
        content["allowed"] = exc.allowed
    elif isinstance(exc, StepIncomplete):
        content["missing"] = exc.missing
    elif isinstance(exc, ValidationError):
        if exc.field:
            content["field"] = exc.field
        if isinstance(exc, InsufficientStockError):
            content["available_stock"] = exc.available
    return JSONResponse(status_code=status_code, content=content)


# --- Endpoints ---


router = APIRouter(
    prefix="/api",
    responses={code: {"model": ErrorResponse} for code in (400, 401, 402, 404, 409)},
)


@router.get("/health")
def health_check(request: Request):
    """Health check endpoint."""
    state = request.app.state
    try:
        orders = state.orders.list_orders()
        return {
            "status": "ok",
            "order_count": len(orders),
            "gateway": state.settings.payments.kind,
        }
    except (MerchStoreError, OSError) as e:
        return {
            "status": "error",
            "detail": str(e),
        }


# --- Catalog Endpoints ---


@router.get("/products", response_model=ProductListResponse)
def list_products(request: Request):
    """List active products."""
    products = request.app.state.catalog.list_products()
    return ProductListResponse(
        products=[product_to_schema(p) for p in products],
        count=len(products),
    )


@router.get("/products/{product_id}", response_model=ProductSchema)
def get_product(request: Request, product_id: str):
    """Get a product by ID or slug."""
    return product_to_schema(request.app.state.catalog.get_product(product_id))


@router.get("/shipping-methods", response_model=ShippingMethodListResponse)
def get_shipping_methods(request: Request):
    pricing = request.app.state.settings.pricing
    threshold = pricing.free_shipping_threshold
    return ShippingMethodListResponse(
        methods=[ShippingMethodSchema(**m.to_dict()) for m in list_shipping_methods(pricing)],
        free_shipping_threshold=str(threshold) if threshold is not None else None,
    )


# --- Cart Endpoints ---


@router.get("/cart", response_model=CartResponse)
def get_cart(carts: CartStore = Depends(get_cart_store)):
    return cart_to_response(carts.get(), carts.totals())


@router.post("/cart/items", response_model=CartResponse, status_code=201)
def add_cart_item(request: AddItemRequest, carts: CartStore = Depends(get_cart_store)):
    """Add a product (or more of it) to the cart."""
    cart = carts.add_item(request.product_id, request.variant_id, request.quantity)
    return cart_to_response(cart, carts.totals())


@router.patch("/cart/items/{line_id}", response_model=CartResponse)
def update_cart_item(line_id: str, request: UpdateQuantityRequest, carts: CartStore = Depends(get_cart_store)):
    cart = carts.update_quantity(line_id, request.quantity)
    return cart_to_response(cart, carts.totals())


@router.delete("/cart/items/{line_id}", response_model=CartResponse)
def remove_cart_item(line_id: str, carts: CartStore = Depends(get_cart_store)):
    cart = carts.remove_item(line_id)
    return cart_to_response(cart, carts.totals())


@router.delete("/cart", response_model=CartResponse)
def clear_cart(carts: CartStore = Depends(get_cart_store)):
    cart = carts.clear()
    return cart_to_response(cart, carts.totals())


@router.put("/cart/promo", response_model=CartResponse)
def apply_promo(request: PromoRequest, carts: CartStore = Depends(get_cart_store)):
    """Apply a promo code. Invalid codes are rejected and the cart is unchanged."""
    cart = carts.apply_promo(request.code)
    return cart_to_response(cart, carts.totals())


@router.delete("/cart/promo", response_model=CartResponse)
def remove_promo(carts: CartStore = Depends(get_cart_store)):
    cart = carts.remove_promo()
    return cart_to_response(cart, carts.totals())


# --- Checkout Endpoints ---


@router.get("/checkout", response_model=CheckoutResponse)
def get_checkout_state(checkout: CheckoutService = Depends(get_checkout)):
    return checkout_to_response(checkout.state(), checkout.totals())


@router.put("/checkout/shipping", response_model=CheckoutResponse)
def set_checkout_shipping(request: ShippingRequest, checkout: CheckoutService = Depends(get_checkout)):
    """Save contact details, addresses and the shipping method."""
    state = checkout.set_shipping(
        email=request.email,
        address=request.shipping_address.to_address(),
        method_id=request.shipping_method_id,
        billing=request.billing_address.to_address() if request.billing_address else None,
        notes=request.notes,
    )
    return checkout_to_response(state, checkout.totals())


@router.post("/checkout/advance", response_model=CheckoutResponse)
def advance_checkout(checkout: CheckoutService = Depends(get_checkout)):
    """
    Complete the current step and move on.

    At the payment step this places the order.
    """
    state = checkout.advance()
    return checkout_to_response(state, checkout.totals())


@router.post("/checkout/go-to", response_model=CheckoutResponse)
def go_to_checkout_step(request: GoToRequest, checkout: CheckoutService = Depends(get_checkout)):
    state = checkout.go_to(request.step)
    return checkout_to_response(state, checkout.totals())


@router.post("/checkout/restart", response_model=CheckoutResponse)
def restart_checkout(checkout: CheckoutService = Depends(get_checkout)):
    state = checkout.restart()
    return checkout_to_response(state, checkout.totals())


@router.post("/checkout/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(request: Request, checkout: CheckoutService = Depends(get_checkout)):
    """Get a client secret for the current total."""
    handle = checkout.create_payment()
    return PaymentIntentResponse(
        intent_id=handle.intent_id,
        client_secret=handle.client_secret,
        amount=str(handle.amount),
        currency=handle.currency,
        publishable_key=request.app.state.settings.payments.publishable_key,
    )


@router.post("/checkout/payment", response_model=CheckoutResponse)
def submit_payment(request: PaymentRequest, checkout: CheckoutService = Depends(get_checkout)):
    """
    Confirm the payment with a gateway token.

    A declined or failed payment returns 402 with the failure category; the
    cart is kept so the customer can try again.
    """
    state = checkout.submit_payment(request.model_dump(exclude_none=True))
    return checkout_to_response(state, checkout.totals())


@router.post("/checkout/payment/refresh", response_model=CheckoutResponse)
def refresh_payment(checkout: CheckoutService = Depends(get_checkout)):
    state = checkout.refresh_payment()
    return checkout_to_response(state, checkout.totals())


@router.post("/checkout/place-order", response_model=OrderTrackingSchema, status_code=201)
def place_order(checkout: CheckoutService = Depends(get_checkout)):
    """Create the order for a paid checkout."""
    return order_to_tracking(checkout.place_order())


# --- Customer Order Endpoints ---


@router.get("/orders/{order_number}", response_model=OrderTrackingSchema)
def track_order(request: Request, order_number: str, email: str = Query(...)):
    """Look up an order by number; the email must match the order's."""
    return order_to_tracking(request.app.state.lifecycle.tracking_view(order_number, email))


# --- Admin Endpoints ---


@router.get("/admin/orders", response_model=OrderListResponse, dependencies=[Depends(require_admin)])
def admin_list_orders(
    status: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    offset: Optional[int] = Query(default=None, ge=0),
    limit: Optional[int] = Query(default=None, ge=1, le=MAX_PAGE_SIZE),
    admin: AdminOrderConsole = Depends(get_admin),
):
    """List orders newest first, filtered by status and free-text search.

    Pages by ``offset``/``limit`` when given, otherwise by ``page``.
    """
    result = admin.list_orders(status=status, search=search, page=page, offset=offset, limit=limit)
    return OrderListResponse(
        orders=[order_to_schema(o) for o in result.orders],
        total=result.total,
        offset=result.offset,
        limit=result.limit,
        page=result.page,
        page_size=result.page_size,
        has_more=result.has_more,
    )


@router.get("/admin/orders/summary", response_model=OrderSummaryResponse, dependencies=[Depends(require_admin)])
def admin_order_summary(admin: AdminOrderConsole = Depends(get_admin)):
    return OrderSummaryResponse(**admin.summary().to_dict())


@router.get("/admin/orders/{order_id}", response_model=OrderSchema, dependencies=[Depends(require_admin)])
def admin_get_order(order_id: str, admin: AdminOrderConsole = Depends(get_admin)):
    return order_to_schema(admin.get_order(order_id))


@router.put("/admin/orders/{order_id}/status", response_model=OrderSchema, dependencies=[Depends(require_admin)])
def admin_update_status(order_id: str, request: StatusUpdateRequest, admin: AdminOrderConsole = Depends(get_admin)):
    """
    Change an order's status.

    Rejected transitions return 409 with the statuses allowed from the
    current one.
    """
    return order_to_schema(admin.update_status(order_id, request.status, note=request.note))


@router.put("/admin/orders/{order_id}/notes", response_model=OrderSchema, dependencies=[Depends(require_admin)])
def admin_update_notes(order_id: str, request: NotesUpdateRequest, admin: AdminOrderConsole = Depends(get_admin)):
    return order_to_schema(admin.update_notes(order_id, request.notes))


# --- Webhook Endpoints ---


@router.post("/webhooks/payments")
async def payment_webhook(request: Request):
    """
    Receive a signed event from the payment gateway.

    Events that don't match an order are acknowledged and ignored.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    state = request.app.state
    event = state.payments.parse_webhook(payload, signature)
    order = state.lifecycle.apply_payment_event(event)
    return {
        "received": True,
        "event_id": event.id,
        "order_number": order.order_number if order else None,
    }


# --- FastAPI App ---


def create_app(settings: Optional[Settings] = None, gateway: Optional[PaymentGateway] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Store settings; loaded from the environment when omitted.
        gateway: Payment gateway to use instead of the configured one.
    """
    settings = settings or load_settings()

    app = FastAPI(
        title="merchstore API",
        description="REST API for the band merch store checkout and orders",
        version=__version__,
    )

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    orders = OrderStore(settings.data_dir)
    lifecycle = OrderLifecycle(orders)
    app.state.settings = settings
    app.state.catalog = CatalogStore(settings.data_dir)
    app.state.sessions = SessionStore(settings.data_dir)
    app.state.orders = orders
    app.state.lifecycle = lifecycle
    app.state.payments = PaymentAdapter(gateway or create_gateway(settings.payments))
    app.state.admin = AdminOrderConsole(orders, lifecycle)

    app.add_exception_handler(MerchStoreError, merchstore_error_handler)
    app.include_router(router)

    logger.info(f"merchstore API ready (data: {settings.data_dir}, gateway: {settings.payments.kind})")
    return app
