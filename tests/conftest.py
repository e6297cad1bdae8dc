"""Pytest fixtures for merchstore tests."""

import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

from merchstore.cart_store import CartStore
from merchstore.catalog import CatalogStore
from merchstore.checkout import CheckoutService
from merchstore.config import Settings
from merchstore.lifecycle import OrderLifecycle
from merchstore.models import Address, OrderItem, OrderTotals
from merchstore.order_store import OrderStore
from merchstore.payments import PaymentAdapter, SandboxGateway
from merchstore.session_store import SessionStore

ADMIN_TOKEN = "test-admin-token"

SAMPLE_PRODUCTS = [
    {
        "id": "tour-tee",
        "name": "Tour T-Shirt",
        "slug": "tour-tee",
        "base_price": "25.00",
        "description": "Black tee with this year's tour dates",
        "variants": [
            {"id": "tee-s", "name": "Small", "sku": "TEE-S", "stock_quantity": 3},
            {"id": "tee-m", "name": "Medium", "sku": "TEE-M"},
            {"id": "tee-xxl", "name": "XXL", "sku": "TEE-XXL", "price_adjustment": "2.00"},
            {"id": "tee-retired", "name": "Old Print", "sku": "TEE-OLD", "is_active": False},
        ],
    },
    {"id": "vinyl-lp", "name": "Debut Album (Vinyl)", "slug": "debut-vinyl", "base_price": "30.00"},
    {"id": "sticker", "name": "Logo Sticker", "slug": "logo-sticker", "base_price": "3.50"},
    {"id": "signed-lp", "name": "Signed Vinyl", "slug": "signed-lp", "base_price": "60.00", "stock_quantity": 1},
    {"id": "poster-2019", "name": "2019 Tour Poster", "slug": "poster-2019", "base_price": "15.00", "is_active": False},
]

SHIPPING_ADDRESS = {
    "first_name": "Alex",
    "last_name": "Rivera",
    "address1": "123 Main St",
    "city": "Portland",
    "state": "OR",
    "postal_code": "97201",
    "country": "US",
}


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    return Settings(data_dir=temp_dir / "data", admin_token=ADMIN_TOKEN)


@pytest.fixture
def pricing(settings):
    return settings.pricing


@pytest.fixture
def catalog(settings):
    """Catalog seeded with a few products."""
    store = CatalogStore(settings.data_dir)
    store.import_products(SAMPLE_PRODUCTS)
    return store


@pytest.fixture
def session_store(settings):
    return SessionStore(settings.data_dir)


@pytest.fixture
def order_store(settings):
    return OrderStore(settings.data_dir)


@pytest.fixture
def lifecycle(order_store):
    return OrderLifecycle(order_store)


@pytest.fixture
def gateway():
    return SandboxGateway()


@pytest.fixture
def adapter(gateway):
    return PaymentAdapter(gateway)


@pytest.fixture
def cart(session_store, catalog, pricing):
    """CartStore for a single shopper session."""
    return CartStore(session_store, "shopper-1", catalog, pricing)


@pytest.fixture
def checkout(session_store, pricing, adapter, lifecycle, catalog):
    """CheckoutService for the same session as the ``cart`` fixture."""
    return CheckoutService(session_store, "shopper-1", pricing, adapter, lifecycle, catalog)


@pytest.fixture
def address():
    return Address(**SHIPPING_ADDRESS)


@pytest.fixture
def at_payment_step(cart, checkout, address):
    """Drive checkout to the payment step with one $25.00 tee in the cart."""
    cart.add_item("tour-tee", "tee-m", 1)
    checkout.advance()
    checkout.set_shipping("alex@example.com", address, "standard")
    checkout.advance()
    return checkout


@pytest.fixture
def make_order(lifecycle, address):
    """Factory creating a stored pending order."""

    def _make(email="alex@example.com", total="32.40", quantity=1):
        item = OrderItem(
            product_id="tour-tee",
            variant_id="tee-m",
            product_name="Tour T-Shirt",
            variant_name="Medium",
            sku="TEE-M",
            quantity=quantity,
            unit_price=Decimal("25.00"),
            line_total=Decimal("25.00") * quantity,
        )
        totals = OrderTotals(
            subtotal=Decimal("25.00"),
            shipping=Decimal("5.00"),
            tax=Decimal("2.40"),
            discount=Decimal("0.00"),
            total=Decimal(total),
        )
        return lifecycle.create_order(
            customer_email=email,
            items=[item],
            shipping_address=address,
            billing_address=address,
            totals=totals,
            shipping_method_id="standard",
        )

    return _make


@pytest.fixture
def api_client(settings, catalog, gateway):
    """Test client for an app sharing the sandbox gateway with the test."""
    from fastapi.testclient import TestClient

    from merchstore.api import create_app

    return TestClient(create_app(settings, gateway=gateway))
