"""Product catalog storage for merchstore."""

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol

from .errors import InsufficientStockError, ProductNotFoundError, ValidationError
from .models import Product, ProductVariant

logger = logging.getLogger(__name__)

CATALOG_FILE = "catalog.json"


class StockLine(Protocol):
    product_id: str
    variant_id: str | None
    quantity: int


class CatalogStore:
    """Read-mostly product catalog backed by a JSON file."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.catalog_path = self.data_dir / CATALOG_FILE

    def _load_data(self) -> dict[str, Any]:
        if not self.catalog_path.exists():
            return {"schema_version": 1, "products": []}

        with open(self.catalog_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_data(self, data: dict[str, Any]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            dir=self.data_dir, prefix=".catalog_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.catalog_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Acquire exclusive lock on the catalog for stock and product writes."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.data_dir / ".catalog.lock"
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def list_products(self, active_only: bool = True) -> list[Product]:
        """List products, by default only active ones."""
        data = self._load_data()
        products = [Product.from_dict(p) for p in data.get("products", [])]
        if active_only:
            return [p for p in products if p.is_active]
        return products

    def get_product(self, product_id: str) -> Product:
        """
        Get an active product by ID or slug.

        Raises:
            ProductNotFoundError: If the product doesn't exist or is inactive.
        """
        for p in self.list_products(active_only=True):
            if p.id == product_id or p.slug == product_id:
                return p
        raise ProductNotFoundError(product_id)

    def get_variant(
        self, product_id: str, variant_id: str | None
    ) -> tuple[Product, ProductVariant | None]:
        """
        Resolve a product and optional variant for purchase.

        A product that has variants requires one to be chosen.

        Raises:
            ProductNotFoundError: If either is missing or inactive.
        """
        return _resolve(self.list_products(active_only=True), product_id, variant_id)

    def check_stock(
        self, product_id: str, variant_id: str | None, quantity: int, field: str | None = "quantity"
    ) -> None:
        """
        Check that ``quantity`` units of a product or variant are available.

        Raises:
            ProductNotFoundError: If either is missing or inactive.
            InsufficientStockError: If fewer units are in stock.
        """
        product, variant = self.get_variant(product_id, variant_id)
        _require_stock(product, variant, quantity, field)

    def check_lines(self, lines: Iterable[StockLine]) -> None:
        """Check stock for every line of a cart or order."""
        products = self.list_products(active_only=True)
        for key, quantity in _quantities(lines).items():
            product, variant = _resolve(products, *key)
            _require_stock(product, variant, quantity, "items")

    def reserve_stock(self, lines: Iterable[StockLine]) -> None:
        """
        Take the lines' quantities out of stock, all or nothing.

        Untracked products and variants are left alone.

        Raises:
            ProductNotFoundError: If a line's product or variant is gone.
            InsufficientStockError: If any line can't be covered; nothing is
                written in that case.
        """
        wanted = _quantities(lines)
        with self._lock():
            data = self._load_data()
            products = [Product.from_dict(p) for p in data.get("products", [])]
            active = [p for p in products if p.is_active]

            picked = []
            for key, quantity in wanted.items():
                product, variant = _resolve(active, *key)
                _require_stock(product, variant, quantity, "items")
                picked.append((product, variant, quantity))

            changed = False
            for product, variant, quantity in picked:
                holder = variant if variant is not None else product
                if holder.stock_quantity is not None:
                    holder.stock_quantity -= quantity
                    changed = True

            if changed:
                data["products"] = [p.to_dict() for p in products]
                self._save_data(data)
        logger.info(f"Reserved stock for {sum(wanted.values())} unit(s)")

    def add_product(self, product: Product, replace: bool = False) -> Product:
        """
        Add a product to the catalog.

        Raises:
            ValidationError: If the ID or slug is taken and replace is False.
        """
        with self._lock():
            data = self._load_data()
            products = data.setdefault("products", [])
            for i, existing in enumerate(products):
                if existing["id"] == product.id or existing.get("slug") == product.slug:
                    if not replace:
                        raise ValidationError(
                            f"Product already exists: {existing['id']}", field="id"
                        )
                    products[i] = product.to_dict()
                    self._save_data(data)
                    return product

            products.append(product.to_dict())
            self._save_data(data)
        return product

    def import_products(self, entries: list[dict[str, Any]], replace: bool = False) -> list[Product]:
        """Add products from raw dicts (e.g. a JSON seed file)."""
        imported = []
        for entry in entries:
            try:
                product = Product.from_dict(entry)
            except (KeyError, ArithmeticError) as e:
                raise ValidationError(f"Malformed product entry {entry.get('id', '?')}: {e}")
            imported.append(self.add_product(product, replace=replace))
        return imported


def _quantities(lines: Iterable[StockLine]) -> dict[tuple[str, str | None], int]:
    totals: dict[tuple[str, str | None], int] = {}
    for line in lines:
        key = (line.product_id, line.variant_id)
        totals[key] = totals.get(key, 0) + line.quantity
    return totals


def _resolve(
    products: list[Product], product_id: str, variant_id: str | None
) -> tuple[Product, ProductVariant | None]:
    product = next((p for p in products if p.id == product_id or p.slug == product_id), None)
    if product is None or not product.is_active:
        raise ProductNotFoundError(product_id)
    if variant_id is None:
        if product.variants:
            raise ProductNotFoundError(product.id, "<none>")
        return product, None

    variant = product.find_variant(variant_id)
    if variant is None or not variant.is_active:
        raise ProductNotFoundError(product.id, variant_id)
    return product, variant


def _require_stock(
    product: Product, variant: ProductVariant | None, quantity: int, field: str | None
) -> None:
    available = product.available_stock(variant)
    if available is not None and quantity > available:
        name = f"{product.name} ({variant.name})" if variant else product.name
        raise InsufficientStockError(name, max(available, 0), quantity, field=field)
