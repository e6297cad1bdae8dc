"""Order storage for merchstore."""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from .errors import InvalidSchemaVersionError, OrderNotFoundError
from .models import Order, _utc_now
from .utils import generate_order_number

SCHEMA_VERSION = 1
ORDERS_FILE = "orders.json"


class OrderStore:
    """
    Durable order records.

    All read-modify-write operations run under an exclusive file lock and
    re-read the orders file inside it, so a mutation always sees the state
    at the moment it is applied.
    """

    def __init__(self, data_dir: Path):
        """
        Initialize OrderStore.

        Args:
            data_dir: Base data directory.
        """
        self.data_dir = Path(data_dir)
        self.orders_path = self.data_dir / ORDERS_FILE

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Acquire exclusive lock on the orders file for read-modify-write operations."""
        self._ensure_dir()
        lock_path = self.data_dir / ".orders.lock"
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load_data(self) -> dict[str, Any]:
        if not self.orders_path.exists():
            return {"schema_version": SCHEMA_VERSION, "sequence": 0, "orders": []}

        with open(self.orders_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise InvalidSchemaVersionError(version, SCHEMA_VERSION)
        return data

    def _save_data(self, data: dict[str, Any]) -> None:
        """Save orders to disk atomically."""
        self._ensure_dir()

        fd, temp_path = tempfile.mkstemp(
            dir=self.data_dir, prefix=".orders_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.orders_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _find_index(orders: list[dict[str, Any]], order_ref: str) -> int:
        for i, o in enumerate(orders):
            if o["id"] == order_ref or o["order_number"] == order_ref:
                return i
        raise OrderNotFoundError(order_ref)

    def list_orders(self) -> list[Order]:
        """List all orders in creation order."""
        data = self._load_data()
        return [Order.from_dict(o) for o in data.get("orders", [])]

    def get(self, order_ref: str) -> Order:
        """
        Get an order by ID or order number.

        Raises:
            OrderNotFoundError: If no order matches.
        """
        orders = self._load_data().get("orders", [])
        return Order.from_dict(orders[self._find_index(orders, order_ref)])

    def find_by_payment_reference(self, reference: str) -> Order | None:
        for o in self._load_data().get("orders", []):
            if o.get("payment_reference") == reference:
                return Order.from_dict(o)
        return None

    def create(self, build: Callable[[str], Order]) -> Order:
        """
        Allocate the next order number and store the order built for it.

        Args:
            build: Called with the new order number; returns the Order to store.
        """
        with self._lock():
            data = self._load_data()
            data["sequence"] = data.get("sequence", 0) + 1
            order = build(generate_order_number(data["sequence"]))
            data.setdefault("orders", []).append(order.to_dict())
            self._save_data(data)
        return order

    def update(self, order_ref: str, mutate: Callable[[Order], None]) -> Order:
        """
        Apply a mutation to the current stored state of an order.

        If ``mutate`` raises, nothing is written.

        Raises:
            OrderNotFoundError: If no order matches.
        """
        with self._lock():
            data = self._load_data()
            orders = data.get("orders", [])
            idx = self._find_index(orders, order_ref)
            order = Order.from_dict(orders[idx])
            mutate(order)
            order.updated_at = _utc_now()
            orders[idx] = order.to_dict()
            self._save_data(data)
        return order
