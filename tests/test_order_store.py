"""Tests for OrderStore."""

import json

import pytest

from merchstore.errors import InvalidSchemaVersionError, OrderNotFoundError
from merchstore.order_store import OrderStore
from merchstore.utils import is_valid_order_number


class TestOrderStore:
    def test_empty_store(self, order_store):
        assert order_store.list_orders() == []
        assert not order_store.orders_path.exists()

    def test_order_numbers_are_sequential(self, make_order):
        first = make_order()
        second = make_order()

        assert is_valid_order_number(first.order_number)
        assert first.order_number.endswith("-000001")
        assert second.order_number.endswith("-000002")
        assert first.id != second.id

    def test_get_by_id_or_number(self, order_store, make_order):
        order = make_order()
        assert order_store.get(order.id).order_number == order.order_number
        assert order_store.get(order.order_number).id == order.id

    def test_get_missing(self, order_store):
        with pytest.raises(OrderNotFoundError) as exc_info:
            order_store.get("PS-2024-999999")
        assert exc_info.value.order_ref == "PS-2024-999999"

    def test_persists_across_instances(self, order_store, make_order):
        order = make_order()
        reopened = OrderStore(order_store.data_dir)
        assert reopened.get(order.id) == order

    def test_update_applies_mutation(self, order_store, make_order):
        order = make_order()

        def set_notes(o):
            o.notes = "Gift wrap"

        updated = order_store.update(order.id, set_notes)
        assert updated.notes == "Gift wrap"
        assert updated.updated_at >= order.updated_at
        assert order_store.get(order.id).notes == "Gift wrap"

    def test_failed_mutation_writes_nothing(self, order_store, make_order):
        order = make_order()
        before = order_store.orders_path.read_text()

        def explode(o):
            o.notes = "half-applied"
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            order_store.update(order.id, explode)
        assert order_store.orders_path.read_text() == before

    def test_find_by_payment_reference(self, order_store, make_order):
        order = make_order()
        order_store.update(order.id, lambda o: setattr(o, "payment_reference", "pi_abc"))

        assert order_store.find_by_payment_reference("pi_abc").id == order.id
        assert order_store.find_by_payment_reference("pi_other") is None

    def test_no_temp_files_left(self, order_store, make_order):
        make_order()
        leftovers = [p.name for p in order_store.data_dir.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    def test_unsupported_schema_version(self, order_store, make_order):
        make_order()
        data = json.loads(order_store.orders_path.read_text())
        data["schema_version"] = 2
        order_store.orders_path.write_text(json.dumps(data))

        with pytest.raises(InvalidSchemaVersionError) as exc_info:
            order_store.list_orders()
        assert exc_info.value.found == 2
