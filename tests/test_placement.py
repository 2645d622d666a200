"""Order placement, partial writes and reconciliation."""
import copy
from datetime import datetime, timedelta, timezone

import pytest

from cart import Cart, CartError, CartItem
from database import ORDER_ITEMS, ORDERS, PLACEMENTS, PRODUCTS, BackendError
from orders import BY_ID, find_order
from inventory import OUT_OF_STOCK, classify
from placement import (
    COMPLETED,
    FAILED,
    ITEMS_WRITTEN,
    ROLLED_BACK,
    ROLLING_BACK,
    STAGE_ITEMS,
    STAGE_ORDER,
    STAGE_STOCK,
    PlacementError,
    place_order,
    reconcile,
)


def stock_of(backend, product):
    return backend.get(PRODUCTS, product["id"])["stock"]


def test_total_and_price_snapshot(backend, make_product):
    a = make_product("A", price=10.00, stock=20)
    b = make_product("B", price=5.00, stock=20)
    cart = Cart()
    cart.add(a, 2)
    cart.add(b, 3)

    backend.update(PRODUCTS, a["id"], {"price": 99.0})

    confirmation = place_order(backend, cart.items, "Ana", "Ana@Example.COM")
    assert confirmation.total == 35.00
    assert confirmation.customer_email == "ana@example.com"

    order = backend.get(ORDERS, confirmation.order_id)
    assert order["total"] == 35.00
    assert order["status"] == "pending"
    items = backend.select(ORDER_ITEMS, {"order_id": confirmation.order_id})
    assert sorted(i["unit_price"] for i in items) == [5.00, 10.00]
    assert sum(i["unit_price"] * i["quantity"] for i in items) == order["total"]

    assert stock_of(backend, a) == 18
    assert stock_of(backend, b) == 17
    assert backend.select_one(PLACEMENTS, {})["status"] == COMPLETED


def test_buying_last_units_leaves_out_of_stock(backend, make_product):
    p = make_product("Last", price=3.0, stock=5)
    cart = Cart()
    cart.add(p, 5)
    place_order(backend, cart.items, "Bo", "bo@example.com")
    assert stock_of(backend, p) == 0
    assert classify(stock_of(backend, p)).label == OUT_OF_STOCK


def test_empty_cart_rejected_without_writes(backend):
    with pytest.raises(CartError):
        place_order(backend, [], "Bo", "bo@example.com")
    assert backend.count(ORDERS) == 0
    assert backend.count(PLACEMENTS) == 0


def test_missing_identity_rejected(backend, make_product):
    cart = Cart()
    cart.add(make_product(), 1)
    with pytest.raises(CartError):
        place_order(backend, cart.items, "  ", "bo@example.com")
    with pytest.raises(CartError):
        place_order(backend, cart.items, "Bo", "")
    assert backend.count(ORDERS) == 0


def test_quantity_over_snapshot_stock_rejected(backend, make_product):
    p = make_product(stock=2)
    with pytest.raises(CartError):
        place_order(backend, [CartItem(product=p, quantity=3)], "Bo", "bo@example.com")
    assert backend.count(ORDERS) == 0


def test_order_write_failure(backend, make_product, monkeypatch):
    cart = Cart()
    cart.add(make_product(), 1)
    real_create = backend.create_document

    def create(table, data):
        if table == ORDERS:
            raise BackendError("connection reset")
        return real_create(table, data)

    monkeypatch.setattr(backend, "create_document", create)
    with pytest.raises(PlacementError) as exc:
        place_order(backend, cart.items, "Bo", "bo@example.com")
    assert exc.value.stage == STAGE_ORDER
    assert backend.count(ORDERS) == 0
    assert backend.select_one(PLACEMENTS, {})["status"] == FAILED


def test_item_write_failure_leaves_orphan_order(backend, make_product, monkeypatch):
    p = make_product(stock=5)
    cart = Cart()
    cart.add(p, 2)

    def boom(table, rows):
        raise BackendError("insert rejected")

    monkeypatch.setattr(backend, "insert_many", boom)
    with pytest.raises(PlacementError) as exc:
        place_order(backend, cart.items, "Bo", "bo@example.com")

    assert exc.value.stage == STAGE_ITEMS
    assert exc.value.cause == "insert rejected"
    order = find_order(backend, BY_ID, exc.value.order_id)
    assert order is not None
    assert order["order_items"] == []
    assert stock_of(backend, p) == 5

    monkeypatch.undo()
    summary = reconcile(backend)
    assert len(summary["rolled_back"]) == 1
    assert backend.count(ORDERS) == 0
    assert backend.select_one(PLACEMENTS, {})["status"] == ROLLED_BACK


def test_stale_snapshot_race_second_buyer_fails(backend, make_product):
    p = make_product("Only one", price=20.0, stock=1)
    first, second = Cart(), Cart()
    first.add(dict(p), 1)
    second.add(dict(p), 1)

    place_order(backend, first.items, "Ana", "ana@example.com")
    with pytest.raises(PlacementError) as exc:
        place_order(backend, second.items, "Bo", "bo@example.com")

    assert exc.value.stage == STAGE_STOCK
    assert exc.value.insufficient_stock
    assert exc.value.partial_index == 0
    assert stock_of(backend, p) == 0


def test_stock_failure_midway_then_reconcile_restocks(backend, make_product):
    a = make_product("A", stock=10)
    b = make_product("B", stock=4)
    cart = Cart()
    cart.add(a, 3)
    cart.add(b, 4)
    backend.update(PRODUCTS, b["id"], {"stock": 1})

    with pytest.raises(PlacementError) as exc:
        place_order(backend, cart.items, "Bo", "bo@example.com")
    assert exc.value.stage == STAGE_STOCK
    assert exc.value.partial_index == 1
    assert stock_of(backend, a) == 7
    assert backend.count(ORDER_ITEMS) == 2

    reconcile(backend)
    assert stock_of(backend, a) == 10
    assert stock_of(backend, b) == 1
    assert backend.count(ORDERS) == 0
    assert backend.count(ORDER_ITEMS) == 0


def test_reconcile_in_flight_attempts(backend, make_product):
    p = make_product(stock=10)
    now = datetime.now(timezone.utc)
    old = now - timedelta(hours=1)

    finished = backend.create_document(ORDERS, {"customer_name": "A", "customer_email": "a@x.io",
                                                "status": "pending", "total": 1.0})
    backend.create_document(PLACEMENTS, {
        "status": ITEMS_WRITTEN, "order_id": str(finished["_id"]),
        "lines": [{"product_id": p["id"], "quantity": 1, "unit_price": 10.0}],
        "decremented": [0], "created_at": old,
    })
    abandoned = backend.create_document(ORDERS, {"customer_name": "B", "customer_email": "b@x.io",
                                                 "status": "pending", "total": 1.0})
    backend.create_document(PLACEMENTS, {
        "status": ITEMS_WRITTEN, "order_id": str(abandoned["_id"]),
        "lines": [{"product_id": p["id"], "quantity": 2, "unit_price": 10.0},
                  {"product_id": p["id"], "quantity": 1, "unit_price": 10.0}],
        "decremented": [0], "created_at": old,
    })
    fresh = backend.create_document(PLACEMENTS, {
        "status": ITEMS_WRITTEN, "order_id": None, "lines": [], "decremented": [],
    })

    summary = reconcile(backend, grace_seconds=300, now=now)

    assert len(summary["completed"]) == 1
    assert len(summary["rolled_back"]) == 1
    assert backend.get(ORDERS, finished["_id"]) is not None
    assert backend.get(ORDERS, abandoned["_id"]) is None
    assert stock_of(backend, p) == 12
    assert backend.get(PLACEMENTS, fresh["_id"])["status"] == ITEMS_WRITTEN


def test_no_deduplication_of_repeated_submits(backend, make_product):
    cart = Cart()
    cart.add(make_product(stock=10), 1)
    first = place_order(backend, cart.items, "Bo", "bo@example.com")
    second = place_order(backend, cart.items, "Bo", "bo@example.com")
    assert first.order_id != second.order_id
    assert backend.count(ORDERS) == 2


def failed_at_stock_stage(backend, make_product):
    """A placement that decremented A (10 -> 7) and then ran out of B."""
    a = make_product("A", stock=10)
    b = make_product("B", stock=4)
    cart = Cart()
    cart.add(a, 3)
    cart.add(b, 4)
    backend.update(PRODUCTS, b["id"], {"stock": 1})
    with pytest.raises(PlacementError):
        place_order(backend, cart.items, "Bo", "bo@example.com")
    assert stock_of(backend, a) == 7
    return a, b


def test_sweeps_sharing_a_stale_listing_restock_once(backend, make_product, monkeypatch):
    a, b = failed_at_stock_stage(backend, make_product)
    listing = backend.select(PLACEMENTS, {"status": FAILED})
    real_select = backend.select

    def select(table, filters=None, sort=None, limit=None):
        if table == PLACEMENTS and limit is None:
            return copy.deepcopy(listing)
        return real_select(table, filters, sort=sort, limit=limit)

    monkeypatch.setattr(backend, "select", select)
    first = reconcile(backend)
    second = reconcile(backend)

    assert len(first["rolled_back"]) == 1
    assert second == {"rolled_back": [], "completed": []}
    assert stock_of(backend, a) == 10
    assert stock_of(backend, b) == 1


def test_reconcile_again_changes_nothing(backend, make_product):
    a, _ = failed_at_stock_stage(backend, make_product)
    reconcile(backend)
    assert reconcile(backend) == {"rolled_back": [], "completed": []}
    assert stock_of(backend, a) == 10
    assert backend.select_one(PLACEMENTS, {})["status"] == ROLLED_BACK


def test_interrupted_sweep_resumes_without_double_restock(backend, make_product, monkeypatch):
    a, _ = failed_at_stock_stage(backend, make_product)
    real_delete = backend.delete

    def delete(table, filters):
        if table == ORDERS:
            raise BackendError("primary stepped down")
        return real_delete(table, filters)

    monkeypatch.setattr(backend, "delete", delete)
    with pytest.raises(BackendError):
        reconcile(backend)
    assert stock_of(backend, a) == 10
    assert backend.select_one(PLACEMENTS, {})["status"] == ROLLING_BACK

    monkeypatch.undo()
    summary = reconcile(backend)
    assert len(summary["rolled_back"]) == 1
    assert stock_of(backend, a) == 10
    assert backend.count(ORDERS) == 0
    assert backend.select_one(PLACEMENTS, {})["status"] == ROLLED_BACK


def test_sweep_during_running_placement(backend, make_product, monkeypatch):
    a = make_product("A", stock=10)
    b = make_product("B", stock=5)
    cart = Cart()
    cart.add(a, 2)
    cart.add(b, 1)
    real_decrement = backend.decrement_if_available
    calls = []

    def decrement(table, doc_id, field, amount):
        calls.append(doc_id)
        if len(calls) == 2:
            later = datetime.now(timezone.utc) + timedelta(minutes=1)
            assert len(reconcile(backend, grace_seconds=0, now=later)["rolled_back"]) == 1
        return real_decrement(table, doc_id, field, amount)

    monkeypatch.setattr(backend, "decrement_if_available", decrement)
    with pytest.raises(PlacementError) as exc:
        place_order(backend, cart.items, "Bo", "bo@example.com")

    assert exc.value.stage == STAGE_STOCK
    assert stock_of(backend, a) == 10
    assert stock_of(backend, b) == 5
    assert backend.count(ORDERS) == 0
    assert backend.count(ORDER_ITEMS) == 0
    assert backend.select_one(PLACEMENTS, {})["status"] == ROLLED_BACK


def test_line_prices_match_total_in_cents(backend, make_product):
    p = make_product("Sticker", price=0.1, stock=10)
    odd = make_product("Odd", price=1.005, stock=10)
    cart = Cart()
    cart.add(p, 3)
    cart.add(odd, 1)
    confirmation = place_order(backend, cart.items, "Bo", "bo@example.com")

    items = backend.select(ORDER_ITEMS, {"order_id": confirmation.order_id})
    assert all(i["unit_price"] == round(i["unit_price"], 2) for i in items)
    cents = sum(round(i["unit_price"] * 100) * i["quantity"] for i in items)
    assert cents == round(confirmation.total * 100)
