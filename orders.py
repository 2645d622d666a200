"""
Reading orders back (tracking and admin listing) and moving them through
the status lifecycle.
"""
import logging
from typing import List, Optional

from database import ORDER_ITEMS, ORDERS, PRODUCTS, Backend, serialize_doc, to_object_id
from schemas import STATUS_FLOW, OrderStatus

logger = logging.getLogger(__name__)

BY_ID = "id"
BY_EMAIL = "email"


def progress(status: OrderStatus) -> List[dict]:
    """Timeline entries: every status up to and including the current one is passed."""
    position = STATUS_FLOW.index(OrderStatus(status))
    return [{"status": s.value, "passed": i <= position} for i, s in enumerate(STATUS_FLOW)]


def _with_items(backend: Backend, orders: List[dict]) -> List[dict]:
    """Join orders with their items and each item's product name."""
    if not orders:
        return []
    order_ids = [str(o["_id"]) for o in orders]
    items = backend.select(ORDER_ITEMS, {"order_id": {"$in": order_ids}}, sort=[("_id", 1)])

    product_ids = {to_object_id(i["product_id"]) for i in items}
    product_ids.discard(None)
    names = {}
    if product_ids:
        for p in backend.select(PRODUCTS, {"_id": {"$in": list(product_ids)}}):
            names[str(p["_id"])] = p.get("name")

    by_order = {oid: [] for oid in order_ids}
    for item in items:
        by_order[item["order_id"]].append({
            "product_id": item["product_id"],
            "quantity": item["quantity"],
            "unit_price": item["unit_price"],
            "product_name": names.get(item["product_id"]),
        })

    result = []
    for o in orders:
        doc = serialize_doc(o)
        doc["order_items"] = by_order[doc["id"]]
        doc["progress"] = progress(doc["status"])
        result.append(doc)
    return result


def find_order(backend: Backend, by: str, value: str) -> Optional[dict]:
    """Look up one order by exact id or by email (newest order wins).

    Returns None when nothing matches.
    """
    value = (value or "").strip()
    if not value:
        return None
    if by == BY_ID:
        order = backend.get(ORDERS, value)
    elif by == BY_EMAIL:
        order = backend.select_one(
            ORDERS, {"customer_email": value.lower()}, sort=[("created_at", -1), ("_id", -1)]
        )
    else:
        raise ValueError(f"unknown lookup criterion: {by}")
    if order is None:
        return None
    return _with_items(backend, [order])[0]


def list_orders(backend: Backend) -> List[dict]:
    orders = backend.select(ORDERS, sort=[("created_at", -1), ("_id", -1)])
    return _with_items(backend, orders)


def set_status(backend: Backend, order_id: str, status: OrderStatus) -> Optional[dict]:
    """Change an order's status. Any status may follow any other.

    Returns the updated order, or None if it does not exist.
    """
    status = OrderStatus(status)
    current = backend.get(ORDERS, order_id)
    if current is None:
        return None
    previous = OrderStatus(current["status"])
    if STATUS_FLOW.index(status) < STATUS_FLOW.index(previous):
        logger.warning("order %s moved backwards: %s -> %s", order_id, previous.value, status.value)
    updated = backend.update(ORDERS, order_id, {"status": status.value})
    if updated is None:
        return None
    logger.info("order %s status %s -> %s", order_id, previous.value, status.value)
    return _with_items(backend, [updated])[0]
