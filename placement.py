"""
Order placement: cart + customer -> order, order items, stock decrements.

The three writes are separate backend calls issued strictly in order
(order, then items, then one decrement per cart line). MongoDB gives us
no cross-collection transaction here, so every placement is tracked by a
``placement`` attempt document. A failed or abandoned attempt leaves its
partial writes in place; ``reconcile`` finds those attempts later and
rolls them back.

Stock is decremented with a conditional update that refuses to go below
zero, so two shoppers racing for the last unit cannot both win.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from cart import CartError, CartItem
from config import RECONCILE_GRACE_SECONDS
from database import ORDER_ITEMS, ORDERS, PLACEMENTS, PRODUCTS, Backend, BackendError, to_object_id
from schemas import Order, OrderItem, OrderStatus

logger = logging.getLogger(__name__)

STAGE_ORDER = "order"
STAGE_ITEMS = "items"
STAGE_STOCK = "stock"

# Attempt states. Once a sweep has claimed an attempt (rolling_back),
# place_order may no longer write to it.
STARTED = "started"
ORDER_WRITTEN = "order_written"
ITEMS_WRITTEN = "items_written"
COMPLETED = "completed"
FAILED = "failed"
ROLLING_BACK = "rolling_back"
ROLLED_BACK = "rolled_back"
IN_FLIGHT = (STARTED, ORDER_WRITTEN, ITEMS_WRITTEN)


class PlacementError(Exception):
    """A backend step of order placement failed.

    ``stage`` is one of order/items/stock. For the stock stage,
    ``partial_index`` is the cart line that failed; lines before it were
    already decremented.
    """

    def __init__(self, stage: str, cause: str, partial_index: Optional[int] = None,
                 insufficient_stock: bool = False, order_id: Optional[str] = None):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause
        self.partial_index = partial_index
        self.insufficient_stock = insufficient_stock
        self.order_id = order_id


@dataclass
class OrderConfirmation:
    order_id: str
    customer_name: str
    customer_email: str
    total: float
    status: str = OrderStatus.PENDING.value
    items: List[dict] = field(default_factory=list)


def unit_price(item: CartItem) -> float:
    return round(item.product["price"], 2)


def order_total(items: Sequence[CartItem]) -> float:
    return round(sum(unit_price(i) * i.quantity for i in items), 2)


def _validate(items: Sequence[CartItem], customer_name: str, customer_email: str):
    if not items:
        raise CartError("Empty cart", "Add at least one product before placing an order")
    if not customer_name or not customer_name.strip():
        raise CartError("Missing name", "Customer name is required")
    if not customer_email or not customer_email.strip():
        raise CartError("Missing email", "Customer email is required")
    for item in items:
        if item.quantity < 1:
            raise CartError("Invalid quantity", f"Quantity for {item.product.get('name')} must be at least 1")
        if item.quantity > item.product.get("stock", 0):
            raise CartError(
                "Insufficient stock",
                f"Only {item.product.get('stock', 0)} {item.product.get('name')} available",
            )


class _Reclaimed(Exception):
    """The attempt was claimed by reconcile() while place_order was running."""


class _Attempt:
    """Progress record for one placement."""

    def __init__(self, backend: Backend, doc: dict):
        self.backend = backend
        self.id = doc["_id"]
        self.decremented: List[int] = []

    def mark(self, status: str, **fields):
        doc = self.backend.update_where(
            PLACEMENTS,
            {"_id": self.id, "status": {"$nin": [ROLLING_BACK, ROLLED_BACK]}},
            {"$set": {"status": status, **fields}},
        )
        if doc is None:
            raise _Reclaimed()

    def fail(self, stage: str, cause: str, partial_index: Optional[int] = None):
        try:
            self.mark(FAILED, stage=stage, error=cause, partial_index=partial_index,
                      decremented=self.decremented)
        except BackendError:
            logger.exception("could not record failed placement %s", self.id)
        except _Reclaimed:
            logger.warning("placement %s already claimed by reconcile", self.id)


def _discard(backend: Backend, order_id: Optional[str], unrecorded: Optional[CartItem]):
    """Undo writes the sweep could not know about when it rolled the attempt back."""
    try:
        if unrecorded is not None:
            backend.increment(PRODUCTS, unrecorded.product_id, "stock", unrecorded.quantity)
        if order_id:
            backend.delete(ORDER_ITEMS, {"order_id": order_id})
            backend.delete(ORDERS, {"_id": to_object_id(order_id)})
    except BackendError:
        logger.exception("could not discard writes of rolled back order %s", order_id)


def place_order(backend: Backend, items: Sequence[CartItem], customer_name: str,
                customer_email: str) -> OrderConfirmation:
    """Persist an order for the given cart lines.

    Raises CartError before any write when the input is invalid, and
    PlacementError when a backend step fails. Nothing is retried and
    nothing is compensated here, unless reconcile() has already rolled
    this attempt back underneath us.
    """
    _validate(items, customer_name, customer_email)
    customer_name = customer_name.strip()
    customer_email = customer_email.strip().lower()
    total = order_total(items)
    lines = [
        {"product_id": i.product_id, "quantity": i.quantity, "unit_price": unit_price(i)}
        for i in items
    ]

    try:
        attempt = _Attempt(backend, backend.create_document(PLACEMENTS, {
            "status": STARTED,
            "customer_email": customer_email,
            "lines": lines,
            "decremented": [],
        }))
    except BackendError as e:
        raise PlacementError(STAGE_ORDER, e.message) from e

    stage = STAGE_ORDER
    order_id = None
    unrecorded = None
    try:
        try:
            order = backend.create_document(ORDERS, Order(
                customer_name=customer_name,
                customer_email=customer_email,
                status=OrderStatus.PENDING,
                total=total,
            ))
            order_id = str(order["_id"])
        except BackendError as e:
            logger.error("order write failed for %s: %s", customer_email, e.message)
            attempt.fail(STAGE_ORDER, e.message)
            raise PlacementError(STAGE_ORDER, e.message) from e

        stage = STAGE_ITEMS
        try:
            attempt.mark(ORDER_WRITTEN, order_id=order_id)
            rows = [OrderItem(order_id=order_id, **line).model_dump() for line in lines]
            backend.insert_many(ORDER_ITEMS, rows)
            attempt.mark(ITEMS_WRITTEN)
        except BackendError as e:
            logger.error("order %s has no items, item write failed: %s", order_id, e.message)
            attempt.fail(STAGE_ITEMS, e.message)
            raise PlacementError(STAGE_ITEMS, e.message, order_id=order_id) from e

        stage = STAGE_STOCK
        for index, item in enumerate(items):
            try:
                ok = backend.decrement_if_available(PRODUCTS, item.product_id, "stock", item.quantity)
            except BackendError as e:
                logger.error("stock decrement failed for order %s line %d: %s", order_id, index, e.message)
                attempt.fail(STAGE_STOCK, e.message, index)
                raise PlacementError(STAGE_STOCK, e.message, index, order_id=order_id) from e
            if not ok:
                cause = f"Insufficient stock for {item.product.get('name', item.product_id)}"
                logger.warning("order %s line %d: %s", order_id, index, cause)
                attempt.fail(STAGE_STOCK, cause, index)
                raise PlacementError(STAGE_STOCK, cause, index, insufficient_stock=True, order_id=order_id)
            unrecorded = item
            attempt.decremented.append(index)
            try:
                attempt.mark(ITEMS_WRITTEN, decremented=attempt.decremented)
            except BackendError as e:
                attempt.fail(STAGE_STOCK, e.message, index)
                raise PlacementError(STAGE_STOCK, e.message, index, order_id=order_id) from e
            unrecorded = None

        try:
            attempt.mark(COMPLETED)
        except BackendError:
            # reconcile() marks it completed since every line was decremented
            logger.exception("order %s placed but attempt %s not marked completed", order_id, attempt.id)
    except _Reclaimed:
        logger.warning("placement %s was rolled back while order %s was being placed", attempt.id, order_id)
        _discard(backend, order_id, unrecorded)
        raise PlacementError(stage, "Placement was rolled back before it finished")

    logger.info("order %s placed for %s, total %.2f", order_id, customer_email, total)
    return OrderConfirmation(
        order_id=order_id,
        customer_name=customer_name,
        customer_email=customer_email,
        total=total,
        items=lines,
    )


def _aware(dt):
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _claim(backend: Backend, attempt_id, from_states, to_state: str) -> Optional[dict]:
    return backend.update_where(
        PLACEMENTS,
        {"_id": attempt_id, "status": {"$in": list(from_states)}},
        {"$set": {"status": to_state}},
    )


def _roll_back(backend: Backend, attempt: dict):
    """Undo a claimed attempt. Safe to repeat after a partial run."""
    lines = attempt.get("lines", [])
    for index in list(attempt.get("decremented", [])):
        # each line is restocked by whichever sweep pulls it first
        taken = backend.update_where(
            PLACEMENTS,
            {"_id": attempt["_id"], "decremented": index},
            {"$pull": {"decremented": index}, "$push": {"restocked": index}},
        )
        if taken is None:
            continue
        line = lines[index]
        if not backend.increment(PRODUCTS, line["product_id"], "stock", line["quantity"]):
            logger.warning("product %s gone, cannot restock %d", line["product_id"], line["quantity"])
    order_id = attempt.get("order_id")
    if order_id:
        backend.delete(ORDER_ITEMS, {"order_id": order_id})
        oid = to_object_id(order_id)
        if oid is not None:
            backend.delete(ORDERS, {"_id": oid})
    backend.update_where(
        PLACEMENTS,
        {"_id": attempt["_id"], "status": ROLLING_BACK},
        {"$set": {"status": ROLLED_BACK, "rolled_back_at": datetime.now(timezone.utc)}},
    )
    logger.info("placement %s rolled back (order %s)", attempt["_id"], order_id)


def reconcile(backend: Backend, grace_seconds: int = RECONCILE_GRACE_SECONDS,
              now: Optional[datetime] = None) -> dict:
    """Settle placement attempts that did not complete.

    Failed attempts are rolled back right away. Attempts still in flight
    after ``grace_seconds`` are marked completed if every line was
    decremented, and rolled back otherwise. Attempts left in rolling_back
    by an interrupted sweep are resumed. Each attempt is claimed with a
    conditional update first, so concurrent or repeated sweeps settle it
    once.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=grace_seconds)
    summary = {"rolled_back": [], "completed": []}

    for attempt in backend.select(PLACEMENTS, {"status": {"$in": [FAILED, ROLLING_BACK, *IN_FLIGHT]}}):
        attempt_id = str(attempt["_id"])
        status = attempt["status"]
        if status in IN_FLIGHT:
            if _aware(attempt["created_at"]) > cutoff:
                continue
            if attempt.get("order_id") and len(attempt.get("decremented", [])) == len(attempt.get("lines", [])):
                if _claim(backend, attempt["_id"], IN_FLIGHT, COMPLETED) is not None:
                    summary["completed"].append(attempt_id)
                continue
            claimed = _claim(backend, attempt["_id"], IN_FLIGHT, ROLLING_BACK)
        elif status == FAILED:
            claimed = _claim(backend, attempt["_id"], [FAILED], ROLLING_BACK)
        else:
            claimed = backend.select_one(PLACEMENTS, {"_id": attempt["_id"], "status": ROLLING_BACK})
        if claimed is None:
            continue
        _roll_back(backend, claimed)
        summary["rolled_back"].append(attempt_id)

    return summary
