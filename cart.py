"""
Shopping cart held for one browsing session.

A cart line keeps a reference to the product row it was built from, so the
stock and price used for validation and for the order snapshot are the
ones the shopper saw.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config import CART_IDLE_SECONDS, MAX_PER_ADD

logger = logging.getLogger(__name__)


class CartError(ValueError):
    """Rejected cart change; nothing was sent to the backend."""

    def __init__(self, title: str, message: str):
        super().__init__(message)
        self.title = title
        self.message = message


@dataclass
class CartItem:
    product: dict
    quantity: int

    @property
    def product_id(self) -> str:
        return str(self.product.get("id", self.product.get("_id")))

    @property
    def subtotal(self) -> float:
        return self.product["price"] * self.quantity


def _insufficient(product: dict) -> CartError:
    return CartError("Insufficient stock", f"Only {product.get('stock', 0)} items available")


@dataclass
class Cart:
    items: List[CartItem] = field(default_factory=list)

    def find(self, product_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.product_id == str(product_id):
                return item
        return None

    def add(self, product: dict, quantity: int = 1) -> CartItem:
        if quantity < 1:
            raise CartError("Invalid quantity", "Quantity must be at least 1")
        if quantity > MAX_PER_ADD:
            raise CartError("Invalid quantity", f"At most {MAX_PER_ADD} items can be added at once")
        existing = self.find(str(product.get("id", product.get("_id"))))
        new_quantity = quantity + (existing.quantity if existing else 0)
        if new_quantity > product.get("stock", 0):
            raise _insufficient(product)
        if existing:
            existing.product = product
            existing.quantity = new_quantity
            return existing
        item = CartItem(product=product, quantity=quantity)
        self.items.append(item)
        return item

    def update(self, product_id: str, quantity: int) -> Optional[CartItem]:
        """Set a line's quantity; 0 removes the line."""
        item = self.find(product_id)
        if item is None:
            raise CartError("Not in cart", "Product is not in the cart")
        if quantity == 0:
            self.remove(product_id)
            return None
        if quantity < 0:
            raise CartError("Invalid quantity", "Quantity must not be negative")
        if quantity > item.product.get("stock", 0):
            raise _insufficient(item.product)
        item.quantity = quantity
        return item

    def remove(self, product_id: str) -> None:
        self.items = [i for i in self.items if i.product_id != str(product_id)]

    def clear(self) -> None:
        self.items = []

    @property
    def total_items(self) -> int:
        return sum(i.quantity for i in self.items)

    @property
    def total_price(self) -> float:
        return round(sum(i.subtotal for i in self.items), 2)

    def is_empty(self) -> bool:
        return not self.items

    def to_dict(self) -> dict:
        return {
            "items": [
                {
                    "product_id": i.product_id,
                    "name": i.product.get("name"),
                    "price": i.product["price"],
                    "quantity": i.quantity,
                    "subtotal": round(i.subtotal, 2),
                }
                for i in self.items
            ],
            "total_items": self.total_items,
            "total_price": self.total_price,
        }


class CartRegistry:
    """Carts by id, owned by the running application.

    A cart untouched for ``max_idle`` seconds is evicted the next time a
    cart is created.
    """

    def __init__(self, max_idle: int = CART_IDLE_SECONDS, clock=time.monotonic):
        self._carts: Dict[str, Cart] = {}
        self._touched: Dict[str, float] = {}
        self.max_idle = max_idle
        self._clock = clock

    def create(self) -> str:
        self.evict_idle()
        cart_id = uuid.uuid4().hex
        self._carts[cart_id] = Cart()
        self._touched[cart_id] = self._clock()
        return cart_id

    def get(self, cart_id: str) -> Optional[Cart]:
        cart = self._carts.get(cart_id)
        if cart is not None:
            self._touched[cart_id] = self._clock()
        return cart

    def discard(self, cart_id: str) -> None:
        self._carts.pop(cart_id, None)
        self._touched.pop(cart_id, None)

    def evict_idle(self) -> int:
        cutoff = self._clock() - self.max_idle
        stale = [cid for cid, seen in self._touched.items() if seen < cutoff]
        for cart_id in stale:
            self.discard(cart_id)
        if stale:
            logger.info("evicted %d idle carts", len(stale))
        return len(stale)

    def __len__(self):
        return len(self._carts)
