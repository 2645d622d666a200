"""
Stock tiers, alert lists and inventory statistics.

Pure functions over product rows (dicts with at least ``stock`` and
``price``). Used by the storefront listing to label products and cap
add-to-cart quantities, and by the admin stock view.
"""
import logging
from typing import Iterable, List, NamedTuple

from config import LOW_STOCK_THRESHOLD, MAX_PER_ADD
from schemas import StockStats

logger = logging.getLogger(__name__)

OUT_OF_STOCK = "out-of-stock"
LOW_STOCK = "low-stock"
IN_STOCK = "in-stock"


class StockTier(NamedTuple):
    label: str
    severity: int


def classify(stock: int) -> StockTier:
    """Bucket a stock level: 0 -> out-of-stock (3), 1..threshold -> low-stock (2), else in-stock (1)."""
    if stock < 0:
        logger.warning("negative stock observed (%s); treating as out of stock", stock)
        return StockTier(OUT_OF_STOCK, 3)
    if stock == 0:
        return StockTier(OUT_OF_STOCK, 3)
    if stock <= LOW_STOCK_THRESHOLD:
        return StockTier(LOW_STOCK, 2)
    return StockTier(IN_STOCK, 1)


def aggregate(products: Iterable[dict]) -> StockStats:
    total = low = out = 0
    value = 0.0
    for p in products:
        stock = p.get("stock", 0)
        total += 1
        tier = classify(stock)
        if tier.label == OUT_OF_STOCK:
            out += 1
        elif tier.label == LOW_STOCK:
            low += 1
        value += max(stock, 0) * p.get("price", 0)
    return StockStats(
        totalProducts=total,
        lowStockCount=low,
        outOfStockCount=out,
        totalValue=round(value, 2),
    )


def _product_key(p: dict) -> str:
    return str(p.get("id", p.get("_id", "")))


def alert_list(products: Iterable[dict]) -> List[dict]:
    """Products at or below the low-stock threshold, most urgent first.

    Ordered by severity descending, then stock ascending, then id.
    """
    alerts = [p for p in products if p.get("stock", 0) <= LOW_STOCK_THRESHOLD]
    return sorted(
        alerts,
        key=lambda p: (-classify(p.get("stock", 0)).severity, p.get("stock", 0), _product_key(p)),
    )


def max_purchasable(product: dict) -> int:
    return max(0, min(product.get("stock", 0), MAX_PER_ADD))


def annotate(product: dict) -> dict:
    """Copy of a product row with its tier and purchase cap attached."""
    tier = classify(product.get("stock", 0))
    return {
        **product,
        "stock_status": tier.label,
        "severity": tier.severity,
        "max_purchasable": max_purchasable(product),
    }
