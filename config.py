"""
Application configuration, read once from the environment at import.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = os.getenv("JWT_ALGO", "HS256")
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "7"))

# Stock tiers: 0 is out of stock, 1..LOW_STOCK_THRESHOLD is low stock.
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))
# Largest quantity a single add-to-cart action may request.
MAX_PER_ADD = int(os.getenv("MAX_PER_ADD", "10"))
# Carts not touched for this long are dropped from memory.
CART_IDLE_SECONDS = int(os.getenv("CART_IDLE_SECONDS", "3600"))

RECONCILE_GRACE_SECONDS = int(os.getenv("RECONCILE_GRACE_SECONDS", "300"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))
