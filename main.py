import logging
import os
import re
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import database
from auth import AuthError, get_session, hash_password, sign_in, sign_out, sign_up
from cart import Cart, CartError, CartItem, CartRegistry
from config import LOG_LEVEL, PORT
from database import ORDERS, PRODUCTS, USERS, Backend, BackendError, serialize_doc
from inventory import aggregate, alert_list, annotate
from orders import BY_EMAIL, BY_ID, find_order, list_orders, set_status
from placement import PlacementError, place_order, reconcile
from schemas import (
    CartLineBody,
    CartQuantityBody,
    CustomerBody,
    LoginBody,
    OrderCreateBody,
    ProductUpdateBody,
    SignupBody,
    StatusUpdateBody,
    Product as ProductSchema,
    User as UserSchema,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("storefront")

app = FastAPI(title="Storefront Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.carts = CartRegistry()

security = HTTPBearer()


# ----------------------- Utils -----------------------
def problem(status_code: int, title: str, message: str, **extra) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"title": title, "message": message, **extra})


def get_backend() -> Backend:
    if database.db is None:
        raise problem(503, "Backend unavailable", "Database is not configured")
    return Backend(database.db)


def get_carts(request: Request) -> CartRegistry:
    return request.app.state.carts


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    backend: Backend = Depends(get_backend),
):
    user = get_session(backend, credentials.credentials)
    if user is None:
        raise problem(401, "Not signed in", "Session expired or invalid")
    return user


def require_admin(user=Depends(get_current_user)):
    if not user.get("is_admin"):
        raise problem(403, "Admin only", "This action requires an administrator")
    return user


def load_product(backend: Backend, product_id: str) -> dict:
    product = backend.get(PRODUCTS, product_id)
    if not product:
        raise problem(404, "Product not found", f"No product with id {product_id}")
    return serialize_doc(product)


def load_cart(carts: CartRegistry, cart_id: str) -> Cart:
    cart = carts.get(cart_id)
    if cart is None:
        raise problem(404, "Cart not found", f"No cart with id {cart_id}")
    return cart


@app.exception_handler(CartError)
def cart_error_handler(request: Request, exc: CartError):
    return JSONResponse(status_code=400, content={"detail": {"title": exc.title, "message": exc.message}})


@app.exception_handler(PlacementError)
def placement_error_handler(request: Request, exc: PlacementError):
    return JSONResponse(
        status_code=409 if exc.insufficient_stock else 502,
        content={"detail": {
            "title": "Error placing order",
            "message": exc.cause,
            "stage": exc.stage,
            "partial_index": exc.partial_index,
            "order_id": exc.order_id,
        }},
    )


@app.exception_handler(BackendError)
def backend_error_handler(request: Request, exc: BackendError):
    return JSONResponse(status_code=502, content={"detail": {"title": "Backend error", "message": exc.message}})


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if os.getenv("DATABASE_URL") else "Not Set",
        "database_name": "Set" if os.getenv("DATABASE_NAME") else "Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/auth/signup")
def signup(body: SignupBody, backend: Backend = Depends(get_backend)):
    try:
        result = sign_up(backend, body.name, body.email, body.password)
    except AuthError as e:
        raise problem(400, "Sign up failed", e.message)
    result["redirect"] = body.redirect
    return result


@app.post("/auth/login")
def login(body: LoginBody, backend: Backend = Depends(get_backend)):
    try:
        return sign_in(backend, body.email, body.password)
    except AuthError as e:
        raise problem(401, "Sign in failed", e.message)


@app.post("/auth/logout")
def logout(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    backend: Backend = Depends(get_backend),
):
    return {"ok": sign_out(backend, credentials.credentials)}


@app.get("/auth/session")
def session(user=Depends(get_current_user)):
    return {"user": user}


# ----------------------- Products -----------------------
@app.get("/products")
def list_products(q: Optional[str] = None, backend: Backend = Depends(get_backend)):
    filt = {"stock": {"$gt": 0}}
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}]
    items = backend.select(PRODUCTS, filt, sort=[("created_at", -1), ("_id", -1)], limit=100)
    return [annotate(serialize_doc(i)) for i in items]


@app.get("/products/{product_id}")
def get_product(product_id: str, backend: Backend = Depends(get_backend)):
    return annotate(load_product(backend, product_id))


@app.post("/products")
def create_product(body: ProductSchema, user=Depends(require_admin), backend: Backend = Depends(get_backend)):
    doc = backend.create_document(PRODUCTS, body)
    logger.info("product %s created by %s", doc["_id"], user["email"])
    return {"id": str(doc["_id"])}


@app.put("/products/{product_id}")
def update_product(
    product_id: str,
    body: ProductUpdateBody,
    user=Depends(require_admin),
    backend: Backend = Depends(get_backend),
):
    update = body.model_dump(exclude_none=True)
    if "name" in update and not update["name"].strip():
        raise problem(400, "Invalid product data", "name must not be blank")
    if not update:
        return annotate(load_product(backend, product_id))
    updated = backend.update(PRODUCTS, product_id, update)
    if updated is None:
        raise problem(404, "Product not found", f"No product with id {product_id}")
    return annotate(serialize_doc(updated))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_admin), backend: Backend = Depends(get_backend)):
    product = backend.get(PRODUCTS, product_id)
    if not product:
        raise problem(404, "Product not found", f"No product with id {product_id}")
    backend.delete(PRODUCTS, {"_id": product["_id"]})
    return {"ok": True}


# ----------------------- Cart -----------------------
@app.post("/carts")
def create_cart(carts: CartRegistry = Depends(get_carts)):
    return {"id": carts.create()}


@app.get("/carts/{cart_id}")
def get_cart(cart_id: str, carts: CartRegistry = Depends(get_carts)):
    return load_cart(carts, cart_id).to_dict()


@app.post("/carts/{cart_id}/items")
def add_to_cart(
    cart_id: str,
    body: CartLineBody,
    carts: CartRegistry = Depends(get_carts),
    backend: Backend = Depends(get_backend),
):
    cart = load_cart(carts, cart_id)
    cart.add(load_product(backend, body.product_id), body.quantity)
    return cart.to_dict()


@app.patch("/carts/{cart_id}/items/{product_id}")
def update_cart_item(
    cart_id: str,
    product_id: str,
    body: CartQuantityBody,
    carts: CartRegistry = Depends(get_carts),
):
    cart = load_cart(carts, cart_id)
    cart.update(product_id, body.quantity)
    return cart.to_dict()


@app.delete("/carts/{cart_id}/items/{product_id}")
def remove_from_cart(cart_id: str, product_id: str, carts: CartRegistry = Depends(get_carts)):
    cart = load_cart(carts, cart_id)
    cart.remove(product_id)
    return cart.to_dict()


@app.delete("/carts/{cart_id}")
def delete_cart(cart_id: str, carts: CartRegistry = Depends(get_carts)):
    load_cart(carts, cart_id)
    carts.discard(cart_id)
    return {"ok": True}


@app.post("/carts/{cart_id}/checkout")
def checkout(
    cart_id: str,
    body: CustomerBody,
    carts: CartRegistry = Depends(get_carts),
    backend: Backend = Depends(get_backend),
):
    cart = load_cart(carts, cart_id)
    confirmation = place_order(backend, cart.items, body.customer_name, body.customer_email)
    carts.discard(cart_id)
    return asdict(confirmation)


# ----------------------- Orders -----------------------
@app.post("/orders")
def create_order(body: OrderCreateBody, backend: Backend = Depends(get_backend)):
    quantities = {}
    for line in body.items:
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity
    items = [CartItem(product=load_product(backend, pid), quantity=qty) for pid, qty in quantities.items()]
    confirmation = place_order(backend, items, body.customer_name, body.customer_email)
    return asdict(confirmation)


@app.get("/orders/track")
def track_order(
    order_id: Optional[str] = None,
    email: Optional[str] = None,
    backend: Backend = Depends(get_backend),
):
    if order_id:
        by, value = BY_ID, order_id
    elif email:
        by, value = BY_EMAIL, email
    else:
        raise problem(400, "Missing search value", "Provide an order id or an email address")
    try:
        order = find_order(backend, by, value)
    except BackendError as e:
        raise problem(502, "Search failed", e.message)
    if order is None:
        message = "No order found with this ID" if by == BY_ID else "No orders found for this email address"
        raise problem(404, "Order not found", message)
    return order


# ----------------------- Admin -----------------------
@app.get("/admin/products")
def admin_products(user=Depends(require_admin), backend: Backend = Depends(get_backend)):
    items = backend.select(PRODUCTS, sort=[("created_at", -1), ("_id", -1)])
    return [annotate(serialize_doc(i)) for i in items]


@app.get("/admin/orders")
def admin_orders(user=Depends(require_admin), backend: Backend = Depends(get_backend)):
    return list_orders(backend)


@app.put("/admin/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: StatusUpdateBody,
    user=Depends(require_admin),
    backend: Backend = Depends(get_backend),
):
    order = set_status(backend, order_id, body.status)
    if order is None:
        raise problem(404, "Order not found", f"No order with id {order_id}")
    return order


@app.get("/admin/stock")
def stock_overview(user=Depends(require_admin), backend: Backend = Depends(get_backend)):
    products = [serialize_doc(p) for p in backend.select(PRODUCTS, sort=[("stock", 1), ("_id", 1)])]
    return {
        "stats": aggregate(products).model_dump(),
        "alerts": [annotate(p) for p in alert_list(products)],
    }


@app.get("/admin/stats")
def admin_stats(user=Depends(require_admin), backend: Backend = Depends(get_backend)):
    products = backend.select(PRODUCTS)
    return {
        "users": backend.count(USERS),
        "products": len(products),
        "orders": backend.count(ORDERS),
        "stock": aggregate(products).model_dump(),
    }


@app.post("/admin/reconcile")
def reconcile_placements(user=Depends(require_admin), backend: Backend = Depends(get_backend)):
    summary = reconcile(backend)
    logger.info("reconcile by %s: %s", user["email"], summary)
    return summary


# ----------------------- Seed Demo Data -----------------------
DEMO_PRODUCTS = [
    {
        "name": "Espresso Beans 1kg",
        "description": "Dark roast, chocolate and caramel notes.",
        "price": 89.90,
        "stock": 40,
        "image_url": "https://images.unsplash.com/photo-1559056199-641a0ac8b55e",
    },
    {
        "name": "Pour-over Kettle",
        "description": "Gooseneck spout, 1L stainless steel.",
        "price": 159.00,
        "stock": 8,
        "image_url": "https://images.unsplash.com/photo-1517256064527-09c73fc73e38",
    },
    {
        "name": "Ceramic Dripper",
        "description": "Hand-glazed V60 style dripper.",
        "price": 74.50,
        "stock": 3,
        "image_url": None,
    },
    {
        "name": "Paper Filters (100)",
        "description": "Unbleached, size 02.",
        "price": 19.90,
        "stock": 120,
        "image_url": None,
    },
    {
        "name": "Burr Grinder",
        "description": "Conical burrs, 40 grind settings.",
        "price": 499.00,
        "stock": 0,
        "image_url": "https://images.unsplash.com/photo-1587734195503-904fca47e0e9",
    },
    {
        "name": "Glass Server 600ml",
        "description": "Heat resistant borosilicate.",
        "price": 64.00,
        "stock": 15,
        "image_url": None,
    },
]


@app.post("/seed")
def seed(backend: Backend = Depends(get_backend)):
    if backend.count(PRODUCTS) > 0:
        return {"seeded": False, "message": "Products already exist"}
    for p in DEMO_PRODUCTS:
        backend.create_document(PRODUCTS, ProductSchema(**p))
    if backend.count(USERS, {"is_admin": True}) == 0:
        admin = UserSchema(name="Admin", email="admin@shop.com", password_hash=hash_password("admin123"), is_admin=True)
        backend.create_document(USERS, admin)
    return {"seeded": True, "products": backend.count(PRODUCTS)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
