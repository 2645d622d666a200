import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from cart import CartRegistry
from database import PRODUCTS, USERS, Backend, serialize_doc
from auth import hash_password


@pytest.fixture
def backend():
    return Backend(mongomock.MongoClient()["storefront_test"])


@pytest.fixture
def make_product(backend):
    def _make(name="Widget", price=10.0, stock=20, **extra):
        doc = backend.create_document(PRODUCTS, {"name": name, "price": price, "stock": stock, **extra})
        return serialize_doc(doc)
    return _make


@pytest.fixture
def client(backend):
    main.app.dependency_overrides[main.get_backend] = lambda: backend
    main.app.state.carts = CartRegistry()
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(client, backend):
    backend.create_document(USERS, {
        "name": "Admin",
        "email": "admin@shop.com",
        "password_hash": hash_password("admin123"),
        "is_admin": True,
    })
    res = client.post("/auth/login", json={"email": "admin@shop.com", "password": "admin123"})
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['token']}"}
