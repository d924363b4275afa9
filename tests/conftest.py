import os
import tempfile
from itertools import count
from unittest import mock

import mongomock
import pytest

# The app reads its settings and opens its Mongo client at import time, so
# configure the environment and swap in mongomock before importing it.
os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "bargainmart_test"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="bargainmart-uploads-")

_mongo_patch = mock.patch("pymongo.MongoClient", mongomock.MongoClient)
_mongo_patch.start()

from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
import main  # noqa: E402

_ids = count(1)


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db[name].delete_many({})
    yield


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def register(client):
    """Register and log in an account; returns its id, token and auth headers."""

    def _register(role="customer", password="secret123", **extra):
        n = next(_ids)
        email = f"{role}{n}@example.com"
        body = {"name": f"{role.title()} {n}", "email": email, "password": password, "role": role, **extra}
        res = client.post("/api/auth/register", json=body)
        assert res.status_code == 201, res.text
        login = client.post("/api/auth/login", json={"email": email, "password": password})
        assert login.status_code == 200, login.text
        token = login.json()["token"]
        return {
            "id": res.json()["user"]["id"],
            "email": email,
            "password": password,
            "role": role,
            "token": token,
            "headers": {"Authorization": f"Bearer {token}"},
        }

    return _register


@pytest.fixture
def customer(register):
    return register("customer")


@pytest.fixture
def vendor(register):
    return register("vendor", shop_name="Corner Shop")


@pytest.fixture
def make_product(client):
    def _make(owner, name="Clay Pot", price=100, stock=5, category="Home", files=None):
        data = {"name": name, "price": str(price), "stock": str(stock), "category": category, "description": "Hand made"}
        res = client.post("/api/products", data=data, files=files, headers=owner["headers"])
        assert res.status_code == 201, res.text
        return res.json()

    return _make


@pytest.fixture
def product(vendor, make_product):
    return make_product(vendor)


@pytest.fixture
def start_bargain(client):
    def _start(owner, product, price=100):
        res = client.post(
            "/api/bargains/start",
            json={"product_id": product["id"], "vendor_id": product["vendor_id"], "price": price},
            headers=owner["headers"],
        )
        assert res.status_code == 200, res.text
        return res.json()

    return _start
