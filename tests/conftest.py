"""Shared fixtures: an in-memory MongoDB, an API test client and signed-in users."""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ADMIN_EMAIL", "admin@shop.io")
os.environ.setdefault("DB_URL", "mongodb://localhost:27017/test-db")

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import get_settings
from database import get_db
from main import app
from schemas import Product

PASSWORD = "Secret@123"


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient().get_database("storefront-test")


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(get_settings(), "upload_dir", str(path))
    return path


@pytest.fixture
def client(mongo_db):
    app.dependency_overrides[get_db] = lambda: mongo_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def signup(client: TestClient, name: str, email: str) -> dict:
    response = client.post("/api/auth/signup", json={"name": name, "email": email, "password": PASSWORD})
    assert response.status_code == 201, response.text
    body = response.json()
    return {"Authorization": f"Bearer {body['access_token']}", "user": body["user"]}


@pytest.fixture
def customer(client):
    return signup(client, "Jane Customer", "jane@shop.io")


@pytest.fixture
def customer_headers(customer):
    return {"Authorization": customer["Authorization"]}


@pytest.fixture
def other_headers(client):
    return {"Authorization": signup(client, "Sam Other", "sam@shop.io")["Authorization"]}


@pytest.fixture
def admin_headers(client):
    return {"Authorization": signup(client, "Store Admin", "admin@shop.io")["Authorization"]}


@pytest.fixture
def make_product(mongo_db):
    def _make(**overrides) -> str:
        fields = {
            "name": "Trail Runner",
            "description": "Lightweight running shoe",
            "price": 80.0,
            "stock": 5,
            "category": "shoes",
            "images": ["/uploads/shoe.png"],
        }
        fields.update(overrides)
        res = mongo_db["product"].insert_one(Product(**fields).model_dump())
        return str(res.inserted_id)
    return _make


@pytest.fixture
def shipping_address():
    return {
        "full_name": "Jane Customer",
        "street_address": "1 Market St",
        "city": "Springfield",
        "state": "IL",
        "zip_code": "62701",
        "phone_number": "+1 555 0100",
    }
