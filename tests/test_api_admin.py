"""Admin dashboard endpoints: catalog management, order status, customers and stats."""

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from main import app

PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 32
FIELDS = {"name": "Mug", "description": "Ceramic mug", "price": "12.5", "stock": "10", "category": "home"}


def create_product(client, headers, fields=FIELDS, images=1):
    return client.post(
        "/api/admin/products",
        headers=headers,
        data=fields,
        files=[("images", (f"mug{i}.png", PNG, "image/png")) for i in range(images)],
    )


class TestProducts:
    def test_create_product_stores_images(self, client, admin_headers, upload_dir):
        response = create_product(client, admin_headers, images=2)

        assert response.status_code == 201
        product = response.json()
        assert product["price"] == 12.5
        assert product["stock"] == 10
        assert product["average_rating"] == 0
        assert len(product["images"]) == 2
        assert len(list(upload_dir.iterdir())) == 2
        assert client.get("/api/products").json()[0]["id"] == product["id"]

    def test_image_required(self, client, admin_headers):
        response = client.post("/api/admin/products", headers=admin_headers, data=FIELDS)
        assert response.status_code == 400
        assert response.json()["detail"] == "At least one image is required"

    def test_at_most_three_images(self, client, admin_headers):
        assert create_product(client, admin_headers, images=4).status_code == 400

    def test_negative_price_rejected(self, client, admin_headers):
        assert create_product(client, admin_headers, {**FIELDS, "price": "-1"}).status_code == 422

    def test_customer_cannot_create(self, client, customer_headers):
        assert create_product(client, customer_headers).status_code == 403

    def test_update_product_fields_and_replace_images(self, client, admin_headers, upload_dir):
        product = create_product(client, admin_headers).json()
        old_file = product["images"][0].rsplit("/", 1)[1]

        response = client.put(
            f"/api/admin/products/{product['id']}",
            headers=admin_headers,
            data={"price": "15", "stock": "0"},
            files=[("images", ("new.webp", PNG, "image/webp"))],
        )

        assert response.status_code == 200
        updated = response.json()
        assert updated["price"] == 15
        assert updated["stock"] == 0
        assert updated["name"] == "Mug"
        assert updated["images"] != product["images"]
        assert not (upload_dir / old_file).exists()

    def test_update_without_images_keeps_them(self, client, admin_headers):
        product = create_product(client, admin_headers).json()
        response = client.put(f"/api/admin/products/{product['id']}", headers=admin_headers, data={"name": "Big Mug"})

        assert response.json()["name"] == "Big Mug"
        assert response.json()["images"] == product["images"]

    def test_delete_product_removes_images(self, client, admin_headers, upload_dir):
        product = create_product(client, admin_headers).json()

        response = client.delete(f"/api/admin/products/{product['id']}", headers=admin_headers)

        assert response.status_code == 200
        assert client.get(f"/api/products/{product['id']}").status_code == 404
        assert not any(upload_dir.iterdir())

    def test_failed_insert_removes_saved_images(self, client, admin_headers, upload_dir, monkeypatch):
        def failing_insert(db, collection, model):
            raise RuntimeError("write concern error")

        monkeypatch.setattr(main, "insert", failing_insert)
        response = create_product(TestClient(app, raise_server_exceptions=False), admin_headers, images=2)

        assert response.status_code == 500
        assert not any(upload_dir.iterdir())

    def test_failed_update_keeps_old_images_and_removes_new(self, client, admin_headers, upload_dir, monkeypatch):
        product = create_product(client, admin_headers).json()

        def failing_update(self, *args, **kwargs):
            raise RuntimeError("write concern error")

        monkeypatch.setattr(mongomock.Collection, "update_one", failing_update)
        response = TestClient(app, raise_server_exceptions=False).put(
            f"/api/admin/products/{product['id']}",
            headers=admin_headers,
            data={"name": "Big Mug"},
            files=[("images", ("new.png", PNG, "image/png"))],
        )

        assert response.status_code == 500
        assert [p.name for p in upload_dir.iterdir()] == [product["images"][0].rsplit("/", 1)[1]]

    def test_unknown_and_malformed_ids(self, client, admin_headers):
        assert client.delete(f"/api/admin/products/{ObjectId()}", headers=admin_headers).status_code == 404
        assert client.delete("/api/admin/products/not-an-id", headers=admin_headers).status_code == 400

    def test_list_products_filters_by_category(self, client, make_product):
        make_product(category="shoes")
        make_product(name="Lamp", category="home")
        assert [p["name"] for p in client.get("/api/products", params={"category": "home"}).json()] == ["Lamp"]


class TestOrdersAndStats:
    @pytest.fixture
    def order_id(self, client, customer_headers, make_product, shipping_address):
        product_id = make_product(price=25.0)
        response = client.post(
            "/api/orders",
            headers=customer_headers,
            json={"order_items": [{"product_id": product_id, "quantity": 2}], "shipping_address": shipping_address},
        )
        return response.json()["order"]["id"]

    def test_list_orders_includes_customer(self, client, admin_headers, order_id):
        orders = client.get("/api/admin/orders", headers=admin_headers).json()["orders"]
        assert orders[0]["id"] == order_id
        assert orders[0]["user"] == {"name": "Jane Customer", "email": "jane@shop.io"}

    def test_status_transitions_stamp_times_once(self, client, admin_headers, order_id):
        url = f"/api/admin/orders/{order_id}/status"

        shipped = client.patch(url, headers=admin_headers, json={"status": "shipped"}).json()["order"]
        again = client.patch(url, headers=admin_headers, json={"status": "shipped"}).json()["order"]
        delivered = client.patch(url, headers=admin_headers, json={"status": "delivered"}).json()["order"]

        assert shipped["status"] == "shipped"
        assert shipped["shipped_at"] is not None
        assert again["shipped_at"] == shipped["shipped_at"]
        assert delivered["status"] == "delivered"
        assert delivered["delivered_at"] is not None

    def test_invalid_status(self, client, admin_headers, order_id):
        response = client.patch(f"/api/admin/orders/{order_id}/status", headers=admin_headers, json={"status": "lost"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid status"

    def test_customers_hide_password_hash(self, client, admin_headers, customer):
        customers = client.get("/api/admin/customers", headers=admin_headers).json()["customers"]
        assert {c["email"] for c in customers} == {"jane@shop.io", "admin@shop.io"}
        assert all("password_hash" not in c for c in customers)

    def test_stats(self, client, admin_headers, order_id):
        stats = client.get("/api/admin/stats", headers=admin_headers).json()
        assert stats == {"total_revenue": 50.0, "total_orders": 1, "total_customers": 2, "total_products": 1}

    def test_stats_empty(self, client, admin_headers):
        stats = client.get("/api/admin/stats", headers=admin_headers).json()
        assert stats["total_revenue"] == 0
        assert stats["total_orders"] == 0
