"""Integration tests for Inventory API endpoints via TestClient."""

import pytest
from fastapi.testclient import TestClient

from app import create_app
from inventory.stock.stock import Product
from protean import UnitOfWork
from shared import database
from sqlalchemy import update

ADMIN = {"X-User-Id": "admin-001", "X-User-Role": "admin"}
BUYER = {"X-User-Id": "buyer-001"}


@pytest.fixture()
def client():
    return TestClient(create_app())


class TestAdjustments:
    def test_adjust_stock(self, client, make_product, stock_level):
        product = make_product(quantity=5)

        response = client.post(
            "/inventory/adjustments",
            json={"product_id": product.id, "quantity_change": -2, "reason": "Damaged in transit"},
            headers=ADMIN,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["quantity"] == -2
        assert body["data"]["new_stock"] == 3
        assert stock_level(product.id) == 3

    def test_oversell_is_a_conflict(self, client, make_product):
        product = make_product(quantity=1)

        response = client.post(
            "/inventory/adjustments",
            json={"product_id": product.id, "quantity_change": -2, "reason": "count"},
            headers=ADMIN,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INSUFFICIENT_STOCK"

    def test_buyer_is_forbidden(self, client, make_product):
        product = make_product()
        response = client.post(
            "/inventory/adjustments",
            json={"product_id": product.id, "quantity_change": 1, "reason": "count"},
            headers=BUYER,
        )
        assert response.status_code == 403

    def test_anonymous_is_unauthorized(self, client, make_product):
        product = make_product()
        response = client.post(
            "/inventory/adjustments", json={"product_id": product.id, "quantity_change": 1, "reason": "count"}
        )
        assert response.status_code == 401

    def test_missing_reason_is_a_validation_error(self, client, make_product):
        product = make_product()
        response = client.post(
            "/inventory/adjustments", json={"product_id": product.id, "quantity_change": 1}, headers=ADMIN
        )
        assert response.status_code == 400
        assert "reason" in response.json()["errors"]


class TestReceiptsAndMovements:
    def test_receive_then_list(self, client, make_product):
        product = make_product(quantity=0)

        received = client.post(
            "/inventory/receipts",
            json={"product_id": product.id, "quantity": 12, "reference_id": "PO-1"},
            headers=ADMIN,
        )
        assert received.status_code == 201

        listed = client.get("/inventory/movements", params={"product_id": product.id}, headers=ADMIN)
        assert listed.status_code == 200
        data = listed.json()["data"]
        assert data["total"] == 1
        assert data["movements"][0]["reference_type"] == "receiving"


class TestMaintenance:
    def test_consistency_and_rebuild(self, client, make_product):
        product = make_product(quantity=3)
        model = database.model_for(Product)
        with UnitOfWork():
            database.session().execute(update(model).where(model.id == product.id).values(stock_quantity=7))

        report = client.get("/inventory/maintenance/consistency", headers=ADMIN).json()["data"]
        assert report["consistent"] is False
        assert report["discrepancies"][0]["drift"] == 4

        rebuilt = client.post("/inventory/maintenance/rebuild", json={"product_id": product.id}, headers=ADMIN)
        assert rebuilt.json()["data"]["stock_quantity"] == 3

        report = client.get("/inventory/maintenance/consistency", headers=ADMIN).json()["data"]
        assert report["consistent"] is True


class TestCatalogueRegistration:
    def test_register_product_and_variant(self, client, stock_level):
        created = client.post(
            "/inventory/products",
            json={"name": "Desk Lamp", "price": "45.50", "initial_quantity": 6},
            headers=ADMIN,
        )
        assert created.status_code == 201
        product = created.json()["data"]
        assert product["name"] == "Desk Lamp"
        assert product["price"] == "45.50"
        assert product["stock_quantity"] == 6

        variant = client.post(
            f"/inventory/products/{product['id']}/variants",
            json={"name": "Brass", "sku": "LAMP-BRASS", "initial_quantity": 2},
            headers=ADMIN,
        )
        assert variant.status_code == 201
        assert variant.json()["data"]["sku"] == "LAMP-BRASS"
        assert stock_level(product["id"], variant.json()["data"]["id"]) == 2

        ledger = client.get("/inventory/movements", params={"product_id": product["id"]}, headers=ADMIN)
        assert ledger.json()["data"]["total"] == 2

    def test_variant_of_unknown_product(self, client):
        response = client.post("/inventory/products/missing/variants", json={"name": "Brass"}, headers=ADMIN)
        assert response.status_code == 404

    def test_negative_opening_stock_is_rejected(self, client):
        response = client.post(
            "/inventory/products", json={"name": "Lamp", "price": "1.00", "initial_quantity": -1}, headers=ADMIN
        )
        assert response.status_code == 400

    def test_buyer_cannot_register(self, client):
        response = client.post("/inventory/products", json={"name": "Lamp", "price": "1.00"}, headers=BUYER)
        assert response.status_code == 403


class TestStockQueries:
    def test_stats(self, client, make_product):
        make_product(name="Plenty", price="10.00", quantity=50)
        make_product(name="Scarce", price="5.00", quantity=3)
        make_product(name="Gone", price="1.00", quantity=0)

        response = client.get("/inventory/stats", headers=ADMIN)

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["total_products"] == 3
        assert stats["total_units"] == 53
        assert stats["total_stock_value"] == "515.00"
        assert stats["low_stock"] == 1
        assert stats["out_of_stock"] == 1
        assert stats["low_stock_threshold"] == 10

    def test_stats_threshold_parameter(self, client, make_product):
        make_product(quantity=50)

        stats = client.get("/inventory/stats", params={"lowStockThreshold": 60}, headers=ADMIN).json()["data"]
        assert stats["low_stock"] == 1
        assert stats["low_stock_threshold"] == 60

    def test_list_filters(self, client, make_product):
        make_product(name="Plenty", quantity=50)
        scarce = make_product(name="Scarce", quantity=3)
        gone = make_product(name="Gone", quantity=0)

        everything = client.get("/inventory/products", headers=ADMIN).json()["data"]
        assert [row["name"] for row in everything["products"]] == ["Gone", "Scarce", "Plenty"]

        low = client.get("/inventory/products", params={"lowStock": "true"}, headers=ADMIN).json()["data"]
        assert [row["id"] for row in low["products"]] == [scarce.id]
        assert low["products"][0]["low_stock"] is True

        out = client.get("/inventory/products", params={"outOfStock": "true"}, headers=ADMIN).json()["data"]
        assert [row["id"] for row in out["products"]] == [gone.id]

    def test_stock_level(self, client, make_product, make_variant):
        product = make_product(quantity=4)
        variant = make_variant(product.id, quantity=1)

        level = client.get(
            f"/inventory/products/{product.id}/stock", params={"variant_id": variant.id}, headers=ADMIN
        ).json()["data"]
        assert level == {"product_id": product.id, "variant_id": variant.id, "stock_quantity": 1, "in_stock": True}

    def test_movement_by_id(self, client, make_product):
        product = make_product(quantity=4)
        [movement] = client.get("/inventory/movements", params={"product_id": product.id}, headers=ADMIN).json()[
            "data"
        ]["movements"]

        fetched = client.get(f"/inventory/movements/{movement['id']}", headers=ADMIN)
        assert fetched.status_code == 200
        assert fetched.json()["data"]["new_stock"] == 4

        assert client.get("/inventory/movements/missing", headers=ADMIN).status_code == 404

    def test_buyer_cannot_read_stats(self, client):
        assert client.get("/inventory/stats", headers=BUYER).status_code == 403
