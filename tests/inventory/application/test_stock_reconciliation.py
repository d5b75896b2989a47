"""Tests for counter/ledger consistency checks and counter rebuilds."""

import pytest
from inventory.stock.adjustment import StockAdjustmentService
from inventory.stock.reconciliation import StockReconciler
from inventory.stock.stock import Product, ProductVariant
from protean import UnitOfWork
from shared import database
from shared.exceptions import ForbiddenError
from sqlalchemy import update


def _corrupt_counter(aggregate_cls, row_id, value):
    model = database.model_for(aggregate_cls)
    with UnitOfWork():
        database.session().execute(update(model).where(model.id == row_id).values(stock_quantity=value))


class TestCheck:
    def test_fresh_catalogue_is_consistent(self, make_product, make_variant):
        product = make_product(quantity=4)
        make_variant(product.id, quantity=2)

        assert StockReconciler().check() == []
        assert StockReconciler().health() == {"consistent": True, "discrepancies": []}

    def test_consistent_after_adjustments_and_orders(self, admin, make_product, place_order):
        product = make_product(quantity=10)
        StockAdjustmentService().adjust_stock(admin, product_id=product.id, quantity_change=-3, reason="count")
        place_order((product.id, None, 2))

        assert StockReconciler().check() == []

    def test_reports_counter_drift(self, make_product):
        product = make_product(quantity=4)
        _corrupt_counter(Product, product.id, 9)

        [discrepancy] = StockReconciler().check()
        assert discrepancy.product_id == product.id
        assert discrepancy.variant_id is None
        assert discrepancy.counter == 9
        assert discrepancy.ledger_total == 4
        assert discrepancy.drift == 5

    def test_variant_drift_is_reported_per_variant(self, make_product, make_variant):
        product = make_product(quantity=1)
        variant = make_variant(product.id, quantity=3)
        _corrupt_counter(ProductVariant, variant.id, 0)

        report = StockReconciler().health()
        assert report["consistent"] is False
        assert report["discrepancies"] == [
            {"product_id": product.id, "variant_id": variant.id, "counter": 0, "ledger_total": 3, "drift": -3}
        ]


class TestRebuildCounter:
    def test_rebuild_restores_ledger_total(self, admin, make_product, stock_level):
        product = make_product(quantity=6)
        _corrupt_counter(Product, product.id, 1)

        assert StockReconciler().rebuild_counter(admin, product.id) == 6
        assert stock_level(product.id) == 6
        assert StockReconciler().check() == []

    def test_rebuild_variant(self, admin, make_product, make_variant, stock_level):
        product = make_product(quantity=2)
        variant = make_variant(product.id, quantity=5)
        _corrupt_counter(ProductVariant, variant.id, 0)

        assert StockReconciler().rebuild_counter(admin, product.id, variant.id) == 5
        assert stock_level(product.id, variant.id) == 5
        assert stock_level(product.id) == 2

    def test_admin_only(self, buyer, make_product):
        product = make_product()
        with pytest.raises(ForbiddenError):
            StockReconciler().rebuild_counter(buyer, product.id)
