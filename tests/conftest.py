import os
import tempfile
from pathlib import Path

import pytest
from protean.utils.globals import current_domain

from inventory.stock.initialization import register_product, register_variant
from inventory.stock.stock import Product, ProductVariant
from ordering.cart.items import CartService
from ordering.order.creation import OrderCreationService
from payments.gateway import reset_gateway, set_gateway
from payments.gateway.fake_adapter import FakeGateway
from shared.config import reset_settings
from shared.constants import PaymentMethod
from shared.principal import Principal, Role

TEST_KEY_SECRET = "test_key_secret"
TEST_WEBHOOK_SECRET = "test_webhook_secret"


def pytest_sessionstart(session):
    """Bind the storefront domain to a throwaway SQLite file and activate it.

    The pushed domain context makes the domain available as ``current_domain``
    for every test.
    """
    os.environ["STOREFRONT_ENV"] = "test"
    os.environ["DATABASE_URL"] = f"sqlite:///{Path(tempfile.mkdtemp()) / 'storefront.db'}"
    os.environ.pop("PAYMENT_GATEWAY", None)
    reset_settings()

    from shared.domain import init_domain
    from shared.logging import configure_logging

    configure_logging()
    domain = init_domain()
    domain.domain_context().push()


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        test_path = Path(item.fspath)

        # Mark tests based on their directory
        if "/domain/" in str(test_path):
            item.add_marker(pytest.mark.domain)
        elif "/application/" in str(test_path):
            item.add_marker(pytest.mark.application)
        elif "/integration/" in str(test_path):
            item.add_marker(pytest.mark.integration)
            # Integration tests are often slower
            if not any(m.name == "fast" for m in item.iter_markers()):
                item.add_marker(pytest.mark.slow)


@pytest.fixture(scope="session", autouse=True)
def setup_db():
    from shared.domain import storefront

    storefront.setup_database()

    yield

    storefront.drop_database()


@pytest.fixture(autouse=True)
def run_around_tests():
    """Fixture to automatically cleanup infrastructure after every test"""
    yield

    for _, provider in current_domain.providers.items():
        provider._data_reset()
    reset_settings()


@pytest.fixture(autouse=True)
def gateway():
    fake = FakeGateway(key_secret=TEST_KEY_SECRET, webhook_secret=TEST_WEBHOOK_SECRET)
    set_gateway(fake)
    yield fake
    reset_gateway()


@pytest.fixture()
def buyer():
    return Principal(user_id="buyer-001")


@pytest.fixture()
def other_buyer():
    return Principal(user_id="buyer-002")


@pytest.fixture()
def admin():
    return Principal(user_id="admin-001", role=Role.ADMIN)


@pytest.fixture()
def make_product():
    def _make(name="Widget", price="100.00", quantity=10):
        return register_product(name=name, price=price, initial_quantity=quantity, created_by="seed")

    return _make


@pytest.fixture()
def make_variant():
    def _make(product_id, name="Large", price=None, quantity=10, sku=None):
        return register_variant(
            product_id=product_id,
            name=name,
            price=price,
            sku=sku,
            initial_quantity=quantity,
            created_by="seed",
        )

    return _make


@pytest.fixture()
def stock_level():
    """Current counter for a product, or for one of its variants."""

    def _level(product_id, variant_id=None):
        if variant_id:
            return current_domain.repository_for(ProductVariant).get(variant_id).stock_quantity
        return current_domain.repository_for(Product).get(product_id).stock_quantity

    return _level


@pytest.fixture()
def place_order(buyer):
    """Fill a buyer's cart with ``(product_id, variant_id, quantity)`` lines and check out."""

    def _place(*lines, user_id=None, payment_method=PaymentMethod.RAZORPAY):
        user_id = user_id or buyer.user_id
        cart = CartService()
        for product_id, variant_id, quantity in lines:
            cart.add_item(user_id, product_id, quantity, variant_id=variant_id)
        return OrderCreationService().create_order(user_id, "addr-001", payment_method=payment_method)

    return _place
