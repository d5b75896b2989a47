"""Product and variant registration with opening stock."""

from decimal import Decimal

from protean import UnitOfWork
from protean.utils.globals import current_domain

from inventory.stock.accessor import InventoryAccessor, StockKey
from inventory.stock.stock import Product, ProductVariant, StockMovementType
from shared.exceptions import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.money import as_money
from shared.principal import Principal

logger = get_logger(__name__)


def _opening_stock(key: StockKey, quantity: int, created_by: str | None) -> None:
    if quantity:
        InventoryAccessor().apply_movement(
            key,
            StockMovementType.IN,
            quantity,
            reason="Initial stock",
            reference_type="initial-stock",
            created_by=created_by,
        )


def _check_opening_quantity(quantity: int) -> None:
    if quantity < 0:
        raise ValidationError({"initial_quantity": ["Initial quantity cannot be negative"]})


def register_product(
    *,
    name: str,
    price: Decimal | int | float | str,
    initial_quantity: int = 0,
    created_by: str | None = None,
) -> Product:
    """Create a product whose opening stock is recorded in the ledger."""
    _check_opening_quantity(initial_quantity)
    with UnitOfWork():
        product = Product(name=name, price=as_money(price), stock_quantity=0, in_stock=False)
        current_domain.repository_for(Product).add(product)
        _opening_stock(StockKey(product.id), initial_quantity, created_by)

    return current_domain.repository_for(Product).get(product.id)


def register_variant(
    *,
    product_id: str,
    name: str,
    price: Decimal | int | float | str | None = None,
    sku: str | None = None,
    initial_quantity: int = 0,
    created_by: str | None = None,
) -> ProductVariant:
    _check_opening_quantity(initial_quantity)
    with UnitOfWork():
        if current_domain.repository_for(Product).get_or_none(product_id) is None:
            raise NotFoundError("Product", product_id=product_id)

        variant = ProductVariant(
            product_id=product_id,
            name=name,
            sku=sku,
            price=as_money(price) if price is not None else None,
            stock_quantity=0,
            in_stock=False,
        )
        current_domain.repository_for(ProductVariant).add(variant)
        _opening_stock(StockKey(product_id, variant.id), initial_quantity, created_by)

    return current_domain.repository_for(ProductVariant).get(variant.id)


class CatalogueRegistrationService:
    """Admin entry point for adding sellable products and variants."""

    def register_product(
        self,
        principal: Principal,
        *,
        name: str,
        price: Decimal | int | float | str,
        initial_quantity: int = 0,
    ) -> Product:
        principal.require_admin()
        if not name or not name.strip():
            raise ValidationError({"name": ["Product name is required"]})
        product = register_product(
            name=name.strip(),
            price=price,
            initial_quantity=initial_quantity,
            created_by=principal.user_id,
        )
        logger.info(
            "product_registered",
            product_id=product.id,
            initial_quantity=initial_quantity,
            registered_by=principal.user_id,
        )
        return product

    def register_variant(
        self,
        principal: Principal,
        *,
        product_id: str,
        name: str,
        price: Decimal | int | float | str | None = None,
        sku: str | None = None,
        initial_quantity: int = 0,
    ) -> ProductVariant:
        principal.require_admin()
        if not name or not name.strip():
            raise ValidationError({"name": ["Variant name is required"]})
        variant = register_variant(
            product_id=product_id,
            name=name.strip(),
            price=price,
            sku=sku,
            initial_quantity=initial_quantity,
            created_by=principal.user_id,
        )
        logger.info(
            "variant_registered",
            product_id=product_id,
            variant_id=variant.id,
            initial_quantity=initial_quantity,
            registered_by=principal.user_id,
        )
        return variant
