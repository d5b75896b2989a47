"""Locked read-modify-write access to stock counters.

``InventoryAccessor`` works inside the caller's unit of work. Every mutation
locks the stock-holding row, applies a guarded update that can never drive
the counter below zero, and appends the matching ledger entry in the same
transaction.
"""

from dataclasses import dataclass

from protean.utils.globals import current_domain
from sqlalchemy import update

from inventory.stock.stock import Product, ProductVariant, StockMovement, StockMovementType, signed_quantity
from shared import database
from shared.exceptions import InsufficientStockError, NotFoundError
from shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StockKey:
    """Identifies a stock counter: a product, or one of its variants."""

    product_id: str
    variant_id: str | None = None

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.product_id, self.variant_id or "")


class InventoryAccessor:
    def lock(self, key: StockKey) -> Product | ProductVariant:
        """Load the aggregate holding the counter for ``key`` under a row lock."""
        if key.variant_id:
            holder = database.lock(ProductVariant, id=key.variant_id, product_id=key.product_id)
            resource = "Product variant"
        else:
            holder = database.lock(Product, id=key.product_id)
            resource = "Product"

        if holder is None:
            raise NotFoundError(resource, product_id=key.product_id, variant_id=key.variant_id)
        return holder

    def available(self, key: StockKey) -> int:
        """Current counter for ``key``, read without a lock."""
        if key.variant_id:
            holder = current_domain.repository_for(ProductVariant).get_or_none(key.variant_id)
            if holder is None or holder.product_id != key.product_id:
                raise NotFoundError("Product variant", product_id=key.product_id, variant_id=key.variant_id)
        else:
            holder = current_domain.repository_for(Product).get_or_none(key.product_id)
            if holder is None:
                raise NotFoundError("Product", product_id=key.product_id)
        return holder.stock_quantity

    def ensure_available(self, key: StockKey, quantity: int) -> Product | ProductVariant:
        holder = self.lock(key)
        if holder.stock_quantity < quantity:
            raise InsufficientStockError(key.product_id, key.variant_id, quantity, holder.stock_quantity)
        return holder

    def apply_movement(
        self,
        key: StockKey,
        movement_type: StockMovementType,
        quantity: int,
        *,
        reason: str | None = None,
        reference_id: str | None = None,
        reference_type: str | None = None,
        created_by: str | None = None,
    ) -> StockMovement:
        """Change the counter for ``key`` and append the ledger entry for it."""
        delta = signed_quantity(movement_type, quantity)
        holder = self.lock(key)
        previous = holder.stock_quantity
        model = database.model_for(type(holder))

        stmt = update(model).where(model.id == holder.id)
        if delta < 0:
            stmt = stmt.where(model.stock_quantity >= -delta)
        stmt = stmt.values(
            stock_quantity=model.stock_quantity + delta,
            in_stock=(model.stock_quantity + delta) > 0,
            updated_at=database.utcnow(),
            _version=model._version + 1,
        ).execution_options(synchronize_session=False)

        result = database.session().execute(stmt)
        if result.rowcount != 1:
            raise InsufficientStockError(key.product_id, key.variant_id, abs(delta), previous)
        new_stock = previous + delta

        movement = StockMovement(
            product_id=key.product_id,
            variant_id=key.variant_id,
            type=movement_type.value,
            quantity=delta,
            previous_stock=previous,
            new_stock=new_stock,
            reason=reason,
            reference_id=reference_id,
            reference_type=reference_type,
            created_by=created_by,
        )
        current_domain.repository_for(StockMovement).add(movement)

        logger.info(
            "stock_movement_recorded",
            product_id=key.product_id,
            variant_id=key.variant_id,
            type=movement_type.value,
            quantity=delta,
            previous_stock=previous,
            new_stock=new_stock,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        return movement

    def reserve(self, key: StockKey, quantity: int, *, order_id: str, created_by: str | None = None) -> StockMovement:
        """Decrement stock for an order line, failing when the line cannot be covered."""
        self.ensure_available(key, quantity)
        return self.apply_movement(
            key,
            StockMovementType.OUT,
            quantity,
            reason=f"Order {order_id}",
            reference_id=order_id,
            reference_type="order",
            created_by=created_by,
        )

    def movements_for_reference(self, reference_type: str, reference_id: str) -> list[StockMovement]:
        return current_domain.repository_for(StockMovement).for_reference(reference_type, reference_id)
