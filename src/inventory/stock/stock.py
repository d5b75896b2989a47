"""Stock-holding aggregates and the append-only stock ledger.

Stock lives on ``Product`` (single-SKU items) or on ``ProductVariant``. The
counter on those aggregates is a cache of the ledger: for every stock key the
counter equals the sum of the signed ``StockMovement.quantity`` values
recorded against it. Initial stock is itself recorded as an ``IN`` movement.
"""

from decimal import Decimal as PyDecimal
from enum import Enum

from protean import Index
from protean.fields import Boolean, DateTime, Decimal, Identifier, Integer, String, Text

from inventory.domain import inventory
from shared.database import utcnow
from shared.exceptions import ValidationError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class StockMovementType(Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"
    TRANSFER = "TRANSFER"


def signed_quantity(movement_type: StockMovementType, quantity: int) -> int:
    """Quantity as it is stored in the ledger.

    ``IN`` and ``RETURN`` always add, ``OUT`` always removes. ``ADJUSTMENT``
    and ``TRANSFER`` keep the caller's sign.
    """
    if quantity == 0:
        raise ValidationError({"quantity": ["Quantity must not be zero"]})
    if movement_type in (StockMovementType.IN, StockMovementType.RETURN):
        return abs(quantity)
    if movement_type == StockMovementType.OUT:
        return -abs(quantity)
    return quantity


# ---------------------------------------------------------------------------
# Stock holders
# ---------------------------------------------------------------------------
@inventory.aggregate(schema_name="products")
class Product:
    name = String(max_length=255, required=True)
    price = Decimal(precision=12, scale=2, min_value=0, required=True)
    stock_quantity = Integer(min_value=0, default=0)
    in_stock = Boolean(default=False)
    is_active = Boolean(default=True)
    created_at = DateTime(default=utcnow)
    updated_at = DateTime(default=utcnow)

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "stock_quantity": self.stock_quantity,
            "in_stock": self.in_stock,
            "is_active": self.is_active,
        }


@inventory.aggregate(schema_name="product_variants")
class ProductVariant:
    product_id = Identifier(required=True)
    name = String(max_length=255, required=True)
    sku = String(max_length=64, unique=True)
    # None means the variant sells at the product price
    price = Decimal(precision=12, scale=2, min_value=0)
    stock_quantity = Integer(min_value=0, default=0)
    in_stock = Boolean(default=False)
    is_active = Boolean(default=True)
    created_at = DateTime(default=utcnow)
    updated_at = DateTime(default=utcnow)

    def effective_price(self, product: Product) -> PyDecimal:
        return self.price if self.price is not None else product.price

    def serialize(self, product: Product | None = None) -> dict:
        price = self.effective_price(product) if product is not None else self.price
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "price": str(price) if price is not None else None,
            "stock_quantity": self.stock_quantity,
            "in_stock": self.in_stock,
        }


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------
@inventory.aggregate(
    schema_name="stock_movements",
    indexes=[
        Index("product_id", "variant_id", name="ix_stock_movements_stock_key"),
        Index("reference_type", "reference_id", name="ix_stock_movements_reference"),
    ],
)
class StockMovement:
    product_id = Identifier(required=True)
    variant_id = Identifier()
    type = String(max_length=20, choices=StockMovementType, required=True)
    quantity = Integer(required=True)
    previous_stock = Integer(required=True)
    new_stock = Integer(required=True)
    reason = Text()
    reference_id = String(max_length=64)
    reference_type = String(max_length=32)
    created_by = String(max_length=64)
    created_at = DateTime(default=utcnow)

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "type": self.type,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reason": self.reason,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@inventory.repository(part_of=StockMovement)
class StockLedgerRepository:
    """The stock ledger only grows: recorded movements are never rewritten or removed."""

    def add(self, movement):
        if movement.state_.is_persisted:
            raise ValidationError({"stock_movement": ["Stock movements are append-only"]})
        return super().add(movement)

    def for_reference(self, reference_type: str, reference_id: str) -> list:
        return (
            self.query.filter(reference_type=reference_type, reference_id=reference_id)
            .order_by("created_at")
            .limit(None)
            .all()
            .items
        )
