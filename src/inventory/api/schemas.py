"""Pydantic request/response schemas for the Inventory API."""

from decimal import Decimal

from pydantic import BaseModel, Field

from inventory.stock.stock import StockMovementType


# ---------------------------------------------------------------------------
# Catalogue Request Schemas
# ---------------------------------------------------------------------------
class RegisterProductRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    initial_quantity: int = Field(default=0, ge=0)


class RegisterVariantRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    price: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    sku: str | None = Field(default=None, max_length=64)
    initial_quantity: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Stock Request Schemas
# ---------------------------------------------------------------------------
class AdjustStockRequest(BaseModel):
    product_id: str
    variant_id: str | None = None
    quantity_change: int
    reason: str = Field(min_length=1)
    type: StockMovementType = StockMovementType.ADJUSTMENT


class ReceiveStockRequest(BaseModel):
    product_id: str
    variant_id: str | None = None
    quantity: int = Field(gt=0)
    reference_id: str | None = None
    reason: str | None = None


class RebuildCounterRequest(BaseModel):
    product_id: str
    variant_id: str | None = None
