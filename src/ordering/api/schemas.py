"""Pydantic request/response schemas for the Ordering API."""

from pydantic import BaseModel, Field

from ordering.order.order import OrderStatus
from shared.constants import PaymentMethod


# ---------------------------------------------------------------------------
# Cart Request Schemas
# ---------------------------------------------------------------------------
class AddCartItemRequest(BaseModel):
    product_id: str
    variant_id: str | None = None
    quantity: int = Field(gt=0)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(gt=0)


# ---------------------------------------------------------------------------
# Order Request Schemas
# ---------------------------------------------------------------------------
class CreateOrderRequest(BaseModel):
    address_id: str = Field(min_length=1)
    payment_method: PaymentMethod = PaymentMethod.RAZORPAY
    payment_reference: str | None = None
    notes: str | None = Field(default=None, max_length=2000)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
