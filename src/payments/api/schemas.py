"""Pydantic request/response schemas for the Payments API."""

from decimal import Decimal

from pydantic import BaseModel, Field

from shared.constants import PaymentMethod


# ---------------------------------------------------------------------------
# Payment Request Schemas
# ---------------------------------------------------------------------------
class CreatePaymentRequest(BaseModel):
    order_id: str
    amount: Decimal = Field(gt=0, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    gateway: PaymentMethod = PaymentMethod.RAZORPAY


class VerifyPaymentRequest(BaseModel):
    payment_id: str
    gateway_payment_id: str
    signature: str


class CashOnDeliveryRequest(BaseModel):
    order_id: str


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)
    reason: str | None = Field(default=None, max_length=500)


class ConfigureGatewayRequest(BaseModel):
    should_succeed: bool = True
    should_time_out: bool = False
    failure_reason: str = "Gateway rejected the request"


# ---------------------------------------------------------------------------
# Maintenance Request Schemas
# ---------------------------------------------------------------------------
class RetrySweepRequest(BaseModel):
    batch_size: int = Field(default=50, gt=0, le=500)
