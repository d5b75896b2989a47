"""Payment gateway port (abstract interface).

Defines the contract every gateway adapter implements, so the payment
service can run against ``FakeGateway`` in development and tests and against
``RazorpayGateway`` in production without code changes.

All amounts crossing this interface are in minor units (paise).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class GatewayOrder:
    """A payment intent created on the gateway side."""

    id: str
    amount: int
    currency: str
    status: str
    receipt: str | None = None
    notes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "receipt": self.receipt,
        }


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    order_id: str | None
    amount: int
    currency: str
    status: str
    method: str | None = None

    @property
    def is_captured(self) -> bool:
        return self.status == "captured"


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    payment_id: str
    amount: int
    currency: str
    status: str


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    name: str = "gateway"

    @abstractmethod
    def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, Any]) -> GatewayOrder:
        """Create a payment intent the buyer completes client-side."""
        ...

    @abstractmethod
    def fetch_order(self, order_id: str) -> GatewayOrder: ...

    @abstractmethod
    def fetch_order_payments(self, order_id: str) -> list[GatewayPayment]: ...

    @abstractmethod
    def refund(self, payment_id: str, amount: int, notes: dict[str, Any]) -> GatewayRefund:
        """Refund (part of) a captured payment."""
        ...

    @abstractmethod
    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check the signature the client received for ``order_id|payment_id``."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Check that a webhook body was signed by the gateway."""
        ...

    def close(self) -> None:
        """Release connections held by the adapter."""
