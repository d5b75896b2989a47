"""Configurable fake payment gateway for development and testing.

Simulates the gateway in memory: payment intents, captured payments and
refunds are kept in dictionaries, and signatures are real HMACs over the
configured secrets so verification paths run exactly as in production.

It can be configured at runtime to fail or time out, and it records every
call so tests can assert on what was sent to the gateway.
"""

from typing import Any
from uuid import uuid4

from payments.gateway.port import GatewayOrder, GatewayPayment, GatewayRefund, PaymentGateway
from payments.gateway.signing import HMACSigner, payment_message
from shared.exceptions import GatewayError, GatewayTimeoutError, NotFoundError


def _gateway_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:14]}"


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    name = "fake"

    def __init__(self, key_secret: str = "fake_key_secret", webhook_secret: str = "fake_webhook_secret") -> None:
        self._payment_signer = HMACSigner(key_secret)
        self._webhook_signer = HMACSigner(webhook_secret)
        self.should_succeed: bool = True
        self.should_time_out: bool = False
        self.failure_reason: str = "Gateway rejected the request"
        self.calls: list[dict] = []
        self.orders: dict[str, GatewayOrder] = {}
        self.payments: dict[str, GatewayPayment] = {}
        self.refunds: dict[str, GatewayRefund] = {}

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Gateway rejected the request",
        should_time_out: bool = False,
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.should_time_out = should_time_out

    def _record(self, method: str, **arguments: Any) -> None:
        self.calls.append({"method": method, **arguments})
        if self.should_time_out:
            raise GatewayTimeoutError(f"Fake gateway timed out during {method}")
        if not self.should_succeed:
            raise GatewayError(self.failure_reason)

    def calls_to(self, method: str) -> list[dict]:
        return [call for call in self.calls if call["method"] == method]

    # -- PaymentGateway ------------------------------------------------------
    def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, Any]) -> GatewayOrder:
        self._record("create_order", amount=amount, currency=currency, receipt=receipt, notes=notes)
        order = GatewayOrder(
            id=_gateway_id("order"),
            amount=amount,
            currency=currency,
            status="created",
            receipt=receipt,
            notes=dict(notes),
        )
        self.orders[order.id] = order
        return order

    def fetch_order(self, order_id: str) -> GatewayOrder:
        self._record("fetch_order", order_id=order_id)
        try:
            return self.orders[order_id]
        except KeyError as exc:
            raise NotFoundError("Gateway order") from exc

    def fetch_order_payments(self, order_id: str) -> list[GatewayPayment]:
        self._record("fetch_order_payments", order_id=order_id)
        return [payment for payment in self.payments.values() if payment.order_id == order_id]

    def refund(self, payment_id: str, amount: int, notes: dict[str, Any]) -> GatewayRefund:
        self._record("refund", payment_id=payment_id, amount=amount, notes=notes)
        payment = self.payments.get(payment_id)
        refund = GatewayRefund(
            id=_gateway_id("rfnd"),
            payment_id=payment_id,
            amount=amount,
            currency=payment.currency if payment else "INR",
            status="processed",
        )
        self.refunds[refund.id] = refund
        return refund

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return self._payment_signer.verify(payment_message(order_id, payment_id), signature)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return self._webhook_signer.verify(payload, signature)

    # -- Simulation helpers --------------------------------------------------
    def capture(self, order_id: str, amount: int | None = None, method: str = "upi") -> GatewayPayment:
        """Simulate the buyer completing payment for a gateway order."""
        order = self.orders[order_id]
        payment = GatewayPayment(
            id=_gateway_id("pay"),
            order_id=order_id,
            amount=order.amount if amount is None else amount,
            currency=order.currency,
            status="captured",
            method=method,
        )
        self.payments[payment.id] = payment
        self.orders[order_id] = GatewayOrder(
            id=order.id,
            amount=order.amount,
            currency=order.currency,
            status="paid",
            receipt=order.receipt,
            notes=order.notes,
        )
        return payment

    def sign_payment(self, order_id: str, payment_id: str) -> str:
        return self._payment_signer.sign(payment_message(order_id, payment_id))

    def sign_webhook(self, payload: bytes | str) -> str:
        return self._webhook_signer.sign(payload)
