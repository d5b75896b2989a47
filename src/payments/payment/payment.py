"""Payment aggregates: payments, refunds and the payment audit trail.

State Machine:
    PENDING → PAID → REFUNDED
    PENDING → FAILED → PAID (a late capture can still arrive)
    COD_PENDING → PAID

A payment's amount always equals the order total it settles.
``refunded_amount`` accumulates credited refunds and never exceeds
``amount``; reaching the full amount moves the payment to REFUNDED.
"""

from decimal import Decimal as PyDecimal
from enum import Enum
from typing import Any

from protean import Index
from protean.fields import Boolean, DateTime, Decimal, Dict, Identifier, String, Text
from protean.utils.globals import current_domain

from payments.domain import payments
from shared.constants import PaymentStatus
from shared.database import utcnow
from shared.exceptions import InvalidTransitionError, RefundLimitError, ValidationError
from shared.logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class RefundStatus(Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class AuditAction(Enum):
    CREATED = "payment.created"
    INTENT_CREATED = "payment.intent_created"
    GATEWAY_FAILED = "payment.gateway_failed"
    CAPTURED = "payment.captured"
    FAILED = "payment.failed"
    CAPTURED_AFTER_CANCEL = "payment.captured_after_cancel"
    COD_CREATED = "payment.cod_created"
    COD_PAID = "payment.cod_paid"
    REFUND_INITIATED = "refund.initiated"
    REFUND_PROCESSED = "refund.processed"
    REFUND_FAILED = "refund.failed"
    RECONCILED = "payment.reconciled"
    RECONCILIATION_FAILED = "payment.reconciliation_failed"


# State machine transition map
_VALID_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PAID},
    PaymentStatus.COD_PENDING: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),  # Terminal
}

SETTLED_STATES = frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED})

ZERO = PyDecimal("0.00")


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------
@payments.aggregate(
    schema_name="payments",
    indexes=[
        Index("order_id", name="ix_payments_order_id"),
        Index("gateway_payment_id", name="ix_payments_gateway_payment_id"),
        Index("status", name="ix_payments_status"),
    ],
)
class Payment:
    order_id = Identifier(required=True)
    user_id = String(max_length=64, required=True)
    gateway = String(max_length=20, required=True)
    gateway_order_id = String(max_length=64, unique=True)
    gateway_payment_id = String(max_length=64)
    signature_verified = Boolean()
    amount = Decimal(precision=12, scale=2, min_value=0, required=True)
    refunded_amount = Decimal(precision=12, scale=2, min_value=0, default=ZERO)
    currency = String(max_length=3, default="INR")
    status = String(max_length=20, choices=PaymentStatus, default=PaymentStatus.PENDING.value)
    method = String(max_length=32)
    failure_reason = Text()
    created_at = DateTime(default=utcnow)
    updated_at = DateTime(default=utcnow)

    @property
    def current_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def refundable_amount(self) -> PyDecimal:
        """What is left after credited refunds. Reservations are not subtracted here."""
        return self.amount - (self.refunded_amount or ZERO)

    def transition(self, target: PaymentStatus) -> PaymentStatus:
        """Move to ``target`` and return the previous status."""
        current = self.current_status
        if target not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(current.value, target.value, entity="Payment")
        self.status = target.value
        self.updated_at = utcnow()
        return current

    def credit_refund(self, amount: PyDecimal) -> None:
        """Add ``amount`` to the refunded total, never past the captured amount."""
        if amount <= 0:
            raise ValidationError({"amount": ["Refund amount must be positive"]})
        if amount > self.refundable_amount:
            raise RefundLimitError(self.id, amount, self.refundable_amount)
        self.refunded_amount = (self.refunded_amount or ZERO) + amount
        self.updated_at = utcnow()

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "gateway": self.gateway,
            "gateway_order_id": self.gateway_order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "signature_verified": self.signature_verified,
            "amount": str(self.amount),
            "refunded_amount": str(self.refunded_amount or ZERO),
            "currency": self.currency,
            "status": self.status,
            "method": self.method,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@payments.aggregate(schema_name="refunds", indexes=[Index("payment_id", name="ix_refunds_payment_id")])
class Refund:
    """A refund against one payment.

    A refund is first written as an uncredited PENDING reservation while the
    gateway call is in flight. Reservations count against what is still
    refundable, so two concurrent requests cannot both pass the limit check.
    Once the gateway answers the refund is credited to the payment, or
    marked FAILED, which releases the reservation.
    """

    payment_id = Identifier(required=True)
    gateway_refund_id = String(max_length=64, unique=True)
    amount = Decimal(precision=12, scale=2, min_value=0, required=True)
    currency = String(max_length=3, default="INR")
    status = String(max_length=20, choices=RefundStatus, default=RefundStatus.PENDING.value)
    credited = Boolean(default=False)
    reason = Text()
    created_by = String(max_length=64)
    created_at = DateTime(default=utcnow)
    updated_at = DateTime(default=utcnow)

    @property
    def counts_toward_total(self) -> bool:
        return self.status != RefundStatus.FAILED.value

    @property
    def is_reservation(self) -> bool:
        return not self.credited and self.status == RefundStatus.PENDING.value

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "gateway_refund_id": self.gateway_refund_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@payments.aggregate(
    schema_name="payment_audit_logs",
    indexes=[Index("payment_id", name="ix_payment_audit_logs_payment_id")],
)
class PaymentAuditLog:
    payment_id = Identifier(required=True)
    action = String(max_length=48, required=True)
    performed_by = String(max_length=64)
    old_status = String(max_length=20)
    new_status = String(max_length=20)
    details = Dict()
    created_at = DateTime(default=utcnow)

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def refunds_for(payment_id: str) -> list[Refund]:
    return (
        current_domain.repository_for(Refund)
        .query.filter(payment_id=payment_id)
        .order_by("created_at")
        .limit(None)
        .all()
        .items
    )


def reserved_amount(payment_id: str) -> PyDecimal:
    """Total of refunds still waiting on the gateway for ``payment_id``."""
    return sum((refund.amount for refund in refunds_for(payment_id) if refund.is_reservation), ZERO)


def record_audit(
    payment: Payment,
    action: AuditAction,
    performed_by: str | None,
    old_status: str | None = None,
    new_status: str | None = None,
    **details: Any,
) -> PaymentAuditLog:
    entry = PaymentAuditLog(
        payment_id=payment.id,
        action=action.value,
        performed_by=performed_by,
        old_status=old_status,
        new_status=new_status if new_status is not None else payment.status,
        details=details or None,
    )
    current_domain.repository_for(PaymentAuditLog).add(entry)
    logger.info(
        "payment_audit",
        payment_id=payment.id,
        action=action.value,
        performed_by=performed_by,
        old_status=old_status,
        new_status=entry.new_status,
    )
    return entry
