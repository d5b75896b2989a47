"""Money-affecting state changes shared by every payment entry point.

Client verification, webhooks, the COD flow and the reconciliation job all
settle payments through these functions. Each one works on aggregates the
caller has locked inside a ``UnitOfWork``, is idempotent (re-applying a
settled outcome is a no-op), saves what it changed and writes its audit
entry in the same transaction as the state change.
"""

from decimal import Decimal

from protean.utils.globals import current_domain

from ordering.order.order import Order, OrderStatus
from ordering.order.status import change_order_status, lock_order
from payments.payment.payment import (
    SETTLED_STATES,
    AuditAction,
    Payment,
    Refund,
    RefundStatus,
    record_audit,
)
from shared import database
from shared.constants import PaymentStatus
from shared.exceptions import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.money import from_minor_units, to_minor_units

logger = get_logger(__name__)

# Amounts reported by the gateway may differ from ours by rounding only
_AMOUNT_TOLERANCE = Decimal("0.01")

# Refund statuses only ever move forward
_REFUND_PROGRESS = {RefundStatus.PENDING: 0, RefundStatus.PROCESSED: 1, RefundStatus.FAILED: 2}


def lock_payment(payment_id: str) -> Payment:
    payment = database.lock(Payment, id=payment_id)
    if payment is None:
        raise NotFoundError("Payment", payment_id=payment_id)
    return payment


def save(*aggregates) -> None:
    for aggregate in aggregates:
        current_domain.repository_for(type(aggregate)).add(aggregate)


def find_payment_for_gateway(
    *,
    gateway_payment_id: str | None = None,
    gateway_order_id: str | None = None,
    order_id: str | None = None,
) -> Payment:
    """Locate (and lock) the local payment a gateway notification refers to."""
    candidates = []
    if gateway_payment_id:
        candidates.append({"gateway_payment_id": gateway_payment_id})
    if gateway_order_id:
        candidates.append({"gateway_order_id": gateway_order_id})
    if order_id:
        candidates.append({"order_id": order_id})

    for criteria in candidates:
        payment = database.lock(Payment, newest_first=True, **criteria)
        if payment is not None:
            return payment

    raise NotFoundError(
        "Payment",
        gateway_payment_id=gateway_payment_id,
        gateway_order_id=gateway_order_id,
        order_id=order_id,
    )


def _check_amount(payment: Payment, amount_minor: int | None) -> None:
    if amount_minor is None:
        return
    reported = from_minor_units(amount_minor)
    if abs(reported - payment.amount) > _AMOUNT_TOLERANCE:
        logger.error(
            "payment_amount_mismatch",
            payment_id=payment.id,
            expected=str(payment.amount),
            reported=str(reported),
        )
        raise ValidationError(
            {"amount": [f"Gateway reported {reported} but payment {payment.id} expects {payment.amount}"]}
        )


def settle_payment_success(
    payment: Payment,
    *,
    performed_by: str,
    gateway_payment_id: str | None = None,
    amount_minor: int | None = None,
    method: str | None = None,
    signature_verified: bool | None = None,
    action: AuditAction = AuditAction.CAPTURED,
) -> bool:
    """Mark ``payment`` PAID and confirm its order.

    Returns False without touching anything when the payment is already
    settled. Raises ``ValidationError`` when the gateway reports an amount
    different from the payment's.
    """
    if payment.current_status in SETTLED_STATES:
        logger.info("payment_already_settled", payment_id=payment.id, status=payment.status)
        return False

    _check_amount(payment, amount_minor)

    order = lock_order(payment.order_id)
    old_status = payment.transition(PaymentStatus.PAID)
    if gateway_payment_id:
        payment.gateway_payment_id = gateway_payment_id
    if method:
        payment.method = method
    if signature_verified is not None:
        payment.signature_verified = signature_verified
    payment.failure_reason = None
    order.payment_status = PaymentStatus.PAID.value

    if order.current_status == OrderStatus.PENDING:
        change_order_status(order, OrderStatus.CONFIRMED, performed_by)
    elif order.is_terminal:
        # Money arrived for an order that no longer exists from the buyer's
        # point of view; it stays PAID so an operator can refund it.
        logger.warning("payment_captured_for_closed_order", payment_id=payment.id, order_id=order.id)
        record_audit(
            payment,
            AuditAction.CAPTURED_AFTER_CANCEL,
            performed_by,
            old_status=old_status.value,
            order_status=order.status,
        )

    save(payment, order)
    record_audit(
        payment,
        action,
        performed_by,
        old_status=old_status.value,
        gateway_payment_id=payment.gateway_payment_id,
    )
    return True


def settle_payment_failure(
    payment: Payment,
    *,
    performed_by: str,
    gateway_payment_id: str | None = None,
    reason: str | None = None,
) -> bool:
    """Mark a pending payment FAILED. Never downgrades a settled payment."""
    if payment.current_status != PaymentStatus.PENDING:
        logger.info("payment_failure_ignored", payment_id=payment.id, status=payment.status)
        return False

    order = lock_order(payment.order_id)
    old_status = payment.transition(PaymentStatus.FAILED)
    if gateway_payment_id:
        payment.gateway_payment_id = gateway_payment_id
    payment.failure_reason = reason or "Payment failed"
    if order.payment_status != PaymentStatus.PAID.value:
        order.payment_status = PaymentStatus.FAILED.value

    save(payment, order)
    record_audit(
        payment,
        AuditAction.FAILED,
        performed_by,
        old_status=old_status.value,
        reason=payment.failure_reason,
    )
    return True


def _close_refunded_order(order: Order, performed_by: str) -> None:
    if order.is_terminal:
        return
    target = OrderStatus.RETURNED if order.current_status == OrderStatus.DELIVERED else OrderStatus.CANCELLED
    change_order_status(order, target, performed_by)


def _advance_known_refund(payment: Payment, refund: Refund, status: RefundStatus, performed_by: str) -> Refund:
    if _REFUND_PROGRESS[status] <= _REFUND_PROGRESS[RefundStatus(refund.status)]:
        logger.info("refund_already_recorded", payment_id=payment.id, gateway_refund_id=refund.gateway_refund_id)
        return refund

    old = refund.status
    refund.status = status.value
    refund.updated_at = database.utcnow()
    save(refund)
    if status == RefundStatus.FAILED:
        # Already credited; reversing it is left to an operator
        record_audit(payment, AuditAction.REFUND_FAILED, performed_by, refund_id=refund.id)
        logger.error("refund_failed", payment_id=payment.id, refund_id=refund.id, previous_status=old)
    else:
        record_audit(payment, AuditAction.REFUND_PROCESSED, performed_by, refund_id=refund.id)
    return refund


def _reservation(payment: Payment, refund_id: str | None) -> Refund | None:
    if not refund_id:
        return None
    refund = current_domain.repository_for(Refund).get_or_none(refund_id)
    if refund is None or refund.payment_id != payment.id or not refund.is_reservation:
        return None
    return refund


def apply_refund(
    payment: Payment,
    *,
    amount: Decimal,
    gateway_refund_id: str | None,
    status: RefundStatus,
    performed_by: str,
    reason: str | None = None,
    refund_id: str | None = None,
) -> Refund:
    """Record a refund against a locked payment.

    A refund already known by ``gateway_refund_id`` only has its status
    updated, so the same gateway refund is never credited twice. ``refund_id``
    names the local reservation written before the gateway call; that row is
    finalised instead of a new one being created. The credit is rejected with
    ``RefundLimitError`` when it would push ``refunded_amount`` past the
    payment amount. Once the refunded total covers the payment, the payment
    moves to REFUNDED and the order is closed (cancelled, or returned when it
    was already delivered).
    """
    if gateway_refund_id:
        existing = current_domain.repository_for(Refund).query.filter(gateway_refund_id=gateway_refund_id).all().first
        if existing is not None:
            return _advance_known_refund(payment, existing, status, performed_by)

    refund = _reservation(payment, refund_id)
    if refund is None:
        refund = Refund(
            payment_id=payment.id,
            amount=amount,
            currency=payment.currency,
            reason=reason,
            created_by=performed_by,
        )
    else:
        # The gateway amount is authoritative
        refund.amount = amount
    refund.gateway_refund_id = gateway_refund_id
    refund.status = status.value
    refund.updated_at = database.utcnow()

    if not refund.counts_toward_total:
        save(refund)
        record_audit(payment, AuditAction.REFUND_FAILED, performed_by, gateway_refund_id=gateway_refund_id)
        return refund

    payment.credit_refund(refund.amount)
    refund.credited = True
    old_status = payment.status
    order = None
    if payment.refunded_amount >= payment.amount and payment.current_status == PaymentStatus.PAID:
        payment.transition(PaymentStatus.REFUNDED)
        order = lock_order(payment.order_id)
        order.payment_status = PaymentStatus.REFUNDED.value
        _close_refunded_order(order, performed_by)

    save(refund, payment, *([order] if order is not None else []))
    record_audit(
        payment,
        AuditAction.REFUND_PROCESSED if status == RefundStatus.PROCESSED else AuditAction.REFUND_INITIATED,
        performed_by,
        old_status=old_status,
        amount=str(refund.amount),
        amount_minor=to_minor_units(refund.amount),
        gateway_refund_id=gateway_refund_id,
        refunded_total=str(payment.refunded_amount),
    )
    return refund


def release_reservation(payment: Payment, refund_id: str, performed_by: str, error: str) -> None:
    """Mark a reservation FAILED after the gateway refused or could not be reached."""
    refund = _reservation(payment, refund_id)
    if refund is None:
        return
    refund.status = RefundStatus.FAILED.value
    refund.updated_at = database.utcnow()
    save(refund)
    record_audit(payment, AuditAction.REFUND_FAILED, performed_by, refund_id=refund.id, error=error)
