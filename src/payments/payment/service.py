"""Payment service: create, verify, cash-on-delivery and refunds.

Gateway calls never run inside a database transaction. The local row is
committed first (so a crash mid-call leaves a reconcilable PENDING payment),
the gateway is called, and its result is stored in a second unit of work.
"""

from dataclasses import dataclass
from decimal import Decimal

from protean import UnitOfWork
from protean.utils.globals import current_domain

from ordering.order.order import Order, OrderStatus
from ordering.order.status import change_order_status, lock_order
from payments.gateway import get_gateway
from payments.gateway.port import GatewayOrder, PaymentGateway
from payments.payment.payment import (
    AuditAction,
    Payment,
    Refund,
    RefundStatus,
    record_audit,
    reserved_amount,
)
from payments.payment.settlement import (
    apply_refund,
    lock_payment,
    release_reservation,
    save,
    settle_payment_success,
)
from shared import database
from shared.config import get_settings
from shared.constants import PaymentMethod, PaymentStatus
from shared.exceptions import (
    ForbiddenError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    RefundLimitError,
    SignatureError,
    ValidationError,
)
from shared.logging import get_logger
from shared.money import as_money, from_minor_units, to_minor_units
from shared.principal import Principal

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentInitiation:
    payment: Payment
    gateway_intent: GatewayOrder | None

    def to_dict(self) -> dict:
        return {
            "payment": self.payment.serialize(),
            "gateway_intent": self.gateway_intent.to_dict() if self.gateway_intent else None,
        }


def _order_for_buyer(order_id: str, principal: Principal) -> Order:
    order = lock_order(order_id)
    if not (principal.is_admin or principal.owns(order.user_id)):
        raise ForbiddenError("Order belongs to another user")
    return order


def _refund_status(value: str) -> RefundStatus:
    try:
        return RefundStatus(value)
    except ValueError:
        return RefundStatus.PENDING


def _latest_payment(order_id: str) -> Payment | None:
    model = database.model_for(Payment)
    return database.lock(Payment, model.status != PaymentStatus.FAILED.value, order_id=order_id, newest_first=True)


class PaymentService:
    def __init__(self, gateway: PaymentGateway | None = None) -> None:
        self._gateway = gateway

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    # -- Online payments -----------------------------------------------------
    def create_payment(
        self,
        order_id: str,
        amount: Decimal | int | float | str,
        principal: Principal,
        currency: str | None = None,
        gateway: str | PaymentMethod = PaymentMethod.RAZORPAY,
    ) -> PaymentInitiation:
        """Open a payment for a pending order and create its gateway intent.

        A payment holds at most one gateway intent. When two requests race to
        create it, the first intent stored wins and the other caller gets it
        back as well.
        """
        try:
            method = PaymentMethod(gateway)
        except ValueError as exc:
            raise ValidationError({"gateway": [f"Unsupported gateway: {gateway}"]}) from exc
        if method == PaymentMethod.COD:
            raise ValidationError({"gateway": ["Use the cash-on-delivery flow for COD orders"]})
        amount = as_money(amount)
        currency = (currency or get_settings().default_currency).upper()

        with UnitOfWork():
            order = _order_for_buyer(order_id, principal)
            if order.current_status != OrderStatus.PENDING:
                raise ValidationError({"order": [f"Order is {order.status}, payments need a PENDING order"]})
            if amount != order.total:
                raise ValidationError({"amount": [f"Amount {amount} does not match order total {order.total}"]})
            if currency != order.currency:
                raise ValidationError({"currency": [f"Order is billed in {order.currency}"]})

            payment = _latest_payment(order_id)
            if payment is not None and payment.current_status != PaymentStatus.PENDING:
                raise ValidationError({"order": [f"Order already has a {payment.status} payment"]})
            if payment is None:
                payment = Payment(
                    order_id=order.id,
                    user_id=order.user_id,
                    gateway=PaymentMethod.RAZORPAY.value,
                    amount=amount,
                    refunded_amount=Decimal("0.00"),
                    currency=currency,
                    status=PaymentStatus.PENDING.value,
                )
                save(payment)
                record_audit(payment, AuditAction.CREATED, principal.user_id, amount=str(amount))
            payment_id = payment.id
            existing_intent_id = payment.gateway_order_id

        if existing_intent_id:
            logger.info("payment_intent_reused", payment_id=payment_id, gateway_order_id=existing_intent_id)
            return PaymentInitiation(payment=payment, gateway_intent=self.gateway.fetch_order(existing_intent_id))

        try:
            intent = self.gateway.create_order(
                amount=to_minor_units(amount),
                currency=currency,
                receipt=f"order_{order_id}",
                notes={"orderId": order_id, "paymentId": payment_id},
            )
        except GatewayError as exc:
            logger.error("payment_intent_failed", payment_id=payment_id, order_id=order_id, error=exc.message)
            with UnitOfWork():
                record_audit(lock_payment(payment_id), AuditAction.GATEWAY_FAILED, principal.user_id, error=exc.message)
            raise

        with UnitOfWork():
            payment = lock_payment(payment_id)
            stored_intent_id = payment.gateway_order_id
            if not stored_intent_id:
                payment.gateway_order_id = intent.id
                payment.updated_at = database.utcnow()
                save(payment)
                record_audit(payment, AuditAction.INTENT_CREATED, principal.user_id, gateway_order_id=intent.id)

        if stored_intent_id:
            # A concurrent request stored its intent first; ours is never used
            logger.warning(
                "payment_intent_discarded",
                payment_id=payment_id,
                gateway_order_id=stored_intent_id,
                discarded_gateway_order_id=intent.id,
            )
            return PaymentInitiation(payment=payment, gateway_intent=self.gateway.fetch_order(stored_intent_id))

        logger.info("payment_intent_created", payment_id=payment_id, order_id=order_id, gateway_order_id=intent.id)
        return PaymentInitiation(payment=payment, gateway_intent=intent)

    def verify_payment(
        self,
        payment_id: str,
        gateway_payment_id: str,
        signature: str,
        principal: Principal | None = None,
    ) -> Payment:
        """Confirm a client-reported payment, trusting it only with a valid signature."""
        with UnitOfWork():
            payment = lock_payment(payment_id)
            if principal is not None and not (principal.is_admin or principal.owns(payment.user_id)):
                raise ForbiddenError("Payment belongs to another user")
            if not payment.gateway_order_id:
                raise ValidationError({"payment": ["Payment has no gateway order to verify against"]})

            if not self.gateway.verify_payment_signature(payment.gateway_order_id, gateway_payment_id, signature):
                logger.warning("payment_signature_rejected", payment_id=payment_id, gateway_payment_id=gateway_payment_id)
                raise SignatureError("Invalid payment signature")

            if payment.current_status == PaymentStatus.PAID and payment.gateway_payment_id == gateway_payment_id:
                return payment

            settle_payment_success(
                payment,
                performed_by=principal.user_id if principal else "client_verification",
                gateway_payment_id=gateway_payment_id,
                signature_verified=True,
            )
        return payment

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        return self.gateway.verify_webhook_signature(raw_body, signature)

    # -- Cash on delivery ----------------------------------------------------
    def process_cod(self, order_id: str, principal: Principal) -> Payment:
        """Accept a pending order for cash on delivery. No gateway is involved."""
        with UnitOfWork():
            order = _order_for_buyer(order_id, principal)
            existing = _latest_payment(order_id)
            if existing is not None:
                if existing.current_status == PaymentStatus.COD_PENDING:
                    return existing
                raise ValidationError({"order": [f"Order already has a {existing.status} payment"]})
            if order.current_status != OrderStatus.PENDING:
                raise ValidationError({"order": [f"Order is {order.status}, COD needs a PENDING order"]})

            payment = Payment(
                order_id=order.id,
                user_id=order.user_id,
                gateway=PaymentMethod.COD.value,
                amount=order.total,
                refunded_amount=Decimal("0.00"),
                currency=order.currency,
                status=PaymentStatus.COD_PENDING.value,
                method=PaymentMethod.COD.value,
            )
            order.payment_method = PaymentMethod.COD.value
            order.payment_status = PaymentStatus.COD_PENDING.value
            change_order_status(order, OrderStatus.CONFIRMED, principal.user_id)
            save(payment, order)
            record_audit(payment, AuditAction.COD_CREATED, principal.user_id, amount=str(order.total))

        logger.info("cod_payment_created", payment_id=payment.id, order_id=order_id)
        return payment

    def mark_cod_paid(self, order_id: str, principal: Principal) -> Payment:
        """Record cash collected on delivery."""
        principal.require_admin()
        with UnitOfWork():
            payment = database.lock(Payment, order_id=order_id, gateway=PaymentMethod.COD.value, newest_first=True)
            if payment is None:
                raise NotFoundError("COD payment", order_id=order_id)
            if payment.current_status == PaymentStatus.PAID:
                return payment
            if payment.current_status != PaymentStatus.COD_PENDING:
                raise InvalidTransitionError(payment.status, PaymentStatus.PAID.value, entity="Payment")

            settle_payment_success(payment, performed_by=principal.user_id, action=AuditAction.COD_PAID)
        return payment

    # -- Refunds -------------------------------------------------------------
    def process_refund(
        self,
        payment_id: str,
        principal: Principal,
        amount: Decimal | int | float | str | None = None,
        reason: str | None = None,
    ) -> Refund:
        """Refund (part of) a paid payment through the gateway.

        The amount is reserved under the payment lock before the gateway is
        called, so concurrent refunds can never add up to more than the
        payment. The reservation is credited with the amount the gateway
        reports, or released when the gateway call fails.
        """
        principal.require_admin()

        with UnitOfWork():
            payment = lock_payment(payment_id)
            if payment.current_status != PaymentStatus.PAID:
                raise InvalidTransitionError(payment.status, PaymentStatus.REFUNDED.value, entity="Payment")
            if payment.gateway == PaymentMethod.COD.value or not payment.gateway_payment_id:
                raise ValidationError({"payment": ["Only captured gateway payments can be refunded online"]})

            refundable = payment.refundable_amount - reserved_amount(payment.id)
            refund_amount = as_money(amount) if amount is not None else refundable
            if refund_amount <= 0:
                raise ValidationError({"amount": ["Refund amount must be positive"]})
            if refund_amount > refundable:
                raise RefundLimitError(payment.id, refund_amount, refundable)

            reservation = Refund(
                payment_id=payment.id,
                amount=refund_amount,
                currency=payment.currency,
                status=RefundStatus.PENDING.value,
                reason=reason,
                created_by=principal.user_id,
            )
            save(reservation)
            record_audit(
                payment,
                AuditAction.REFUND_INITIATED,
                principal.user_id,
                refund_id=reservation.id,
                amount=str(refund_amount),
            )
            gateway_payment_id = payment.gateway_payment_id

        try:
            gateway_refund = self.gateway.refund(
                gateway_payment_id,
                to_minor_units(refund_amount),
                notes={"paymentId": payment_id, "refundId": reservation.id, "reason": reason or ""},
            )
        except GatewayError as exc:
            logger.error("refund_gateway_failed", payment_id=payment_id, refund_id=reservation.id, error=exc.message)
            with UnitOfWork():
                release_reservation(lock_payment(payment_id), reservation.id, principal.user_id, exc.message)
            raise

        with UnitOfWork():
            refund = apply_refund(
                lock_payment(payment_id),
                amount=from_minor_units(gateway_refund.amount),
                gateway_refund_id=gateway_refund.id,
                status=_refund_status(gateway_refund.status),
                performed_by=principal.user_id,
                reason=reason,
                refund_id=reservation.id,
            )

        if refund.amount != refund_amount:
            logger.warning(
                "refund_amount_adjusted",
                payment_id=payment_id,
                refund_id=refund.id,
                requested=str(refund_amount),
                refunded=str(refund.amount),
            )
        logger.info(
            "refund_processed",
            payment_id=payment_id,
            refund_id=refund.id,
            amount=str(refund.amount),
            gateway_refund_id=gateway_refund.id,
        )
        return refund

    # -- Queries -------------------------------------------------------------
    def get_payment(self, payment_id: str, principal: Principal) -> Payment:
        payment = current_domain.repository_for(Payment).get_or_none(payment_id)
        if payment is None or not (principal.is_admin or principal.owns(payment.user_id)):
            raise NotFoundError("Payment", payment_id=payment_id)
        return payment

    def get_payment_for_order(self, order_id: str, principal: Principal) -> Payment:
        """The most recent payment opened for an order."""
        order = current_domain.repository_for(Order).get_or_none(order_id)
        if order is None or not (principal.is_admin or principal.owns(order.user_id)):
            raise NotFoundError("Order", order_id=order_id)
        payment = (
            current_domain.repository_for(Payment)
            .query.filter(order_id=order_id)
            .order_by("-created_at")
            .limit(1)
            .all()
            .first
        )
        if payment is None:
            raise NotFoundError("Payment", order_id=order_id)
        return payment
