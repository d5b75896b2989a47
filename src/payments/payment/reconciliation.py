"""Payment reconciliation against the gateway.

Catches payments whose success webhook never arrived: recent PENDING gateway
payments are checked against the gateway's own record of the order, and any
that were captured there are settled locally.
"""

from dataclasses import dataclass
from datetime import timedelta

from protean import UnitOfWork
from protean.exceptions import ProteanException
from protean.utils.globals import current_domain
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from payments.gateway import get_gateway
from payments.gateway.port import PaymentGateway
from payments.payment.payment import AuditAction, Payment, record_audit
from payments.payment.settlement import lock_payment, settle_payment_success
from shared import database
from shared.config import get_settings
from shared.constants import PaymentMethod, PaymentStatus
from shared.logging import get_logger

logger = get_logger(__name__)

RECONCILIATION_ACTOR = "reconciliation_job"


@dataclass
class ReconciliationStats:
    checked: int = 0
    settled: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {"checked": self.checked, "settled": self.settled, "errors": self.errors}


class PaymentReconciliationJob:
    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        window: timedelta | None = None,
        batch_size: int = 100,
    ) -> None:
        self._gateway = gateway
        self._window = window or timedelta(hours=get_settings().reconciliation_window_hours)
        self._batch_size = batch_size

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    def run_once(self) -> ReconciliationStats:
        stats = ReconciliationStats()
        since = database.utcnow() - self._window

        model = database.model_for(Payment)
        with UnitOfWork():
            pending = database.session().execute(
                select(model.id, model.gateway_order_id)
                .where(
                    model.status == PaymentStatus.PENDING.value,
                    model.gateway == PaymentMethod.RAZORPAY.value,
                    model.gateway_order_id.is_not(None),
                    model.created_at >= since,
                )
                .order_by(model.created_at)
                .limit(self._batch_size)
            ).all()

        for payment_id, gateway_order_id in pending:
            stats.checked += 1
            try:
                if self._reconcile(payment_id, gateway_order_id):
                    stats.settled += 1
            except (ProteanException, SQLAlchemyError) as exc:
                stats.errors += 1
                logger.error(
                    "payment_reconciliation_failed",
                    payment_id=payment_id,
                    gateway_order_id=gateway_order_id,
                    error=str(exc),
                )
                self._audit_failure(payment_id, str(exc))

        logger.info("payment_reconciliation_completed", **stats.to_dict())
        return stats

    def _reconcile(self, payment_id: str, gateway_order_id: str) -> bool:
        gateway_order = self.gateway.fetch_order(gateway_order_id)
        if gateway_order.status != "paid":
            return False

        captured = next((p for p in self.gateway.fetch_order_payments(gateway_order_id) if p.is_captured), None)
        if captured is None:
            logger.warning("gateway_order_paid_without_capture", payment_id=payment_id, gateway_order_id=gateway_order_id)
            return False

        with UnitOfWork():
            payment = lock_payment(payment_id)
            settled = settle_payment_success(
                payment,
                performed_by=RECONCILIATION_ACTOR,
                gateway_payment_id=captured.id,
                amount_minor=captured.amount,
                method=captured.method,
                action=AuditAction.RECONCILED,
            )
        if settled:
            logger.info("payment_reconciled", payment_id=payment_id, gateway_payment_id=captured.id)
        return settled

    def _audit_failure(self, payment_id: str, error: str) -> None:
        try:
            with UnitOfWork():
                payment = current_domain.repository_for(Payment).get_or_none(payment_id)
                if payment is not None:
                    record_audit(payment, AuditAction.RECONCILIATION_FAILED, RECONCILIATION_ACTOR, error=error)
        except (ProteanException, SQLAlchemyError):
            logger.exception("reconciliation_audit_not_recorded", payment_id=payment_id)
