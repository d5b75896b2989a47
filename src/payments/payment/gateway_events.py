"""Gateway event handlers: apply webhook notifications to payments.

Each handler runs inside the ingestion unit of work, so its effects commit
together with the webhook's ``processed`` flag. Unknown event types are
acknowledged without side effects.
"""

from collections.abc import Callable

from payments.payment.payment import RefundStatus
from payments.payment.settlement import (
    apply_refund,
    find_payment_for_gateway,
    settle_payment_failure,
    settle_payment_success,
)
from payments.webhook.envelope import WebhookEnvelope
from shared.logging import get_logger
from shared.money import from_minor_units

logger = get_logger(__name__)

WEBHOOK_ACTOR = "gateway_webhook"


def _on_payment_captured(envelope: WebhookEnvelope) -> None:
    entity = envelope.payment_entity()
    payment = find_payment_for_gateway(
        gateway_payment_id=entity.id,
        gateway_order_id=entity.order_id,
        order_id=entity.local_order_id,
    )
    settle_payment_success(
        payment,
        performed_by=WEBHOOK_ACTOR,
        gateway_payment_id=entity.id,
        amount_minor=entity.amount,
        method=entity.method,
    )


def _on_payment_failed(envelope: WebhookEnvelope) -> None:
    entity = envelope.payment_entity()
    payment = find_payment_for_gateway(
        gateway_payment_id=entity.id,
        gateway_order_id=entity.order_id,
        order_id=entity.local_order_id,
    )
    settle_payment_failure(
        payment,
        performed_by=WEBHOOK_ACTOR,
        gateway_payment_id=entity.id,
        reason=entity.error_description or entity.error_code,
    )


def _on_refund(status: RefundStatus) -> Callable[[WebhookEnvelope], None]:
    def handler(envelope: WebhookEnvelope) -> None:
        entity = envelope.refund_entity()
        payment = find_payment_for_gateway(gateway_payment_id=entity.payment_id)
        apply_refund(
            payment,
            amount=from_minor_units(entity.amount),
            gateway_refund_id=entity.id,
            status=status,
            performed_by=WEBHOOK_ACTOR,
            reason=entity.notes.get("reason"),
            refund_id=entity.notes.get("refundId"),
        )

    return handler


def _on_order_paid(envelope: WebhookEnvelope) -> None:
    order_entity = envelope.order_entity()
    if envelope.has_entity("payment"):
        entity = envelope.payment_entity()
        payment = find_payment_for_gateway(gateway_payment_id=entity.id, gateway_order_id=order_entity.id)
        settle_payment_success(
            payment,
            performed_by=WEBHOOK_ACTOR,
            gateway_payment_id=entity.id,
            amount_minor=entity.amount,
            method=entity.method,
        )
    else:
        payment = find_payment_for_gateway(gateway_order_id=order_entity.id)
        settle_payment_success(payment, performed_by=WEBHOOK_ACTOR, amount_minor=order_entity.amount)


HANDLERS: dict[str, Callable[[WebhookEnvelope], None]] = {
    "payment.captured": _on_payment_captured,
    "payment.authorized": _on_payment_captured,
    "payment.failed": _on_payment_failed,
    "refund.created": _on_refund(RefundStatus.PENDING),
    "refund.processed": _on_refund(RefundStatus.PROCESSED),
    "refund.failed": _on_refund(RefundStatus.FAILED),
    "order.paid": _on_order_paid,
}


def dispatch(envelope: WebhookEnvelope) -> bool:
    """Apply ``envelope``; returns False for event types with no handler."""
    handler = HANDLERS.get(envelope.event)
    if handler is None:
        logger.info("webhook_event_unhandled", event_type=envelope.event)
        return False
    handler(envelope)
    return True
