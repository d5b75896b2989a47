"""Tests for webhook authentication, idempotency and payment updates."""

import json
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
import structlog
from ordering.order.order import Order, OrderStatus
from ordering.order.status import OrderService
from payments.payment import gateway_events
from payments.payment.payment import AuditAction, Payment
from payments.webhook import ingestion
from payments.webhook.ingestion import IngestionStage, WebhookIngestionPipeline
from payments.webhook.records import FailedWebhook, KeySource, WebhookEvent
from protean.utils.globals import current_domain
from shared.config import reset_settings
from shared.constants import PaymentStatus
from shared.domain import storefront
from shared.exceptions import InvalidSignatureError, MissingSignatureError, PayloadTooLargeError


def _count(aggregate_cls):
    return current_domain.repository_for(aggregate_cls).query.all().total


def _only(aggregate_cls):
    [record] = current_domain.repository_for(aggregate_cls).query.all()
    return record


def _state(payment_id):
    payment = current_domain.repository_for(Payment).get(payment_id)
    return payment, current_domain.repository_for(Order).get(payment.order_id)


def _captured(webhook_body, intent, amount=55000, payment_id="pay_wh_1", **kwargs):
    return webhook_body(
        "payment.captured",
        "payment",
        {
            "id": payment_id,
            "amount": amount,
            "currency": "INR",
            "status": "captured",
            "order_id": intent.gateway_intent.id,
            "method": "card",
            "notes": {"orderId": intent.payment.order_id},
        },
        **kwargs,
    )


class TestAuthentication:
    def test_oversized_body_is_rejected(self, monkeypatch, gateway):
        monkeypatch.setenv("WEBHOOK_MAX_BYTES", "64")
        reset_settings()
        body = json.dumps({"event": "payment.captured", "padding": "x" * 100}).encode()

        with pytest.raises(PayloadTooLargeError):
            WebhookIngestionPipeline().ingest(body, gateway.sign_webhook(body))
        assert _count(FailedWebhook) == 0

    def test_missing_signature(self, webhook_body):
        with pytest.raises(MissingSignatureError):
            WebhookIngestionPipeline().ingest(webhook_body("payment.captured"), None)

    def test_invalid_signature_persists_nothing(self, webhook_body):
        with pytest.raises(InvalidSignatureError):
            WebhookIngestionPipeline().ingest(webhook_body("payment.captured"), "f" * 64)
        assert _count(WebhookEvent) == 0
        assert _count(FailedWebhook) == 0

    def test_signature_covers_the_raw_body(self, gateway, webhook_body):
        body = webhook_body("payment.captured")
        signature = gateway.sign_webhook(body)
        reformatted = json.dumps(json.loads(body), indent=2).encode()
        with pytest.raises(InvalidSignatureError):
            WebhookIngestionPipeline().ingest(reformatted, signature)


class TestPaymentEvents:
    def test_captured_settles_payment(self, intent, webhook_body, deliver, audit_actions):
        receipt = deliver(_captured(webhook_body, intent))

        assert receipt.success
        assert receipt.stage == IngestionStage.PROCESSED
        payment, order = _state(intent.payment.id)
        assert payment.status == PaymentStatus.PAID.value
        assert payment.gateway_payment_id == "pay_wh_1"
        assert payment.method == "card"
        assert order.status == OrderStatus.CONFIRMED.value
        assert audit_actions(payment.id).count(AuditAction.CAPTURED.value) == 1

    def test_duplicate_delivery_applies_once(self, intent, webhook_body, deliver, audit_actions):
        body = _captured(webhook_body, intent, event_id="evt_dup")

        first = deliver(body)
        second = deliver(body)

        assert first.success and not first.duplicate
        assert second.success and second.duplicate
        assert _count(WebhookEvent) == 1
        assert audit_actions(intent.payment.id).count(AuditAction.CAPTURED.value) == 1

    def test_failed_then_late_capture(self, intent, webhook_body, deliver):
        failed = webhook_body(
            "payment.failed",
            "payment",
            {
                "id": "pay_wh_1",
                "amount": 55000,
                "order_id": intent.gateway_intent.id,
                "error_description": "Card declined",
            },
        )
        deliver(failed)
        payment, order = _state(intent.payment.id)
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason == "Card declined"
        assert order.payment_status == PaymentStatus.FAILED.value
        assert order.status == OrderStatus.PENDING.value

        deliver(_captured(webhook_body, intent))
        payment, order = _state(intent.payment.id)
        assert payment.status == PaymentStatus.PAID.value
        assert order.status == OrderStatus.CONFIRMED.value

    def test_failure_never_downgrades_a_paid_payment(self, paid_payment, webhook_body, deliver):
        deliver(
            webhook_body(
                "payment.failed",
                "payment",
                {"id": paid_payment.gateway_payment_id, "order_id": paid_payment.gateway_order_id},
            )
        )
        payment, _ = _state(paid_payment.id)
        assert payment.status == PaymentStatus.PAID.value

    def test_capture_for_cancelled_order_is_kept_for_refund(self, intent, buyer, webhook_body, deliver, audit_actions):
        OrderService().update_order_status(intent.payment.order_id, OrderStatus.CANCELLED, buyer)

        receipt = deliver(_captured(webhook_body, intent))

        assert receipt.success
        payment, order = _state(intent.payment.id)
        assert payment.status == PaymentStatus.PAID.value
        assert order.status == OrderStatus.CANCELLED.value
        assert AuditAction.CAPTURED_AFTER_CANCEL.value in audit_actions(payment.id)

    def test_order_paid_event(self, intent, webhook_body, deliver):
        body = webhook_body("order.paid", "order", {"id": intent.gateway_intent.id, "amount": 55000, "status": "paid"})

        assert deliver(body).success
        payment, _ = _state(intent.payment.id)
        assert payment.status == PaymentStatus.PAID.value

    def test_unhandled_event_is_acknowledged(self, webhook_body, deliver):
        receipt = deliver(webhook_body("settlement.processed"))

        assert receipt.success
        assert _only(WebhookEvent).processed is True


class TestIdempotencyKeys:
    def test_header_event_id_is_used_when_body_has_none(self, intent, webhook_body, deliver):
        body = _captured(webhook_body, intent, event_id=None)

        receipt = deliver(body, event_id="hdr_evt_1")

        assert receipt.event_key == "hdr_evt_1"
        assert _only(WebhookEvent).key_source == KeySource.HEADER

    def test_composite_key_still_deduplicates(self, intent, webhook_body, deliver):
        body = _captured(webhook_body, intent, event_id=None, created_at=1712345678, account_id="acc_9")

        first = deliver(body)
        second = deliver(body)

        assert first.event_key == "payment.captured_1712345678_acc_9"
        assert second.duplicate
        assert _only(WebhookEvent).key_source == KeySource.COMPOSITE

    def test_composite_keys_can_be_disabled(self, monkeypatch, intent, webhook_body, deliver):
        monkeypatch.setenv("ALLOW_COMPOSITE_EVENT_KEYS", "false")
        reset_settings()

        receipt = deliver(_captured(webhook_body, intent, event_id=None))

        assert not receipt.success
        assert _count(WebhookEvent) == 0
        assert _count(FailedWebhook) == 1


class TestFailures:
    def test_malformed_body_is_queued_for_retry(self, gateway):
        body = b'{"event": '
        receipt = WebhookIngestionPipeline().ingest(body, gateway.sign_webhook(body))

        assert not receipt.success
        assert receipt.failed_webhook_id is not None
        failed = current_domain.repository_for(FailedWebhook).get(receipt.failed_webhook_id)
        assert failed.body == body
        assert failed.signature == gateway.sign_webhook(body)
        assert failed.retries == 0
        assert failed.max_retries == 5

    def test_unknown_payment_fails_after_claim(self, webhook_body, deliver):
        body = webhook_body("payment.captured", "payment", {"id": "pay_ghost", "order_id": "order_ghost"})

        receipt = deliver(body)

        assert not receipt.success
        assert receipt.stage == IngestionStage.DISPATCHED
        event = _only(WebhookEvent)
        assert event.processed is False
        failed = current_domain.repository_for(FailedWebhook).get(receipt.failed_webhook_id)
        assert failed.stage == IngestionStage.DISPATCHED.value
        assert failed.event_id == event.gateway_event_id

    def test_amount_mismatch_leaves_payment_pending(self, intent, webhook_body, deliver):
        receipt = deliver(_captured(webhook_body, intent, amount=100))

        assert not receipt.success
        payment, order = _state(intent.payment.id)
        assert payment.status == PaymentStatus.PENDING.value
        assert order.status == OrderStatus.PENDING.value

    def test_non_utf8_body_is_stored_byte_for_byte(self, gateway):
        body = b'{"event": "payment.captured", "note": "\xff\xfe\x80"}'
        receipt = WebhookIngestionPipeline().ingest(body, gateway.sign_webhook(body))

        assert not receipt.success
        failed = current_domain.repository_for(FailedWebhook).get(receipt.failed_webhook_id)
        assert failed.body == body
        assert gateway.verify_webhook_signature(failed.body, failed.signature)


@pytest.fixture()
def captured_logs(monkeypatch):
    """Route the ingestion and handler loggers through a structlog capture."""
    capture = structlog.testing.LogCapture()
    logger = structlog.wrap_logger(
        structlog.testing.CapturingLogger(),
        processors=[capture],
        wrapper_class=structlog.BoundLogger,
    )
    monkeypatch.setattr(ingestion, "logger", logger)
    monkeypatch.setattr(gateway_events, "logger", logger)
    return capture.entries


def _logged(entries, name):
    return [entry for entry in entries if entry["event"] == name]


class TestIngestionLogging:
    def test_processed_and_duplicate_events_carry_the_event_type(self, intent, webhook_body, deliver, captured_logs):
        body = _captured(webhook_body, intent, event_id="evt_logged")

        assert deliver(body).success
        assert deliver(body).duplicate

        [processed] = _logged(captured_logs, "webhook_processed")
        assert processed["event_type"] == "payment.captured"
        assert processed["event_key"] == "evt_logged"
        [duplicate] = _logged(captured_logs, "webhook_duplicate")
        assert duplicate["event_type"] == "payment.captured"

    def test_composite_key_warning(self, intent, webhook_body, deliver, captured_logs):
        assert deliver(_captured(webhook_body, intent, event_id=None)).success

        [warning] = _logged(captured_logs, "webhook_composite_event_key")
        assert warning["log_level"] == "warning"
        assert warning["event_type"] == "payment.captured"

    def test_unhandled_event(self, webhook_body, deliver, captured_logs):
        assert deliver(webhook_body("settlement.processed")).success

        [unhandled] = _logged(captured_logs, "webhook_event_unhandled")
        assert unhandled["event_type"] == "settlement.processed"

    def test_processing_failure(self, webhook_body, deliver, captured_logs):
        receipt = deliver(webhook_body("payment.captured", "payment", {"id": "pay_ghost", "order_id": "order_ghost"}))

        assert not receipt.success
        [failure] = _logged(captured_logs, "webhook_processing_failed")
        assert failure["log_level"] == "error"
        assert failure["event_type"] == "payment.captured"
        assert failure["stage"] == IngestionStage.DISPATCHED.value


class TestConcurrentDeliveries:
    def test_concurrent_duplicate_deliveries_apply_once(self, intent, gateway, webhook_body, audit_actions):
        body = _captured(webhook_body, intent, event_id="evt_race")
        signature = gateway.sign_webhook(body)
        start = Barrier(8)

        def _deliver(_):
            with storefront.domain_context():
                start.wait()
                return WebhookIngestionPipeline().ingest(body, signature)

        with ThreadPoolExecutor(max_workers=8) as pool:
            receipts = list(pool.map(_deliver, range(8)))

        assert all(receipt.success for receipt in receipts)
        assert sum(not receipt.duplicate for receipt in receipts) == 1
        assert _count(WebhookEvent) == 1
        assert _count(FailedWebhook) == 0
        assert audit_actions(intent.payment.id).count(AuditAction.CAPTURED.value) == 1
        payment, _ = _state(intent.payment.id)
        assert payment.status == PaymentStatus.PAID.value
