"""Webhook ingestion: authenticate, deduplicate and apply gateway events.

Stages, in order:

1. size check (reject oversized bodies)
2. signature presence
3. signature verification over the raw, unparsed body
4. parse the envelope and derive the idempotency key
5. claim the key: insert the ``WebhookEvent`` row in its own transaction
6. dispatch to the payment handlers
7. mark the event processed, in the same transaction as step 6

Stages 1-3 reject the delivery with a typed error and persist nothing.
A failure in stages 4-7 never escapes: the raw body and signature are stored
as a ``FailedWebhook`` for the retry worker and a failure receipt is
returned.

Step 6 locks the event row, so two concurrent deliveries of the same event
apply its effects once; the second sees ``processed`` and short-circuits.
"""

from dataclasses import dataclass
from enum import Enum

from protean import UnitOfWork
from protean.exceptions import ProteanException, TransactionError
from protean.exceptions import ValidationError as ProteanValidationError
from protean.utils.globals import current_domain
from sqlalchemy.exc import SQLAlchemyError

from payments.payment import gateway_events
from payments.payment.service import PaymentService
from payments.webhook.envelope import WebhookEnvelope, parse_envelope
from payments.webhook.records import FailedWebhook, KeySource, WebhookEvent
from shared import database
from shared.config import get_settings
from shared.exceptions import InvalidSignatureError, MissingSignatureError, PayloadTooLargeError
from shared.logging import get_logger

logger = get_logger(__name__)


class IngestionStage(Enum):
    SIGNATURE_VERIFIED = "signature_verified"
    PARSED = "parsed"
    DEDUPLICATED = "deduplicated"
    DISPATCHED = "dispatched"
    PROCESSED = "processed"


@dataclass(frozen=True)
class WebhookReceipt:
    success: bool
    stage: IngestionStage
    event_key: str | None = None
    event_type: str | None = None
    duplicate: bool = False
    error: str | None = None
    failed_webhook_id: str | None = None

    @property
    def message(self) -> str:
        if not self.success:
            return "Webhook processing failed"
        return "Webhook already processed" if self.duplicate else "Webhook processed"

    def to_dict(self) -> dict:
        return {
            "event_key": self.event_key,
            "event_type": self.event_type,
            "stage": self.stage.value,
            "duplicate": self.duplicate,
            "failed_webhook_id": self.failed_webhook_id,
        }


class _Progress:
    """Tracks how far a delivery got, for failure records."""

    def __init__(self) -> None:
        self.stage = IngestionStage.SIGNATURE_VERIFIED
        self.event_key: str | None = None
        self.event_type: str | None = None


class WebhookIngestionPipeline:
    def __init__(self, payment_service: PaymentService | None = None) -> None:
        self._payments = payment_service or PaymentService()

    def ingest(self, raw_body: bytes | str, signature: str | None, event_id: str | None = None) -> WebhookReceipt:
        """Run a delivery through every stage.

        ``event_id`` is the gateway's event id header, used as the
        idempotency key when the body carries none.
        """
        body = raw_body.encode() if isinstance(raw_body, str) else raw_body
        settings = get_settings()
        logger.debug("webhook_received", size=len(body))

        if len(body) > settings.webhook_max_bytes:
            logger.warning("webhook_rejected_too_large", size=len(body), limit=settings.webhook_max_bytes)
            raise PayloadTooLargeError(f"Webhook payload exceeds {settings.webhook_max_bytes} bytes")
        if not signature:
            logger.warning("webhook_rejected_unsigned")
            raise MissingSignatureError()
        if not self.verify_signature(body, signature):
            logger.warning("webhook_rejected_bad_signature")
            raise InvalidSignatureError()

        progress = _Progress()
        try:
            return self.process_verified(body, event_id=event_id, progress=progress)
        except Exception as exc:
            failed_id = self._record_failure(body, signature, event_id, progress, exc)
            return WebhookReceipt(
                success=False,
                stage=progress.stage,
                event_key=progress.event_key,
                event_type=progress.event_type,
                error=str(exc),
                failed_webhook_id=failed_id,
            )

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        return self._payments.verify_webhook_signature(body, signature)

    def process_verified(
        self,
        body: bytes,
        event_id: str | None = None,
        progress: _Progress | None = None,
    ) -> WebhookReceipt:
        """Stages 4-7 for an already authenticated body. Raises on failure."""
        progress = progress or _Progress()
        envelope = parse_envelope(body)
        progress.event_type = envelope.event
        key, source = envelope.idempotency_key(
            header_event_id=event_id,
            allow_composite=get_settings().allow_composite_event_keys,
        )
        progress.event_key = key
        progress.stage = IngestionStage.PARSED
        if source == KeySource.COMPOSITE:
            logger.warning("webhook_composite_event_key", event_type=envelope.event, event_key=key)

        record_id = self._claim(key, source, envelope)
        progress.stage = IngestionStage.DEDUPLICATED

        with UnitOfWork():
            record = database.lock(WebhookEvent, id=record_id)
            if record.processed:
                logger.info("webhook_duplicate", event_key=key, event_type=envelope.event)
                return WebhookReceipt(
                    success=True,
                    stage=IngestionStage.DEDUPLICATED,
                    event_key=key,
                    event_type=envelope.event,
                    duplicate=True,
                )

            progress.stage = IngestionStage.DISPATCHED
            gateway_events.dispatch(envelope)
            record.processed = True
            record.processed_at = database.utcnow()
            current_domain.repository_for(WebhookEvent).add(record)

        progress.stage = IngestionStage.PROCESSED
        logger.info("webhook_processed", event_key=key, event_type=envelope.event)
        return WebhookReceipt(success=True, stage=IngestionStage.PROCESSED, event_key=key, event_type=envelope.event)

    def _claim(self, key: str, source: str, envelope: WebhookEnvelope) -> str:
        gateway_payment_id, order_id = envelope.references()
        try:
            with UnitOfWork():
                existing = _event_for_key(key)
                if existing is not None:
                    return existing.id
                record = WebhookEvent(
                    gateway_event_id=key,
                    key_source=source,
                    event_type=envelope.event,
                    gateway_payment_id=gateway_payment_id,
                    order_id=order_id,
                    payload=envelope.model_dump(mode="json"),
                )
                current_domain.repository_for(WebhookEvent).add(record)
                return record.id
        except (ProteanValidationError, TransactionError):
            # A concurrent delivery claimed the key first
            existing = _event_for_key(key)
            if existing is None:
                raise
            return existing.id

    def _record_failure(
        self,
        body: bytes,
        signature: str,
        event_id: str | None,
        progress: _Progress,
        exc: Exception,
    ) -> str | None:
        logger.error(
            "webhook_processing_failed",
            stage=progress.stage.value,
            event_key=progress.event_key,
            event_type=progress.event_type,
            error=str(exc),
            exc_info=exc,
        )
        try:
            with UnitOfWork():
                failed = FailedWebhook.capture(
                    body,
                    signature=signature,
                    event_id=event_id or progress.event_key,
                    stage=progress.stage.value,
                    error=str(exc)[:4000],
                    max_retries=get_settings().webhook_max_retries,
                )
                current_domain.repository_for(FailedWebhook).add(failed)
            return failed.id
        except (ProteanException, SQLAlchemyError):
            logger.exception("failed_webhook_not_recorded", event_key=progress.event_key)
            return None


def _event_for_key(key: str) -> WebhookEvent | None:
    return current_domain.repository_for(WebhookEvent).query.filter(gateway_event_id=key).all().first
