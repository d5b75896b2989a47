"""Persistence for inbound gateway notifications.

``WebhookEvent`` is the idempotency record: one row per gateway event id,
enforced by a unique constraint. ``FailedWebhook`` keeps the exact raw body
(base64 encoded, so any byte sequence survives) and the signature of
deliveries that failed after passing authentication, so the retry worker can
re-verify and replay them.
"""

import base64
from datetime import datetime, timedelta

from protean import Index
from protean.fields import Boolean, DateTime, Dict, Integer, String, Text

from payments.domain import payments
from shared.database import as_utc, utcnow

# Retry delays grow as 2**retries seconds, capped at five minutes
MAX_BACKOFF = timedelta(minutes=5)


class KeySource:
    EVENT_ID = "event_id"
    HEADER = "header"
    COMPOSITE = "composite"


@payments.aggregate(schema_name="webhook_events", indexes=[Index("event_type", name="ix_webhook_events_event_type")])
class WebhookEvent:
    gateway_event_id = String(max_length=255, required=True, unique=True)
    key_source = String(max_length=16, default=KeySource.EVENT_ID)
    event_type = String(max_length=64, required=True)
    gateway_payment_id = String(max_length=64)
    order_id = String(max_length=64)
    payload = Dict()
    processed = Boolean(default=False)
    processed_at = DateTime()
    created_at = DateTime(default=utcnow)


@payments.aggregate(schema_name="failed_webhooks", indexes=[Index("processed", name="ix_failed_webhooks_processed")])
class FailedWebhook:
    # base64 of the raw request body
    payload = Text(required=True)
    signature = String(max_length=256, required=True)
    event_id = String(max_length=255)
    stage = String(max_length=32)
    error = Text(required=True)
    retries = Integer(default=0, min_value=0)
    max_retries = Integer(default=5, min_value=0)
    last_retry_at = DateTime()
    processed = Boolean(default=False)
    processed_at = DateTime()
    created_at = DateTime(default=utcnow)
    updated_at = DateTime(default=utcnow)

    @classmethod
    def capture(cls, body: bytes, **fields) -> "FailedWebhook":
        return cls(payload=base64.b64encode(body).decode("ascii"), **fields)

    @property
    def body(self) -> bytes:
        """The raw body exactly as it was received."""
        return base64.b64decode(self.payload)

    @property
    def exhausted(self) -> bool:
        return not self.processed and self.retries >= self.max_retries

    def backoff(self) -> timedelta:
        return min(timedelta(seconds=2**self.retries), MAX_BACKOFF)

    def next_attempt_at(self) -> datetime | None:
        """When the next retry is due; None means immediately."""
        if self.last_retry_at is None:
            return None
        return as_utc(self.last_retry_at) + self.backoff()

    def is_due(self, now: datetime) -> bool:
        due_at = self.next_attempt_at()
        return due_at is None or now >= due_at

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "stage": self.stage,
            "error": self.error,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "exhausted": self.exhausted,
            "processed": self.processed,
            "last_retry_at": self.last_retry_at.isoformat() if self.last_retry_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
