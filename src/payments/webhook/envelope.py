"""Typed view of a gateway webhook body.

Only the envelope is validated up front (event name plus the fields used for
the idempotency key). Entities inside ``payload`` are validated lazily by
the handler that needs them, so a delivery with an unexpected entity shape is
still recorded under its idempotency key before it fails.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from payments.webhook.records import KeySource
from shared.exceptions import ValidationError


def _dict_notes(value: Any) -> dict:
    # The gateway serializes empty notes as []
    return value if isinstance(value, dict) else {}


class _Entity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    notes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def _normalize_notes(cls, value: Any) -> dict:
        return _dict_notes(value)


class PaymentEntity(_Entity):
    id: str
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    order_id: str | None = None
    method: str | None = None
    error_code: str | None = None
    error_description: str | None = None

    @property
    def local_order_id(self) -> str | None:
        return self.notes.get("orderId") or self.notes.get("order_id")


class RefundEntity(_Entity):
    id: str
    payment_id: str
    amount: int
    currency: str | None = None
    status: str | None = None


class OrderEntity(_Entity):
    id: str
    amount: int | None = None
    status: str | None = None


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    event: str = Field(min_length=1)
    account_id: str | None = None
    created_at: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    def idempotency_key(self, header_event_id: str | None = None, allow_composite: bool = True) -> tuple[str, str]:
        """Return ``(key, source)`` identifying this delivery."""
        if self.id:
            return self.id, KeySource.EVENT_ID
        if header_event_id:
            return header_event_id, KeySource.HEADER
        if not allow_composite:
            raise ValidationError({"id": ["Webhook carries no event id"]})
        if self.created_at is None:
            raise ValidationError({"created_at": ["Webhook carries neither an event id nor a timestamp"]})
        return f"{self.event}_{self.created_at}_{self.account_id or 'unknown'}", KeySource.COMPOSITE

    def _entity(self, name: str) -> dict | None:
        wrapper = self.payload.get(name)
        if not isinstance(wrapper, dict):
            return None
        entity = wrapper.get("entity")
        return entity if isinstance(entity, dict) else None

    def _parse(self, name: str, model: type[BaseModel]):
        raw = self._entity(name)
        if raw is None:
            raise ValidationError({"payload": [f"{self.event} webhook has no {name} entity"]})
        try:
            return model.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError({"payload": [f"Malformed {name} entity: {exc.error_count()} error(s)"]}) from exc

    def payment_entity(self) -> PaymentEntity:
        return self._parse("payment", PaymentEntity)

    def refund_entity(self) -> RefundEntity:
        return self._parse("refund", RefundEntity)

    def order_entity(self) -> OrderEntity:
        return self._parse("order", OrderEntity)

    def has_entity(self, name: str) -> bool:
        return self._entity(name) is not None

    def references(self) -> tuple[str | None, str | None]:
        """Best-effort ``(gateway_payment_id, local_order_id)`` for indexing the event row."""
        payment = self._entity("payment") or {}
        notes = _dict_notes(payment.get("notes"))
        gateway_payment_id = payment.get("id")
        if not gateway_payment_id:
            refund = self._entity("refund") or {}
            gateway_payment_id = refund.get("payment_id")
        order_id = notes.get("orderId") or notes.get("order_id")
        return (
            str(gateway_payment_id) if gateway_payment_id else None,
            str(order_id) if order_id else None,
        )


def parse_envelope(raw_body: bytes) -> WebhookEnvelope:
    try:
        return WebhookEnvelope.model_validate_json(raw_body)
    except PydanticValidationError as exc:
        problems = [f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in exc.errors()]
        raise ValidationError({"payload": problems or ["Malformed webhook body"]}) from exc
