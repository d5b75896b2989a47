"""Error taxonomy shared by every bounded context.

Errors extend ``protean.exceptions`` so domain code and the framework speak
the same language: a missing aggregate is an ``ObjectNotFoundError`` whether
the repository or a service raised it. Each storefront error also carries an
HTTP status and a stable machine-readable code so the API layer can map it
without knowing where it was raised. Field-level detail goes in ``messages``
(``{"field": ["problem", ...]}``).
"""

from typing import Any

from protean.exceptions import (
    InvalidOperationError,
    InvalidStateError,
    ObjectNotFoundError,
    ProteanException,
)
from protean.exceptions import ValidationError as ProteanValidationError


class StorefrontError(ProteanException):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str | dict[str, list[str]] | None = None, **details: Any) -> None:
        if isinstance(message, dict):
            messages = message
            text = "; ".join(
                f"{field}: {', '.join(problems)}" for field, problems in message.items()
            ) or self.default_message
        else:
            messages = {}
            text = message or self.default_message

        super().__init__(text, extra_info=details or None)

        # Protean's message-carrying bases overwrite ``messages`` in their
        # own __init__, so the storefront view is assigned last.
        self.messages = messages
        self.message = text
        self.details = details

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.messages:
            payload["errors"] = self.messages
        return payload


# ---------------------------------------------------------------------------
# Request errors
# ---------------------------------------------------------------------------
class ValidationError(StorefrontError, ProteanValidationError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class UnauthorizedError(StorefrontError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class ForbiddenError(StorefrontError, InvalidOperationError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Forbidden"


class NotFoundError(StorefrontError, ObjectNotFoundError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", **details: Any) -> None:
        self.resource = resource
        super().__init__(f"{resource} not found", **details)


# ---------------------------------------------------------------------------
# Ordering and inventory
# ---------------------------------------------------------------------------
class EmptyCartError(ValidationError):
    code = "EMPTY_CART"
    default_message = "Cart is empty"


class InsufficientStockError(StorefrontError, InvalidOperationError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, variant_id: str | None, requested: int, available: int) -> None:
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        target = f"variant {variant_id}" if variant_id else f"product {product_id}"
        super().__init__(
            {"quantity": [f"Insufficient stock for {target}: requested {requested}, available {available}"]},
            product_id=product_id,
            variant_id=variant_id,
        )


class InvalidTransitionError(StorefrontError, InvalidStateError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, entity: str = "Order") -> None:
        self.current = current
        self.target = target
        self.entity = entity
        super().__init__({"status": [f"Invalid {entity.lower()} status transition from {current} to {target}"]})


class RefundLimitError(StorefrontError, InvalidOperationError):
    status_code = 409
    code = "REFUND_LIMIT_EXCEEDED"

    def __init__(self, payment_id: str, requested: Any, refundable: Any) -> None:
        self.payment_id = payment_id
        self.requested = requested
        self.refundable = refundable
        super().__init__(
            {"amount": [f"Refund of {requested} exceeds the refundable balance of {refundable}"]},
            payment_id=payment_id,
        )


# ---------------------------------------------------------------------------
# Payments and webhooks
# ---------------------------------------------------------------------------
class SignatureError(StorefrontError):
    status_code = 401
    code = "INVALID_SIGNATURE"
    default_message = "Signature verification failed"


class InvalidSignatureError(SignatureError):
    default_message = "Invalid webhook signature"


class MissingSignatureError(StorefrontError):
    status_code = 400
    code = "MISSING_SIGNATURE"
    default_message = "Missing webhook signature"


class PayloadTooLargeError(StorefrontError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"
    default_message = "Webhook payload too large"


class GatewayError(StorefrontError):
    status_code = 502
    code = "GATEWAY_ERROR"
    default_message = "Payment gateway request failed"


class GatewayTimeoutError(GatewayError):
    status_code = 504
    code = "GATEWAY_TIMEOUT"
    default_message = "Payment gateway timed out"
