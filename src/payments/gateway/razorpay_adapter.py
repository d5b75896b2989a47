"""Razorpay gateway adapter over its REST API.

Every request runs with a bounded timeout. Transport timeouts surface as
``GatewayTimeoutError``; any other transport or HTTP failure surfaces as
``GatewayError`` carrying the gateway's error description when it sent one.
"""

from typing import Any

import httpx

from payments.gateway.port import GatewayOrder, GatewayPayment, GatewayRefund, PaymentGateway
from payments.gateway.signing import HMACSigner, payment_message
from shared.exceptions import GatewayError, GatewayTimeoutError
from shared.logging import get_logger

logger = get_logger(__name__)


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        *,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not key_id or not key_secret:
            raise ValueError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET must be set to use the Razorpay gateway")
        if not webhook_secret:
            logger.warning("razorpay_webhook_secret_missing")

        self._payment_signer = HMACSigner(key_secret)
        self._webhook_signer = HMACSigner(webhook_secret)
        self._client = httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            headers={"Content-Type": "application/json", "User-Agent": "storefront/0.1"},
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        try:
            response = self._client.request(method, path, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.error("razorpay_timeout", method=method, path=path)
            raise GatewayTimeoutError(f"Razorpay timed out on {method} {path}") from exc
        except httpx.HTTPStatusError as exc:
            description = _error_description(exc.response)
            logger.error(
                "razorpay_request_failed",
                method=method,
                path=path,
                status_code=exc.response.status_code,
                error=description,
            )
            raise GatewayError(description) from exc
        except httpx.HTTPError as exc:
            logger.error("razorpay_transport_error", method=method, path=path, error=str(exc))
            raise GatewayError(f"Razorpay request failed: {exc}") from exc
        return response.json()

    def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, Any]) -> GatewayOrder:
        body = self._request(
            "POST",
            "/orders",
            {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes},
        )
        return _to_order(body)

    def fetch_order(self, order_id: str) -> GatewayOrder:
        return _to_order(self._request("GET", f"/orders/{order_id}"))

    def fetch_order_payments(self, order_id: str) -> list[GatewayPayment]:
        body = self._request("GET", f"/orders/{order_id}/payments")
        return [_to_payment(item) for item in body.get("items", [])]

    def refund(self, payment_id: str, amount: int, notes: dict[str, Any]) -> GatewayRefund:
        body = self._request("POST", f"/payments/{payment_id}/refund", {"amount": amount, "notes": notes})
        return GatewayRefund(
            id=body["id"],
            payment_id=body.get("payment_id", payment_id),
            amount=int(body.get("amount", amount)),
            currency=body.get("currency", "INR"),
            status=body.get("status", "pending"),
        )

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return self._payment_signer.verify(payment_message(order_id, payment_id), signature)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return self._webhook_signer.verify(payload, signature)


def _error_description(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["description"]
    except (ValueError, KeyError, TypeError):
        return f"Razorpay returned HTTP {response.status_code}"


def _notes(value: Any) -> dict:
    # Razorpay sends an empty list when no notes were set
    return value if isinstance(value, dict) else {}


def _to_order(body: dict) -> GatewayOrder:
    return GatewayOrder(
        id=body["id"],
        amount=int(body["amount"]),
        currency=body.get("currency", "INR"),
        status=body.get("status", "created"),
        receipt=body.get("receipt"),
        notes=_notes(body.get("notes")),
    )


def _to_payment(body: dict) -> GatewayPayment:
    return GatewayPayment(
        id=body["id"],
        order_id=body.get("order_id"),
        amount=int(body["amount"]),
        currency=body.get("currency", "INR"),
        status=body.get("status", "created"),
        method=body.get("method"),
    )
