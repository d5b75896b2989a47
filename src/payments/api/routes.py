"""FastAPI routes for the Payments domain: payments, refunds and webhooks."""

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from payments.api.schemas import (
    CashOnDeliveryRequest,
    ConfigureGatewayRequest,
    CreatePaymentRequest,
    RefundRequest,
    RetrySweepRequest,
    VerifyPaymentRequest,
)
from payments.gateway import get_gateway
from payments.gateway.fake_adapter import FakeGateway
from payments.payment.reconciliation import PaymentReconciliationJob
from payments.payment.service import PaymentService
from payments.webhook.ingestion import WebhookIngestionPipeline
from payments.webhook.retry import WebhookRetryWorker
from shared.exceptions import ValidationError
from shared.principal import Principal, current_principal
from shared.responses import ApiResponse, ok

# ---------------------------------------------------------------------------
# Payment Router
# ---------------------------------------------------------------------------
payment_router = APIRouter(prefix="/payments", tags=["payments"])


@payment_router.post("", status_code=201)
def create_payment(body: CreatePaymentRequest, principal: Principal = Depends(current_principal)) -> dict:
    """Open a payment for an order and create its gateway intent."""
    initiation = PaymentService().create_payment(
        body.order_id,
        body.amount,
        principal,
        currency=body.currency,
        gateway=body.gateway,
    )
    return ok(initiation.to_dict(), message="Payment created")


@payment_router.post("/verify")
def verify_payment(body: VerifyPaymentRequest, principal: Principal = Depends(current_principal)) -> dict:
    payment = PaymentService().verify_payment(body.payment_id, body.gateway_payment_id, body.signature, principal)
    return ok(payment.serialize(), message="Payment verified")


@payment_router.post("/cod", status_code=201)
def cash_on_delivery(body: CashOnDeliveryRequest, principal: Principal = Depends(current_principal)) -> dict:
    payment = PaymentService().process_cod(body.order_id, principal)
    return ok(payment.serialize(), message="Cash on delivery accepted")


@payment_router.post("/cod/{order_id}/collected")
def cod_collected(order_id: str, principal: Principal = Depends(current_principal)) -> dict:
    payment = PaymentService().mark_cod_paid(order_id, principal)
    return ok(payment.serialize(), message="Cash collected")


@payment_router.get("/order/{order_id}")
def get_payment_for_order(order_id: str, principal: Principal = Depends(current_principal)) -> dict:
    """Latest payment attempt for an order."""
    return ok(PaymentService().get_payment_for_order(order_id, principal).serialize())


@payment_router.get("/{payment_id}")
def get_payment(payment_id: str, principal: Principal = Depends(current_principal)) -> dict:
    return ok(PaymentService().get_payment(payment_id, principal).serialize())


@payment_router.post("/{payment_id}/refund")
def refund_payment(payment_id: str, body: RefundRequest, principal: Principal = Depends(current_principal)) -> dict:
    refund = PaymentService().process_refund(payment_id, principal, amount=body.amount, reason=body.reason)
    return ok(refund.serialize(), message="Refund processed")


# ---------------------------------------------------------------------------
# Webhook Router
# ---------------------------------------------------------------------------
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhook_router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
) -> JSONResponse:
    """Receive a gateway notification. The signature covers the raw body, so it is read unparsed."""
    raw_body = await request.body()
    receipt = await run_in_threadpool(
        WebhookIngestionPipeline().ingest,
        raw_body,
        x_razorpay_signature,
        x_razorpay_event_id,
    )
    body = ApiResponse(
        success=receipt.success,
        data=receipt.to_dict(),
        message=receipt.message,
        error=receipt.error,
        code=None if receipt.success else "WEBHOOK_PROCESSING_FAILED",
    )
    # A failed delivery is already queued for retry; 500 also tells the gateway to redeliver
    return JSONResponse(status_code=200 if receipt.success else 500, content=body.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# Maintenance Router
# ---------------------------------------------------------------------------
maintenance_router = APIRouter(prefix="/payments/maintenance", tags=["payments-maintenance"])


@maintenance_router.post("/webhooks/retry")
def retry_failed_webhooks(body: RetrySweepRequest, principal: Principal = Depends(current_principal)) -> dict:
    principal.require_admin()
    return ok(WebhookRetryWorker().run_once(batch_size=body.batch_size).to_dict())


@maintenance_router.get("/webhooks/exhausted")
def exhausted_webhooks(principal: Principal = Depends(current_principal)) -> dict:
    principal.require_admin()
    return ok([row.serialize() for row in WebhookRetryWorker().list_exhausted()])


@maintenance_router.post("/reconcile")
def reconcile_payments(principal: Principal = Depends(current_principal)) -> dict:
    principal.require_admin()
    return ok(PaymentReconciliationJob().run_once().to_dict())


@maintenance_router.post("/gateway/configure")
def configure_gateway(body: ConfigureGatewayRequest, principal: Principal = Depends(current_principal)) -> dict:
    """Configure the fake gateway's behavior (development only)."""
    principal.require_admin()
    gateway = get_gateway()
    if not isinstance(gateway, FakeGateway):
        raise ValidationError({"gateway": ["Gateway configuration is only available for the fake gateway"]})
    gateway.configure(
        should_succeed=body.should_succeed,
        failure_reason=body.failure_reason,
        should_time_out=body.should_time_out,
    )
    return ok(
        {
            "gateway": gateway.name,
            "should_succeed": gateway.should_succeed,
            "should_time_out": gateway.should_time_out,
            "failure_reason": gateway.failure_reason,
        }
    )
