import json
from itertools import count

import pytest
from payments.payment.payment import PaymentAuditLog
from payments.payment.service import PaymentService
from payments.webhook.ingestion import WebhookIngestionPipeline
from protean.utils.globals import current_domain

_event_ids = count(1)


@pytest.fixture()
def pending_order(make_product, place_order):
    """A PENDING order worth 550.00: three of A at 100.00 and one B1 variant at 250.00."""
    return place_order(*_catalogue_lines(make_product))


def _catalogue_lines(make_product):
    product_a = make_product(name="A", price="100.00", quantity=10)
    product_b = make_product(name="B", price="250.00", quantity=10)
    return (product_a.id, None, 3), (product_b.id, None, 1)


@pytest.fixture()
def intent(pending_order, buyer):
    """A pending order with an open payment and gateway intent."""
    return PaymentService().create_payment(pending_order.id, pending_order.total, buyer)


@pytest.fixture()
def paid_payment(intent, gateway, buyer):
    """A payment captured on the gateway and verified by the client."""
    captured = gateway.capture(intent.gateway_intent.id)
    signature = gateway.sign_payment(intent.gateway_intent.id, captured.id)
    return PaymentService().verify_payment(intent.payment.id, captured.id, signature, buyer)


@pytest.fixture()
def webhook_body():
    """Build a gateway webhook body around a single entity."""

    def _body(event, entity_name=None, entity=None, *, event_id="auto", created_at=1700000000, account_id="acc_test"):
        body = {
            "entity": "event",
            "account_id": account_id,
            "event": event,
            "created_at": created_at,
            "payload": {},
        }
        if event_id == "auto":
            body["id"] = f"evt_{next(_event_ids):06d}"
        elif event_id is not None:
            body["id"] = event_id
        if entity_name:
            body["payload"][entity_name] = {"entity": entity}
        return json.dumps(body).encode()

    return _body


@pytest.fixture()
def deliver(gateway):
    """Sign a body with the gateway's webhook secret and run it through ingestion."""

    def _deliver(body, event_id=None):
        return WebhookIngestionPipeline().ingest(body, gateway.sign_webhook(body), event_id=event_id)

    return _deliver


@pytest.fixture()
def audit_actions():
    def _actions(payment_id):
        entries = (
            current_domain.repository_for(PaymentAuditLog)
            .query.filter(payment_id=payment_id)
            .order_by("created_at")
            .limit(None)
            .all()
        )
        return [entry.action for entry in entries]

    return _actions
