"""Tests for opening payments and creating gateway intents."""

from decimal import Decimal

import pytest
from ordering.order.order import OrderStatus
from ordering.order.status import OrderService
from payments.payment.payment import AuditAction, Payment
from payments.payment.service import PaymentService
from shared.constants import PaymentMethod, PaymentStatus
from protean.utils.globals import current_domain
from shared.exceptions import ForbiddenError, GatewayError, GatewayTimeoutError, ValidationError


def _payment_count(order_id):
    return current_domain.repository_for(Payment).query.filter(order_id=order_id).all().total


def _payment(payment_id):
    return current_domain.repository_for(Payment).get(payment_id)


class TestCreatePayment:
    def test_creates_pending_payment_and_intent(self, pending_order, buyer, gateway, audit_actions):
        initiation = PaymentService().create_payment(pending_order.id, Decimal("550.00"), buyer)

        payment = _payment(initiation.payment.id)
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.amount == Decimal("550.00")
        assert payment.gateway_order_id == initiation.gateway_intent.id
        assert payment.gateway == PaymentMethod.RAZORPAY.value

        [call] = gateway.calls_to("create_order")
        assert call["amount"] == 55000
        assert call["currency"] == "INR"
        assert call["notes"]["orderId"] == pending_order.id

        actions = audit_actions(payment.id)
        assert AuditAction.CREATED.value in actions
        assert AuditAction.INTENT_CREATED.value in actions

    def test_repeat_request_reuses_the_open_payment(self, pending_order, buyer, gateway):
        first = PaymentService().create_payment(pending_order.id, "550.00", buyer)
        second = PaymentService().create_payment(pending_order.id, "550.00", buyer)

        assert second.payment.id == first.payment.id
        assert second.gateway_intent.id == first.gateway_intent.id
        assert len(gateway.calls_to("create_order")) == 1
        assert _payment_count(pending_order.id) == 1

    def test_to_dict(self, intent):
        data = intent.to_dict()
        assert data["payment"]["status"] == PaymentStatus.PENDING.value
        assert data["gateway_intent"]["amount"] == 55000


class TestCreatePaymentRejections:
    def test_amount_must_match_total(self, pending_order, buyer):
        with pytest.raises(ValidationError) as exc:
            PaymentService().create_payment(pending_order.id, "549.99", buyer)
        assert "amount" in exc.value.messages
        assert _payment_count(pending_order.id) == 0

    def test_currency_must_match(self, pending_order, buyer):
        with pytest.raises(ValidationError):
            PaymentService().create_payment(pending_order.id, "550.00", buyer, currency="USD")

    def test_cod_is_not_an_online_gateway(self, pending_order, buyer):
        with pytest.raises(ValidationError):
            PaymentService().create_payment(pending_order.id, "550.00", buyer, gateway=PaymentMethod.COD)

    def test_unknown_gateway(self, pending_order, buyer):
        with pytest.raises(ValidationError):
            PaymentService().create_payment(pending_order.id, "550.00", buyer, gateway="paypal")

    def test_order_must_be_pending(self, pending_order, buyer):
        OrderService().update_order_status(pending_order.id, OrderStatus.CANCELLED, buyer)
        with pytest.raises(ValidationError):
            PaymentService().create_payment(pending_order.id, "550.00", buyer)

    def test_other_buyers_order(self, pending_order, other_buyer):
        with pytest.raises(ForbiddenError):
            PaymentService().create_payment(pending_order.id, "550.00", other_buyer)


class TestGatewayFailures:
    def test_timeout_leaves_a_reconcilable_pending_payment(self, pending_order, buyer, gateway, audit_actions):
        gateway.configure(should_time_out=True)

        with pytest.raises(GatewayTimeoutError):
            PaymentService().create_payment(pending_order.id, "550.00", buyer)

        [payment] = current_domain.repository_for(Payment).query.filter(order_id=pending_order.id).all()
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.gateway_order_id is None
        assert AuditAction.GATEWAY_FAILED.value in audit_actions(payment.id)

    def test_retry_after_failure_completes_the_same_payment(self, pending_order, buyer, gateway):
        gateway.configure(should_succeed=False, failure_reason="Gateway unavailable")
        with pytest.raises(GatewayError):
            PaymentService().create_payment(pending_order.id, "550.00", buyer)

        gateway.configure(should_succeed=True)
        initiation = PaymentService().create_payment(pending_order.id, "550.00", buyer)

        assert _payment_count(pending_order.id) == 1
        assert _payment(initiation.payment.id).gateway_order_id == initiation.gateway_intent.id


class TestConcurrentIntents:
    def test_first_stored_intent_wins(self, pending_order, buyer, gateway, audit_actions):
        create_order = gateway.create_order
        nested = []

        def create_order_while_another_request_runs(**kwargs):
            # A second request for the same order completes while this gateway call is in flight
            gateway.create_order = create_order
            nested.append(PaymentService().create_payment(pending_order.id, "550.00", buyer))
            return create_order(**kwargs)

        gateway.create_order = create_order_while_another_request_runs

        late = PaymentService().create_payment(pending_order.id, "550.00", buyer)

        [early] = nested
        stored = _payment(late.payment.id)
        assert len(gateway.calls_to("create_order")) == 2
        assert stored.gateway_order_id == early.gateway_intent.id
        assert late.gateway_intent.id == early.gateway_intent.id
        assert audit_actions(stored.id).count(AuditAction.INTENT_CREATED.value) == 1
        assert _payment_count(pending_order.id) == 1
