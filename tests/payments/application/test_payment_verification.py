"""Tests for client-side payment verification."""

import pytest
from ordering.order.order import Order, OrderStatus
from payments.payment.payment import AuditAction, Payment
from payments.payment.service import PaymentService
from protean.utils.globals import current_domain
from shared.constants import PaymentStatus
from shared.exceptions import ForbiddenError, NotFoundError, SignatureError


def _state(payment_id):
    payment = current_domain.repository_for(Payment).get(payment_id)
    return payment, current_domain.repository_for(Order).get(payment.order_id)


class TestVerifyPayment:
    def test_valid_signature_settles_payment_and_confirms_order(self, intent, gateway, buyer, audit_actions):
        captured = gateway.capture(intent.gateway_intent.id)
        signature = gateway.sign_payment(intent.gateway_intent.id, captured.id)

        PaymentService().verify_payment(intent.payment.id, captured.id, signature, buyer)

        payment, order = _state(intent.payment.id)
        assert payment.status == PaymentStatus.PAID.value
        assert payment.gateway_payment_id == captured.id
        assert payment.signature_verified is True
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.payment_status == PaymentStatus.PAID.value
        assert audit_actions(payment.id).count(AuditAction.CAPTURED.value) == 1

    def test_invalid_signature_changes_nothing(self, intent, gateway, buyer):
        captured = gateway.capture(intent.gateway_intent.id)

        with pytest.raises(SignatureError):
            PaymentService().verify_payment(intent.payment.id, captured.id, "0" * 64, buyer)

        payment, order = _state(intent.payment.id)
        assert payment.status == PaymentStatus.PENDING.value
        assert order.status == OrderStatus.PENDING.value

    def test_signature_for_another_payment_is_rejected(self, intent, gateway, buyer):
        signature = gateway.sign_payment(intent.gateway_intent.id, "pay_other")
        with pytest.raises(SignatureError):
            PaymentService().verify_payment(intent.payment.id, "pay_mine", signature, buyer)

    def test_verification_is_idempotent(self, paid_payment, gateway, buyer, audit_actions):
        signature = gateway.sign_payment(paid_payment.gateway_order_id, paid_payment.gateway_payment_id)

        again = PaymentService().verify_payment(paid_payment.id, paid_payment.gateway_payment_id, signature, buyer)

        assert again.status == PaymentStatus.PAID.value
        assert audit_actions(paid_payment.id).count(AuditAction.CAPTURED.value) == 1

    def test_other_buyer_cannot_verify(self, intent, gateway, other_buyer):
        captured = gateway.capture(intent.gateway_intent.id)
        signature = gateway.sign_payment(intent.gateway_intent.id, captured.id)
        with pytest.raises(ForbiddenError):
            PaymentService().verify_payment(intent.payment.id, captured.id, signature, other_buyer)

    def test_unknown_payment(self, buyer):
        with pytest.raises(NotFoundError):
            PaymentService().verify_payment("missing", "pay_1", "sig", buyer)


class TestGetPayment:
    def test_owner_and_admin_can_read(self, paid_payment, buyer, admin):
        assert PaymentService().get_payment(paid_payment.id, buyer).id == paid_payment.id
        assert PaymentService().get_payment(paid_payment.id, admin).id == paid_payment.id

    def test_other_buyer_gets_not_found(self, paid_payment, other_buyer):
        with pytest.raises(NotFoundError):
            PaymentService().get_payment(paid_payment.id, other_buyer)
