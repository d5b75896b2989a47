"""Tests for the in-memory fake payment gateway."""

import pytest
from payments.gateway import build_gateway, close_gateway, get_gateway, reset_gateway, set_gateway
from payments.gateway.fake_adapter import FakeGateway
from payments.gateway.razorpay_adapter import RazorpayGateway
from shared.config import reset_settings
from shared.exceptions import GatewayError, GatewayTimeoutError, NotFoundError


class TestFakeGateway:
    def test_create_and_fetch_order(self):
        gateway = FakeGateway()
        order = gateway.create_order(55000, "INR", "order_1", {"orderId": "1"})

        assert order.id.startswith("order_")
        assert order.status == "created"
        assert gateway.fetch_order(order.id) == order
        assert gateway.calls_to("create_order")[0]["amount"] == 55000

    def test_capture_marks_order_paid(self):
        gateway = FakeGateway()
        order = gateway.create_order(1000, "INR", "r", {})

        payment = gateway.capture(order.id)

        assert payment.is_captured
        assert payment.amount == 1000
        assert gateway.fetch_order(order.id).status == "paid"
        assert gateway.fetch_order_payments(order.id) == [payment]

    def test_payment_signature(self):
        gateway = FakeGateway(key_secret="k")
        signature = gateway.sign_payment("order_1", "pay_1")
        assert gateway.verify_payment_signature("order_1", "pay_1", signature)
        assert not gateway.verify_payment_signature("order_1", "pay_2", signature)

    def test_webhook_signature_uses_its_own_secret(self):
        gateway = FakeGateway(key_secret="k", webhook_secret="w")
        assert gateway.verify_webhook_signature(b"{}", gateway.sign_webhook(b"{}"))
        signed_with_key_secret = FakeGateway(key_secret="k", webhook_secret="k").sign_webhook(b"{}")
        assert not gateway.verify_webhook_signature(b"{}", signed_with_key_secret)

    def test_configured_failure(self):
        gateway = FakeGateway()
        gateway.configure(should_succeed=False, failure_reason="Card declined")
        with pytest.raises(GatewayError, match="Card declined"):
            gateway.create_order(100, "INR", "r", {})
        assert len(gateway.calls) == 1

    def test_configured_timeout(self):
        gateway = FakeGateway()
        gateway.configure(should_time_out=True)
        with pytest.raises(GatewayTimeoutError):
            gateway.refund("pay_1", 100, {})

    def test_unknown_order(self):
        with pytest.raises(NotFoundError):
            FakeGateway().fetch_order("order_missing")


class TestGatewayFactory:
    def test_set_and_reset(self, gateway):
        assert get_gateway() is gateway
        replacement = FakeGateway()
        set_gateway(replacement)
        assert get_gateway() is replacement
        reset_gateway()
        assert isinstance(get_gateway(), FakeGateway)
        assert get_gateway() is not replacement

    def test_builds_razorpay_from_settings(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_GATEWAY", "razorpay")
        monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_test_1")
        monkeypatch.setenv("RAZORPAY_KEY_SECRET", "secret")
        monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", "whsec")
        reset_settings()

        gateway = build_gateway()
        assert isinstance(gateway, RazorpayGateway)
        gateway.close()

    def test_razorpay_requires_keys(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_GATEWAY", "razorpay")
        monkeypatch.delenv("RAZORPAY_KEY_ID", raising=False)
        reset_settings()

        with pytest.raises(ValueError):
            build_gateway()

    def test_close_releases_the_active_adapter(self, monkeypatch, gateway):
        closed = []
        monkeypatch.setattr(gateway, "close", lambda: closed.append(True))

        close_gateway()

        assert closed == [True]
        assert get_gateway() is not gateway

    def test_close_without_an_adapter_builds_nothing(self, monkeypatch):
        reset_gateway()
        monkeypatch.setattr("payments.gateway.build_gateway", lambda: pytest.fail("gateway was built"))
        close_gateway()
