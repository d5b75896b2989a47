"""Payment gateway factory.

Provides get_gateway() / set_gateway() to swap implementations:
- FakeGateway for development and testing (``PAYMENT_GATEWAY=fake``)
- RazorpayGateway for production (``PAYMENT_GATEWAY=razorpay``)
"""

from payments.gateway.fake_adapter import FakeGateway
from payments.gateway.port import PaymentGateway
from payments.gateway.razorpay_adapter import RazorpayGateway
from shared.config import get_settings

_current_gateway: PaymentGateway | None = None


def build_gateway() -> PaymentGateway:
    settings = get_settings()
    if settings.payment_gateway == "razorpay":
        return RazorpayGateway(
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
            settings.razorpay_webhook_secret,
            base_url=settings.razorpay_base_url,
            timeout=settings.gateway_timeout_seconds,
        )
    return FakeGateway(
        key_secret=settings.razorpay_key_secret or "fake_key_secret",
        webhook_secret=settings.razorpay_webhook_secret or "fake_webhook_secret",
    )


def get_gateway() -> PaymentGateway:
    """Return the current payment gateway, building it from settings on first use."""
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = build_gateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    """Install ``gateway`` as the process-wide adapter."""
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    """Drop the active adapter so the next lookup rebuilds it from settings."""
    global _current_gateway
    _current_gateway = None


def close_gateway() -> None:
    """Close the active adapter, if one was built, and drop it."""
    global _current_gateway
    if _current_gateway is not None:
        _current_gateway.close()
        _current_gateway = None
