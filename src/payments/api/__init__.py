"""Payments domain API package."""

from payments.api.routes import maintenance_router as payments_maintenance_router
from payments.api.routes import payment_router, webhook_router

__all__ = ["payment_router", "webhook_router", "payments_maintenance_router"]
