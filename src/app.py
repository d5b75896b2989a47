"""Storefront FastAPI application.

Serves the ordering, inventory and payments contexts, including the gateway
webhook endpoint.

Usage:
    uvicorn app:app --app-dir src --host 0.0.0.0 --port 8000 --reload
"""

from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from shared.config import get_settings
from shared.domain import init_domain, storefront
from shared.logging import bind_context, clear_context, configure_logging, get_logger
from shared.responses import ok, register_error_handlers

# ---------------------------------------------------------------------------
# Domain initialization
# ---------------------------------------------------------------------------
# The domain is initialized at module level so uvicorn workers share it.
# DATABASE_URL selects the provider: sqlite for development, postgresql otherwise.
configure_logging()
init_domain()

from inventory.api import inventory_maintenance_router, inventory_router  # noqa: E402
from ordering.api import cart_router, order_router  # noqa: E402
from payments.api import payment_router, payments_maintenance_router, webhook_router  # noqa: E402
from payments.gateway import close_gateway  # noqa: E402

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    # Production schemas are managed with `manage.py setup-db`
    if not settings.is_production:
        with storefront.domain_context():
            storefront.setup_database()
    logger.info("storefront_started", env=settings.env, gateway=settings.payment_gateway)
    yield
    close_gateway()
    storefront.close()
    logger.info("storefront_stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Storefront API",
        description="Orders, stock ledger, payments and gateway webhooks",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    @app.middleware("http")
    async def domain_context_middleware(request: Request, call_next):
        """Push the storefront domain context and tag every log event for the request."""
        clear_context()
        bind_context(
            request_id=request.headers.get("X-Request-Id") or uuid4().hex,
            method=request.method,
            path=request.url.path,
        )
        with storefront.domain_context():
            response = await call_next(request)
        return response

    # ---------------------------------------------------------------------------
    # Routers
    # ---------------------------------------------------------------------------
    app.include_router(cart_router)
    app.include_router(order_router)
    app.include_router(inventory_router)
    app.include_router(inventory_maintenance_router)
    app.include_router(payment_router)
    app.include_router(payments_maintenance_router)
    app.include_router(webhook_router)

    @app.get("/health")
    def health() -> dict:
        settings = get_settings()
        return ok({"status": "ok", "env": settings.env, "gateway": settings.payment_gateway, "domain": storefront.name})

    return app


app = create_app()
