"""The storefront domain shared by the inventory, ordering and payments contexts.

All three contexts register their aggregates on one Protean domain so a
checkout (stock reservation plus order creation) and a settlement (payment
plus order status) commit in a single unit of work on one provider session.
Each context re-exports the domain under its own name from its
``domain.py`` module.
"""

import threading
from pathlib import Path

from protean.domain import Domain
from sqlalchemy import event
from sqlalchemy.engine import Engine, make_url

from shared.config import get_settings
from shared.logging import get_logger

storefront = Domain(
    name="storefront",
    config={
        "command_processing": "sync",
        "event_processing": "sync",
    },
)

logger = get_logger(__name__)

_init_lock = threading.Lock()
_initialized = False


def _import_elements() -> None:
    """Import every module that registers domain elements."""
    import inventory.stock.stock  # noqa: F401
    import ordering.cart.cart  # noqa: F401
    import ordering.order.order  # noqa: F401
    import payments.payment.payment  # noqa: F401
    import payments.webhook.records  # noqa: F401


def database_config(url: str) -> dict:
    """Provider settings for ``url`` in the shape Protean's ``databases`` block expects."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        return {
            "provider": "sqlite",
            "database_uri": url,
            "connect_args": {"timeout": 30, "check_same_thread": False},
        }
    return {"provider": "postgresql", "database_uri": url}


def _serialize_sqlite_writers(engine: Engine) -> None:
    """Replace pysqlite's implicit transactions with ``BEGIN IMMEDIATE``.

    Writers then take the database lock at the start of the transaction,
    which gives the "read under lock, then write" guarantee that
    ``SELECT ... FOR UPDATE`` gives on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_domain() -> Domain:
    """Bind the domain to ``DATABASE_URL`` and initialize it, once per process."""
    global _initialized
    with _init_lock:
        if _initialized:
            return storefront

        _import_elements()
        settings = get_settings()
        storefront.config["databases"]["default"] = database_config(settings.database_url)
        storefront.init(traverse=False)

        provider = storefront.providers["default"]
        engine = provider._engine
        if engine.dialect.name == "sqlite":
            _serialize_sqlite_writers(engine)
            # Drop the connection opened by the liveness check before the listeners existed
            engine.dispose()

        _initialized = True
        logger.debug("domain_initialized", dialect=engine.dialect.name)
        return storefront
