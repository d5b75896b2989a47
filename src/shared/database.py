"""Row locks and guarded updates on the storefront provider session.

Aggregates are loaded and saved through Protean repositories inside a
``UnitOfWork``. Two paths need the provider's SQLAlchemy session directly:

* row locks (``SELECT ... FOR UPDATE``) taken before a read-modify-write, so
  two writers of the same counter or payment serialize;
* guarded ``UPDATE`` statements whose ``WHERE`` clause enforces an invariant
  the database has to check atomically (a stock counter never going negative).

Both run on the session of the active unit of work, so they commit or roll
back together with the repository writes around them.
"""

from datetime import UTC, datetime
from typing import Any

from protean.exceptions import InvalidOperationError
from protean.utils.globals import current_domain, current_uow
from sqlalchemy import select
from sqlalchemy.orm import Session

PROVIDER = "default"


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a timestamp read back without zone information.

    SQLite stores ``DATETIME`` columns without an offset; every timestamp the
    storefront writes is UTC.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def session() -> Session:
    """The SQLAlchemy session of the active unit of work."""
    if not (current_uow and current_uow.in_progress):
        raise InvalidOperationError("Row locks and guarded updates need an active UnitOfWork")
    return current_uow.get_session(PROVIDER)


def model_for(aggregate_cls: Any) -> Any:
    """The SQLAlchemy model Protean generated for ``aggregate_cls``."""
    return current_domain.repository_for(aggregate_cls)._dao.database_model_cls


def lock(aggregate_cls: Any, *where: Any, newest_first: bool = False, **criteria: Any) -> Any | None:
    """Lock the first row matching ``criteria`` and load it as an aggregate.

    ``where`` takes extra SQLAlchemy clauses built from ``model_for``. With
    ``newest_first`` the most recently created match wins. Returns ``None``
    when no row matches. The lock is held until the unit of work ends.
    """
    model = model_for(aggregate_cls)
    stmt = select(model).filter_by(**criteria)
    if where:
        stmt = stmt.where(*where)
    if newest_first:
        stmt = stmt.order_by(model.created_at.desc())
    # populate_existing refreshes a row this session already loaded before the lock
    stmt = stmt.with_for_update().limit(1).execution_options(populate_existing=True)
    row = session().scalars(stmt).first()
    if row is None:
        return None
    return current_domain.repository_for(aggregate_cls).get(row.id)
