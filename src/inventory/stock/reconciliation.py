"""Counter/ledger consistency checks.

A stock counter is consistent when it equals the sum of the ledger entries
recorded for its key. ``StockReconciler.check`` reports every key that has
drifted; ``rebuild_counter`` resets a counter from its ledger.
"""

from dataclasses import dataclass

from protean import UnitOfWork
from sqlalchemy import func, select, update

from inventory.stock.accessor import InventoryAccessor, StockKey
from inventory.stock.stock import Product, ProductVariant, StockMovement
from shared import database
from shared.logging import get_logger
from shared.principal import Principal

logger = get_logger(__name__)


@dataclass(frozen=True)
class StockDiscrepancy:
    product_id: str
    variant_id: str | None
    counter: int
    ledger_total: int

    @property
    def drift(self) -> int:
        return self.counter - self.ledger_total

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "counter": self.counter,
            "ledger_total": self.ledger_total,
            "drift": self.drift,
        }


class StockReconciler:
    def check(self) -> list[StockDiscrepancy]:
        ledger = database.model_for(StockMovement)
        products = database.model_for(Product)
        variants = database.model_for(ProductVariant)

        with UnitOfWork():
            session = database.session()
            totals = {
                (product_id, variant_id): int(total or 0)
                for product_id, variant_id, total in session.execute(
                    select(ledger.product_id, ledger.variant_id, func.sum(ledger.quantity)).group_by(
                        ledger.product_id, ledger.variant_id
                    )
                )
            }
            counters = [
                (product_id, None, stock)
                for product_id, stock in session.execute(select(products.id, products.stock_quantity))
            ]
            counters += list(
                session.execute(select(variants.product_id, variants.id, variants.stock_quantity))
            )

        discrepancies = [
            StockDiscrepancy(product_id, variant_id, counter, totals.get((product_id, variant_id), 0))
            for product_id, variant_id, counter in counters
            if counter != totals.get((product_id, variant_id), 0)
        ]
        for discrepancy in discrepancies:
            logger.warning("stock_counter_drift", **discrepancy.to_dict())
        return discrepancies

    def health(self) -> dict:
        discrepancies = self.check()
        return {
            "consistent": not discrepancies,
            "discrepancies": [d.to_dict() for d in discrepancies],
        }

    def rebuild_counter(self, principal: Principal, product_id: str, variant_id: str | None = None) -> int:
        """Overwrite a counter with its ledger total and return the new value."""
        principal.require_admin()
        ledger = database.model_for(StockMovement)

        with UnitOfWork():
            holder = InventoryAccessor().lock(StockKey(product_id, variant_id))
            session = database.session()
            ledger_total = int(
                session.scalar(
                    select(func.coalesce(func.sum(ledger.quantity), 0)).where(
                        ledger.product_id == product_id,
                        ledger.variant_id.is_(None) if variant_id is None else ledger.variant_id == variant_id,
                    )
                )
            )
            if holder.stock_quantity != ledger_total:
                logger.warning(
                    "stock_counter_rebuilt",
                    product_id=product_id,
                    variant_id=variant_id,
                    previous_counter=holder.stock_quantity,
                    ledger_total=ledger_total,
                    rebuilt_by=principal.user_id,
                )

            model = database.model_for(type(holder))
            session.execute(
                update(model)
                .where(model.id == holder.id)
                .values(
                    stock_quantity=ledger_total,
                    in_stock=ledger_total > 0,
                    updated_at=database.utcnow(),
                    _version=model._version + 1,
                )
                .execution_options(synchronize_session=False)
            )
        return ledger_total
