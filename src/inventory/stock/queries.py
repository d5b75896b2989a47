"""Read-side stock queries for the admin inventory screens.

Inventory statistics, the product stock listing with low/out-of-stock
filters, single ledger entries, and stock levels for one key.
"""

from datetime import timedelta
from decimal import Decimal

from protean import UnitOfWork
from protean.utils.globals import current_domain
from protean.utils.query import Q
from sqlalchemy import func, select

from inventory.stock.accessor import InventoryAccessor, StockKey
from inventory.stock.stock import Product, ProductVariant, StockMovement
from shared import database
from shared.exceptions import NotFoundError, ValidationError
from shared.principal import Principal

DEFAULT_LOW_STOCK_THRESHOLD = 10
RECENT_MOVEMENT_WINDOW = timedelta(days=7)


def _threshold(value: int | None) -> int:
    threshold = DEFAULT_LOW_STOCK_THRESHOLD if value is None else value
    if threshold < 0:
        raise ValidationError({"low_stock_threshold": ["Threshold cannot be negative"]})
    return threshold


def _low_stock(threshold: int) -> Q:
    return Q(stock_quantity__gt=0, stock_quantity__lte=threshold)


def _out_of_stock() -> Q:
    return Q(stock_quantity=0) | Q(in_stock=False)


class StockQueryService:
    def stats(self, principal: Principal, *, low_stock_threshold: int | None = None) -> dict:
        """Headline numbers for the inventory overview.

        Counts and stock value cover every stock holder: products and their
        variants. A holder is low on stock when its counter is above zero and
        at or below the threshold.
        """
        principal.require_admin()
        threshold = _threshold(low_stock_threshold)

        products = database.model_for(Product)
        variants = database.model_for(ProductVariant)
        ledger = database.model_for(StockMovement)
        since = database.utcnow() - RECENT_MOVEMENT_WINDOW

        with UnitOfWork():
            session = database.session()
            product_rows = session.execute(select(products.id, products.price, products.stock_quantity)).all()
            variant_rows = session.execute(
                select(variants.product_id, variants.price, variants.stock_quantity)
            ).all()
            recent_movements = session.scalar(
                select(func.count()).select_from(ledger).where(ledger.created_at >= since)
            )

        product_prices = {product_id: price for product_id, price, _ in product_rows}
        holders = [(price, stock) for _, price, stock in product_rows]
        holders += [
            (price if price is not None else product_prices.get(product_id, Decimal("0")), stock)
            for product_id, price, stock in variant_rows
        ]

        return {
            "total_products": len(product_rows),
            "total_variants": len(variant_rows),
            "total_units": sum(stock for _, stock in holders),
            "total_stock_value": str(
                sum((Decimal(price) * stock for price, stock in holders), Decimal("0.00"))
            ),
            "low_stock_threshold": threshold,
            "low_stock": sum(1 for _, stock in holders if 0 < stock <= threshold),
            "out_of_stock": sum(1 for _, stock in holders if stock == 0),
            "recent_movements": int(recent_movements or 0),
        }

    def list_inventory(
        self,
        principal: Principal,
        *,
        low_stock: bool = False,
        out_of_stock: bool = False,
        search: str | None = None,
        low_stock_threshold: int | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict:
        """Products ordered by stock level, lowest first, with their variants."""
        principal.require_admin()
        threshold = _threshold(low_stock_threshold)
        page = max(page, 1)
        limit = min(max(limit, 1), 200)

        query = current_domain.repository_for(Product).query
        if low_stock:
            query = query.filter(_low_stock(threshold))
        if out_of_stock:
            query = query.filter(_out_of_stock())
        if search:
            query = query.filter(name__icontains=search)

        results = query.order_by(["stock_quantity", "name"]).offset((page - 1) * limit).limit(limit).all()
        products = list(results.items)
        product_ids = [product.id for product in products]

        variants_by_product: dict[str, list] = {}
        if product_ids:
            for variant in (
                current_domain.repository_for(ProductVariant)
                .query.filter(product_id__in=product_ids)
                .order_by("name")
                .limit(None)
                .all()
            ):
                variants_by_product.setdefault(variant.product_id, []).append(variant)

        activity = self._ledger_activity(product_ids)
        rows = []
        for product in products:
            last_movement_at, total_movements = activity.get(product.id, (None, 0))
            rows.append(
                {
                    **product.serialize(),
                    "low_stock_threshold": threshold,
                    "low_stock": 0 < product.stock_quantity <= threshold,
                    "variants": [v.serialize(product) for v in variants_by_product.get(product.id, [])],
                    "last_movement_at": last_movement_at.isoformat() if last_movement_at else None,
                    "total_movements": total_movements,
                }
            )

        return {
            "products": rows,
            "total": results.total,
            "page": page,
            "total_pages": (results.total + limit - 1) // limit,
        }

    def _ledger_activity(self, product_ids: list[str]) -> dict:
        if not product_ids:
            return {}
        ledger = database.model_for(StockMovement)
        with UnitOfWork():
            rows = database.session().execute(
                select(ledger.product_id, func.max(ledger.created_at), func.count(ledger.id))
                .where(ledger.product_id.in_(product_ids))
                .group_by(ledger.product_id)
            )
            return {product_id: (database.as_utc(last), count) for product_id, last, count in rows}

    def get_movement(self, principal: Principal, movement_id: str) -> StockMovement:
        principal.require_admin()
        movement = current_domain.repository_for(StockMovement).get_or_none(movement_id)
        if movement is None:
            raise NotFoundError("Stock movement", movement_id=movement_id)
        return movement

    def stock_level(self, principal: Principal, product_id: str, variant_id: str | None = None) -> dict:
        """Current counter for one stock key, read without a lock."""
        principal.require_admin()
        key = StockKey(product_id, variant_id)
        inventory = InventoryAccessor()
        quantity = inventory.available(key)
        return {
            "product_id": product_id,
            "variant_id": variant_id,
            "stock_quantity": quantity,
            "in_stock": quantity > 0,
        }

    def movements_for_reference(self, principal: Principal, reference_type: str, reference_id: str) -> list:
        """Every ledger entry written for one business reference (an order, a receipt)."""
        principal.require_admin()
        return InventoryAccessor().movements_for_reference(reference_type, reference_id)
