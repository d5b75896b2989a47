"""Stock adjustment, receiving and ledger queries (admin operations)."""

from protean import UnitOfWork
from protean.utils.globals import current_domain

from inventory.stock.accessor import InventoryAccessor, StockKey
from inventory.stock.stock import StockMovement, StockMovementType
from shared.exceptions import ValidationError
from shared.logging import get_logger
from shared.principal import Principal

logger = get_logger(__name__)

_ADJUSTABLE_TYPES = (StockMovementType.ADJUSTMENT, StockMovementType.TRANSFER)


class StockAdjustmentService:
    def adjust_stock(
        self,
        principal: Principal,
        *,
        product_id: str,
        quantity_change: int,
        reason: str,
        variant_id: str | None = None,
        movement_type: StockMovementType = StockMovementType.ADJUSTMENT,
    ) -> StockMovement:
        """Apply a signed manual correction (stock count, shrinkage, transfer)."""
        principal.require_admin()
        if movement_type not in _ADJUSTABLE_TYPES:
            raise ValidationError({"type": [f"{movement_type.value} movements cannot be recorded manually"]})
        if not reason or not reason.strip():
            raise ValidationError({"reason": ["Adjustment reason is required"]})

        with UnitOfWork():
            movement = InventoryAccessor().apply_movement(
                StockKey(product_id, variant_id),
                movement_type,
                quantity_change,
                reason=reason,
                reference_type="manual-adjustment",
                created_by=principal.user_id,
            )
        logger.info(
            "stock_adjusted",
            product_id=product_id,
            variant_id=variant_id,
            quantity_change=quantity_change,
            adjusted_by=principal.user_id,
        )
        return movement

    def receive_stock(
        self,
        principal: Principal,
        *,
        product_id: str,
        quantity: int,
        variant_id: str | None = None,
        reference_id: str | None = None,
        reason: str | None = None,
    ) -> StockMovement:
        """Book inbound goods (purchase order, supplier delivery)."""
        principal.require_admin()
        if quantity <= 0:
            raise ValidationError({"quantity": ["Received quantity must be positive"]})

        with UnitOfWork():
            return InventoryAccessor().apply_movement(
                StockKey(product_id, variant_id),
                StockMovementType.IN,
                quantity,
                reason=reason or "Stock received",
                reference_id=reference_id,
                reference_type="receiving",
                created_by=principal.user_id,
            )

    def list_movements(
        self,
        principal: Principal,
        *,
        product_id: str | None = None,
        variant_id: str | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict:
        principal.require_admin()
        page = max(page, 1)
        limit = min(max(limit, 1), 200)

        filters = {}
        if product_id:
            filters["product_id"] = product_id
        if variant_id:
            filters["variant_id"] = variant_id
        if reference_type:
            filters["reference_type"] = reference_type
        if reference_id:
            filters["reference_id"] = reference_id

        results = (
            current_domain.repository_for(StockMovement)
            .query.filter(**filters)
            .order_by(["-created_at", "id"])
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        return {
            "movements": list(results.items),
            "total": results.total,
            "page": page,
            "total_pages": (results.total + limit - 1) // limit,
        }
