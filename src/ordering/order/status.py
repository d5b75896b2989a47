"""Order status changes, compensating restocks and order queries.

``change_order_status`` is the single place an order's status is written
after checkout. It is used by the admin/buyer facing ``OrderService`` as well
as by payment settlement and refunds, always on an order the caller has
locked with ``lock_order`` and saves afterwards in the same unit of work.
"""

from protean import UnitOfWork
from protean.utils.globals import current_domain

from inventory.stock.accessor import InventoryAccessor, StockKey
from inventory.stock.stock import StockMovement, StockMovementType
from ordering.order.order import Order, OrderStatus
from shared import database
from shared.exceptions import ForbiddenError, NotFoundError
from shared.logging import get_logger
from shared.principal import Principal

logger = get_logger(__name__)

# Target status -> (ledger movement type, ledger reference type)
_COMPENSATIONS = {
    OrderStatus.CANCELLED: (StockMovementType.IN, "order-cancel"),
    OrderStatus.RETURNED: (StockMovementType.RETURN, "order-return"),
}


def lock_order(order_id: str) -> Order:
    order = database.lock(Order, id=order_id)
    if order is None:
        raise NotFoundError("Order", order_id=order_id)
    return order


def restock_order(
    order: Order,
    movement_type: StockMovementType,
    reference_type: str,
    performed_by: str | None,
) -> list[StockMovement]:
    """Put every line of ``order`` back in stock, at most once per reference type."""
    inventory = InventoryAccessor()
    if inventory.movements_for_reference(reference_type, order.id):
        logger.info("order_restock_skipped", order_id=order.id, reference_type=reference_type)
        return []

    movements = []
    for item in sorted(order.items, key=lambda i: StockKey(i.product_id, i.variant_id).sort_key):
        movements.append(
            inventory.apply_movement(
                StockKey(item.product_id, item.variant_id),
                movement_type,
                item.quantity,
                reason=f"Order {order.id} {reference_type.split('-')[-1]}",
                reference_id=order.id,
                reference_type=reference_type,
                created_by=performed_by,
            )
        )
    return movements


def change_order_status(order: Order, target: OrderStatus, performed_by: str | None) -> bool:
    """Move a locked order to ``target``.

    Returns False when the order is already CANCELLED and cancellation is
    requested again; that request is a no-op. Every other transition outside
    the state machine raises ``InvalidTransitionError``.
    """
    current = order.current_status
    if current == OrderStatus.CANCELLED and target == OrderStatus.CANCELLED:
        logger.info("order_already_cancelled", order_id=order.id)
        return False

    order.assert_can_transition(target)

    if target in _COMPENSATIONS:
        movement_type, reference_type = _COMPENSATIONS[target]
        restock_order(order, movement_type, reference_type, performed_by)

    order.mark_status(target)

    logger.info(
        "order_status_changed",
        order_id=order.id,
        from_status=current.value,
        to_status=target.value,
        performed_by=performed_by,
    )
    return True


class OrderService:
    def get_order_by_id(self, order_id: str, principal: Principal) -> Order:
        """Fetch an order with its items. Other buyers' orders are reported as missing."""
        order = current_domain.repository_for(Order).get_or_none(order_id)
        if order is None or not (principal.is_admin or principal.owns(order.user_id)):
            raise NotFoundError("Order", order_id=order_id)
        return order

    def list_orders(
        self,
        principal: Principal,
        *,
        page: int = 1,
        limit: int = 20,
        status: OrderStatus | None = None,
        user_id: str | None = None,
    ) -> dict:
        """Paginated order history. Buyers only ever see their own orders."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        filters = {}
        if not principal.is_admin:
            filters["user_id"] = principal.user_id
        elif user_id:
            filters["user_id"] = user_id
        if status is not None:
            filters["status"] = status.value

        results = (
            current_domain.repository_for(Order)
            .query.filter(**filters)
            .order_by(["-created_at", "id"])
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        return {
            "orders": list(results.items),
            "total": results.total,
            "page": page,
            "total_pages": (results.total + limit - 1) // limit,
        }

    def update_order_status(self, order_id: str, status: OrderStatus, principal: Principal) -> Order:
        """Move an order through its lifecycle.

        Admins may apply any legal transition. Buyers may only cancel their
        own orders.
        """
        with UnitOfWork():
            order = lock_order(order_id)
            if not principal.is_admin:
                if not principal.owns(order.user_id):
                    raise NotFoundError("Order", order_id=order_id)
                if status != OrderStatus.CANCELLED:
                    raise ForbiddenError("Only admins can change order status")

            if change_order_status(order, status, principal.user_id):
                current_domain.repository_for(Order).add(order)
        return order
