"""Order creation: converts a buyer's cart into an order.

Everything happens in one unit of work: lock each stock row, check it covers
the line, snapshot the price, decrement the counter with its ledger entry,
write the order and empty the cart. Any failure rolls the whole thing back.

Stock rows are locked in a fixed (product, variant) order so two checkouts
sharing items cannot deadlock.
"""

from decimal import Decimal

from protean import UnitOfWork
from protean.utils.globals import current_domain

from inventory.stock.accessor import InventoryAccessor, StockKey
from inventory.stock.stock import Product, ProductVariant
from ordering.cart.cart import Cart
from ordering.order.order import Order, OrderStatus
from shared import database
from shared.config import get_settings
from shared.constants import PaymentMethod, PaymentStatus
from shared.exceptions import EmptyCartError, ValidationError
from shared.logging import get_logger

logger = get_logger(__name__)


def _snapshot_price(holder: Product | ProductVariant) -> Decimal:
    if isinstance(holder, ProductVariant):
        product = current_domain.repository_for(Product).get(holder.product_id)
        if not holder.is_active or not product.is_active:
            raise ValidationError({"items": [f"Variant {holder.id} is no longer available"]})
        return holder.effective_price(product)
    if not holder.is_active:
        raise ValidationError({"items": [f"Product {holder.id} is no longer available"]})
    return holder.price


class OrderCreationService:
    def create_order(
        self,
        user_id: str,
        address_id: str,
        payment_method: str | PaymentMethod = PaymentMethod.RAZORPAY,
        payment_reference: str | None = None,
        notes: str | None = None,
    ) -> Order:
        if not address_id:
            raise ValidationError({"address_id": ["Shipping address is required"]})
        try:
            method = PaymentMethod(payment_method)
        except ValueError as exc:
            raise ValidationError({"payment_method": [f"Unsupported payment method: {payment_method}"]}) from exc

        with UnitOfWork():
            # Locking the cart makes a double-submitted checkout wait for the first one
            cart = database.lock(Cart, user_id=user_id)
            if cart is None or not cart.items:
                raise EmptyCartError()

            order = Order(
                user_id=user_id,
                address_id=address_id,
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                payment_method=method.value,
                payment_reference=payment_reference,
                currency=get_settings().default_currency,
                notes=notes,
            )

            inventory = InventoryAccessor()
            lines = sorted(cart.items, key=lambda line: StockKey(line.product_id, line.variant_id).sort_key)
            for line in lines:
                key = StockKey(line.product_id, line.variant_id)
                holder = inventory.ensure_available(key, line.quantity)
                unit_price = _snapshot_price(holder)
                inventory.reserve(key, line.quantity, order_id=order.id, created_by=user_id)
                order.add_line(line.product_id, line.quantity, unit_price, variant_id=line.variant_id)

            current_domain.repository_for(Order).add(order)
            cart.clear()
            current_domain.repository_for(Cart).add(cart)

        logger.info(
            "order_created",
            order_id=order.id,
            user_id=user_id,
            total=str(order.total),
            item_count=len(order.items),
            payment_method=method.value,
        )
        return order
