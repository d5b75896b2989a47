"""Cart item management."""

from decimal import Decimal

from protean import UnitOfWork
from protean.utils.globals import current_domain

from inventory.stock.stock import Product, ProductVariant
from ordering.cart.cart import Cart, CartItem
from shared.database import as_utc
from shared.exceptions import NotFoundError
from shared.logging import get_logger

logger = get_logger(__name__)


def cart_for(user_id: str) -> Cart | None:
    return current_domain.repository_for(Cart).query.filter(user_id=user_id).all().first


class CartService:
    def add_item(self, user_id: str, product_id: str, quantity: int, variant_id: str | None = None) -> CartItem:
        """Add a line to the buyer's cart, creating the cart on first use."""
        with UnitOfWork():
            product = current_domain.repository_for(Product).get_or_none(product_id)
            if product is None or not product.is_active:
                raise NotFoundError("Product", product_id=product_id)
            if variant_id is not None:
                variant = current_domain.repository_for(ProductVariant).get_or_none(variant_id)
                if variant is None or variant.product_id != product_id or not variant.is_active:
                    raise NotFoundError("Product variant", variant_id=variant_id)

            cart = cart_for(user_id) or Cart(user_id=user_id)
            item = cart.add_item(product_id, quantity, variant_id=variant_id)
            current_domain.repository_for(Cart).add(cart)

        logger.debug("cart_item_added", user_id=user_id, product_id=product_id, variant_id=variant_id, quantity=quantity)
        return item

    def update_quantity(self, user_id: str, item_id: str, quantity: int) -> CartItem:
        with UnitOfWork():
            cart = self._cart(user_id, item_id)
            item = cart.update_item_quantity(item_id, quantity)
            current_domain.repository_for(Cart).add(cart)
        return item

    def remove_item(self, user_id: str, item_id: str) -> None:
        with UnitOfWork():
            cart = self._cart(user_id, item_id)
            cart.remove_item(item_id)
            current_domain.repository_for(Cart).add(cart)

    def get_cart(self, user_id: str) -> dict:
        cart = cart_for(user_id)
        items = sorted(cart.items, key=lambda item: (as_utc(item.added_at), item.id)) if cart else []

        products = current_domain.repository_for(Product)
        variants = current_domain.repository_for(ProductVariant)
        lines = []
        for item in items:
            product = products.get(item.product_id)
            unit_price = variants.get(item.variant_id).effective_price(product) if item.variant_id else product.price
            lines.append(
                {
                    "id": item.id,
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "quantity": item.quantity,
                    "unit_price": str(unit_price),
                    "line_total": str(unit_price * item.quantity),
                }
            )

        subtotal = sum((Decimal(line["line_total"]) for line in lines), Decimal("0.00"))
        return {"items": lines, "subtotal": str(subtotal), "item_count": sum(line["quantity"] for line in lines)}

    def _cart(self, user_id: str, item_id: str) -> Cart:
        cart = cart_for(user_id)
        if cart is None:
            raise NotFoundError("Cart item", item_id=item_id)
        return cart
