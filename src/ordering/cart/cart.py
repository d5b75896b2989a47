"""Shopping cart aggregate.

One cart per buyer. Prices are not stored here; they are snapshotted onto the
order at checkout, after which the cart is emptied.
"""

from protean.fields import DateTime, HasMany, Identifier, Integer, String

from ordering.domain import ordering
from shared.database import utcnow
from shared.exceptions import NotFoundError, ValidationError


@ordering.entity(part_of="Cart", schema_name="cart_items")
class CartItem:
    product_id = Identifier(required=True)
    variant_id = Identifier()
    quantity = Integer(required=True, min_value=1)
    added_at = DateTime(default=utcnow)

    def matches(self, product_id: str, variant_id: str | None) -> bool:
        return self.product_id == product_id and self.variant_id == variant_id


@ordering.aggregate(schema_name="carts")
class Cart:
    user_id = String(max_length=64, required=True, unique=True)
    items = HasMany(CartItem)
    created_at = DateTime(default=utcnow)
    updated_at = DateTime(default=utcnow)

    # -------------------------------------------------------------------
    # Item management
    # -------------------------------------------------------------------
    def add_item(self, product_id: str, quantity: int, variant_id: str | None = None) -> CartItem:
        """Add a line, merging with an existing line for the same stock key."""
        if quantity <= 0:
            raise ValidationError({"quantity": ["Quantity must be positive"]})

        existing = next((item for item in self.items if item.matches(product_id, variant_id)), None)
        if existing is not None:
            existing.quantity += quantity
            item = existing
        else:
            item = CartItem(product_id=product_id, variant_id=variant_id, quantity=quantity)
            self.add_items(item)

        self.updated_at = utcnow()
        return item

    def update_item_quantity(self, item_id: str, quantity: int) -> CartItem:
        if quantity <= 0:
            raise ValidationError({"quantity": ["Quantity must be positive"]})
        item = self.item(item_id)
        item.quantity = quantity
        self.updated_at = utcnow()
        return item

    def remove_item(self, item_id: str) -> None:
        self.remove_items(self.item(item_id))
        self.updated_at = utcnow()

    def clear(self) -> None:
        for item in list(self.items):
            self.remove_items(item)
        self.updated_at = utcnow()

    def item(self, item_id: str) -> CartItem:
        found = next((item for item in self.items if item.id == item_id), None)
        if found is None:
            raise NotFoundError("Cart item", item_id=item_id)
        return found
