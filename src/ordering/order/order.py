"""Order aggregate: line items and the status state machine.

State Machine (7 states):
    PENDING → CONFIRMED → PROCESSING → SHIPPED → DELIVERED → RETURNED
    CANCELLED (from PENDING, CONFIRMED, PROCESSING, SHIPPED)

CANCELLED and RETURNED are terminal. Both put the ordered quantities back in
stock through compensating ledger entries (see ``ordering.order.status``).

Line items are immutable once written: the unit price is snapshotted at
checkout, so later catalogue price edits never change an existing order.
"""

from decimal import Decimal as PyDecimal
from enum import Enum

from protean.fields import DateTime, Decimal, HasMany, Identifier, Integer, String, Text

from ordering.domain import ordering
from shared.constants import PaymentMethod, PaymentStatus
from shared.database import utcnow
from shared.exceptions import InvalidTransitionError, ValidationError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


# State machine transition map
_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.RETURNED: set(),  # Terminal
}

TERMINAL_STATES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, set())


def allowed_targets(current: OrderStatus) -> frozenset[OrderStatus]:
    return frozenset(_VALID_TRANSITIONS.get(current, set()))


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@ordering.entity(part_of="Order", schema_name="order_items")
class OrderItem:
    position = Integer(default=0)
    product_id = Identifier(required=True)
    variant_id = Identifier()
    quantity = Integer(required=True, min_value=1)
    unit_price = Decimal(precision=12, scale=2, min_value=0, required=True)

    @property
    def line_total(self) -> PyDecimal:
        return self.unit_price * self.quantity

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "line_total": str(self.line_total),
        }


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------
@ordering.aggregate(schema_name="orders")
class Order:
    user_id = String(max_length=64, required=True)
    address_id = String(max_length=64, required=True)
    status = String(max_length=20, choices=OrderStatus, default=OrderStatus.PENDING.value)
    payment_status = String(max_length=20, choices=PaymentStatus, default=PaymentStatus.PENDING.value)
    payment_method = String(max_length=20, choices=PaymentMethod, default=PaymentMethod.RAZORPAY.value)
    payment_reference = String(max_length=128)
    items = HasMany(OrderItem)
    total = Decimal(precision=12, scale=2, min_value=0, default=PyDecimal("0.00"))
    currency = String(max_length=3, default="INR")
    notes = Text()
    created_at = DateTime(default=utcnow)
    updated_at = DateTime(default=utcnow)
    cancelled_at = DateTime()

    @property
    def current_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.current_status in TERMINAL_STATES

    def assert_can_transition(self, target: OrderStatus) -> None:
        """Validate that the current state allows transition to target."""
        if not can_transition(self.current_status, target):
            raise InvalidTransitionError(self.status, target.value)

    def add_line(
        self,
        product_id: str,
        quantity: int,
        unit_price: PyDecimal,
        variant_id: str | None = None,
    ) -> OrderItem:
        """Append a priced line. Only possible before the order is first saved."""
        if self.state_.is_persisted:
            raise ValidationError({"items": ["Order items cannot be modified after checkout"]})
        item = OrderItem(
            position=len(self.items),
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            unit_price=unit_price,
        )
        self.add_items(item)
        self.total = self.items_total()
        return item

    def ordered_items(self) -> list[OrderItem]:
        return sorted(self.items, key=lambda item: item.position)

    def items_total(self) -> PyDecimal:
        return sum((item.line_total for item in self.items), PyDecimal("0.00"))

    def mark_status(self, target: OrderStatus) -> None:
        self.status = target.value
        self.updated_at = utcnow()
        if target == OrderStatus.CANCELLED:
            self.cancelled_at = self.updated_at

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "address_id": self.address_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "total": str(self.total),
            "currency": self.currency,
            "notes": self.notes,
            "items": [item.serialize() for item in self.ordered_items()],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
