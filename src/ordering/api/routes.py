"""FastAPI routes for the Ordering domain: cart and orders."""

from fastapi import APIRouter, Depends

from ordering.api.schemas import (
    AddCartItemRequest,
    CreateOrderRequest,
    UpdateCartItemRequest,
    UpdateOrderStatusRequest,
)
from ordering.cart.items import CartService
from ordering.order.creation import OrderCreationService
from ordering.order.order import OrderStatus
from ordering.order.status import OrderService
from shared.principal import Principal, current_principal
from shared.responses import ok

# ---------------------------------------------------------------------------
# Cart Router
# ---------------------------------------------------------------------------
cart_router = APIRouter(prefix="/cart", tags=["cart"])


@cart_router.get("")
def get_cart(principal: Principal = Depends(current_principal)) -> dict:
    return ok(CartService().get_cart(principal.user_id))


@cart_router.post("/items", status_code=201)
def add_cart_item(body: AddCartItemRequest, principal: Principal = Depends(current_principal)) -> dict:
    service = CartService()
    service.add_item(principal.user_id, body.product_id, body.quantity, variant_id=body.variant_id)
    return ok(service.get_cart(principal.user_id), message="Item added to cart")


@cart_router.patch("/items/{item_id}")
def update_cart_item(item_id: str, body: UpdateCartItemRequest, principal: Principal = Depends(current_principal)) -> dict:
    service = CartService()
    service.update_quantity(principal.user_id, item_id, body.quantity)
    return ok(service.get_cart(principal.user_id))


@cart_router.delete("/items/{item_id}")
def remove_cart_item(item_id: str, principal: Principal = Depends(current_principal)) -> dict:
    service = CartService()
    service.remove_item(principal.user_id, item_id)
    return ok(service.get_cart(principal.user_id), message="Item removed from cart")


# ---------------------------------------------------------------------------
# Order Router
# ---------------------------------------------------------------------------
order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.post("", status_code=201)
def create_order(body: CreateOrderRequest, principal: Principal = Depends(current_principal)) -> dict:
    order = OrderCreationService().create_order(
        principal.user_id,
        body.address_id,
        payment_method=body.payment_method,
        payment_reference=body.payment_reference,
        notes=body.notes,
    )
    return ok(order.serialize(), message="Order created")


@order_router.get("")
def list_orders(
    page: int = 1,
    limit: int = 20,
    status: OrderStatus | None = None,
    user_id: str | None = None,
    principal: Principal = Depends(current_principal),
) -> dict:
    result = OrderService().list_orders(principal, page=page, limit=limit, status=status, user_id=user_id)
    result["orders"] = [order.serialize() for order in result["orders"]]
    return ok(result)


@order_router.get("/{order_id}")
def get_order(order_id: str, principal: Principal = Depends(current_principal)) -> dict:
    return ok(OrderService().get_order_by_id(order_id, principal).serialize())


@order_router.patch("/{order_id}/status")
def update_order_status(
    order_id: str,
    body: UpdateOrderStatusRequest,
    principal: Principal = Depends(current_principal),
) -> dict:
    order = OrderService().update_order_status(order_id, body.status, principal)
    return ok(order.serialize(), message=f"Order {order.status.lower()}")
