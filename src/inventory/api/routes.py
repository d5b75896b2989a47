"""FastAPI routes for the Inventory domain: catalogue registration, stock ledger administration."""

from fastapi import APIRouter, Depends, Query

from inventory.api.schemas import (
    AdjustStockRequest,
    RebuildCounterRequest,
    ReceiveStockRequest,
    RegisterProductRequest,
    RegisterVariantRequest,
)
from inventory.stock.adjustment import StockAdjustmentService
from inventory.stock.initialization import CatalogueRegistrationService
from inventory.stock.queries import StockQueryService
from inventory.stock.reconciliation import StockReconciler
from shared.principal import Principal, current_principal
from shared.responses import ok

# ---------------------------------------------------------------------------
# Inventory Router
# ---------------------------------------------------------------------------
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])


@inventory_router.post("/products", status_code=201)
def register_product(body: RegisterProductRequest, principal: Principal = Depends(current_principal)) -> dict:
    product = CatalogueRegistrationService().register_product(
        principal,
        name=body.name,
        price=body.price,
        initial_quantity=body.initial_quantity,
    )
    return ok(product.serialize(), message="Product registered")


@inventory_router.post("/products/{product_id}/variants", status_code=201)
def register_variant(
    product_id: str,
    body: RegisterVariantRequest,
    principal: Principal = Depends(current_principal),
) -> dict:
    variant = CatalogueRegistrationService().register_variant(
        principal,
        product_id=product_id,
        name=body.name,
        price=body.price,
        sku=body.sku,
        initial_quantity=body.initial_quantity,
    )
    return ok(variant.serialize(), message="Variant registered")


@inventory_router.get("/products")
def list_inventory(
    low_stock: bool = Query(default=False, alias="lowStock"),
    out_of_stock: bool = Query(default=False, alias="outOfStock"),
    search: str | None = None,
    low_stock_threshold: int | None = Query(default=None, alias="lowStockThreshold", ge=0),
    page: int = 1,
    limit: int = 50,
    principal: Principal = Depends(current_principal),
) -> dict:
    return ok(
        StockQueryService().list_inventory(
            principal,
            low_stock=low_stock,
            out_of_stock=out_of_stock,
            search=search,
            low_stock_threshold=low_stock_threshold,
            page=page,
            limit=limit,
        )
    )


@inventory_router.get("/products/{product_id}/stock")
def stock_level(
    product_id: str,
    variant_id: str | None = None,
    principal: Principal = Depends(current_principal),
) -> dict:
    return ok(StockQueryService().stock_level(principal, product_id, variant_id))


@inventory_router.get("/stats")
def inventory_stats(
    low_stock_threshold: int | None = Query(default=None, alias="lowStockThreshold", ge=0),
    principal: Principal = Depends(current_principal),
) -> dict:
    return ok(StockQueryService().stats(principal, low_stock_threshold=low_stock_threshold))


@inventory_router.post("/adjustments", status_code=201)
def adjust_stock(body: AdjustStockRequest, principal: Principal = Depends(current_principal)) -> dict:
    movement = StockAdjustmentService().adjust_stock(
        principal,
        product_id=body.product_id,
        variant_id=body.variant_id,
        quantity_change=body.quantity_change,
        reason=body.reason,
        movement_type=body.type,
    )
    return ok(movement.serialize(), message="Stock adjusted")


@inventory_router.post("/receipts", status_code=201)
def receive_stock(body: ReceiveStockRequest, principal: Principal = Depends(current_principal)) -> dict:
    movement = StockAdjustmentService().receive_stock(
        principal,
        product_id=body.product_id,
        variant_id=body.variant_id,
        quantity=body.quantity,
        reference_id=body.reference_id,
        reason=body.reason,
    )
    return ok(movement.serialize(), message="Stock received")


@inventory_router.get("/movements")
def list_movements(
    product_id: str | None = None,
    variant_id: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    page: int = 1,
    limit: int = 50,
    principal: Principal = Depends(current_principal),
) -> dict:
    result = StockAdjustmentService().list_movements(
        principal,
        product_id=product_id,
        variant_id=variant_id,
        reference_type=reference_type,
        reference_id=reference_id,
        page=page,
        limit=limit,
    )
    result["movements"] = [movement.serialize() for movement in result["movements"]]
    return ok(result)


@inventory_router.get("/movements/{movement_id}")
def get_movement(movement_id: str, principal: Principal = Depends(current_principal)) -> dict:
    return ok(StockQueryService().get_movement(principal, movement_id).serialize())


# ---------------------------------------------------------------------------
# Maintenance Router
# ---------------------------------------------------------------------------
maintenance_router = APIRouter(prefix="/inventory/maintenance", tags=["inventory-maintenance"])


@maintenance_router.get("/consistency")
def check_consistency(principal: Principal = Depends(current_principal)) -> dict:
    principal.require_admin()
    return ok(StockReconciler().health())


@maintenance_router.post("/rebuild")
def rebuild_counter(body: RebuildCounterRequest, principal: Principal = Depends(current_principal)) -> dict:
    value = StockReconciler().rebuild_counter(principal, body.product_id, body.variant_id)
    return ok({"product_id": body.product_id, "variant_id": body.variant_id, "stock_quantity": value})
