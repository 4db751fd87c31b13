from typing import List, Optional
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Query, Request, status

from inventory_records.models.item import (
    BulkUpdateRequest,
    BulkUpdateResult,
    Identity,
    InventoryStats,
    ItemPage,
    ItemResponse,
    Role,
)
from inventory_records.service import InventoryService
from inventory_records.logging_config import get_child_logger, tracer

# Create a child logger for this module
logger = get_child_logger("routes.item")

router = APIRouter(prefix="/inventory", tags=["inventory"])


def get_inventory_service(request: Request) -> InventoryService:
    return request.app.state.inventory_service


async def get_identity(
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    role: Role = Header(Role.USER, alias="X-User-Role"),
    name: Optional[str] = Header(None, alias="X-User-Name"),
) -> Identity:
    """
    Identity asserted by the upstream auth layer.
    """
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, no user identity.",
        )
    return Identity(user_id=user_id, role=role, name=name)


@router.get("/", response_model=ItemPage)
async def list_items(
    search: Optional[str] = Query(None, title="Text to match in name, description or tags"),
    category: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    item_status: Optional[str] = Query(None, alias="status"),
    stock_status: Optional[str] = Query(None, alias="stockStatus"),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    page: Optional[int] = Query(None, title="1-based page number"),
    limit: Optional[int] = Query(None, title="Page size, clamped to 1..100"),
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    with tracer.start_as_current_span("api_list_items") as span:
        span.set_attribute("user.id", identity.user_id)
        logger.info(
            "Handling GET /inventory request",
            extra={"user_id": identity.user_id, "search": search, "category": category},
        )
        params = {
            "search": search,
            "category": category,
            "minPrice": min_price,
            "maxPrice": max_price,
            "status": item_status,
            "stockStatus": stock_status,
            "sortBy": sort_by,
            "sortOrder": sort_order,
            "page": page,
            "limit": limit,
        }
        result = await service.list_items(params, identity)
        span.set_attribute("items.count", len(result.items))
        return result


@router.get("/stats", response_model=InventoryStats)
async def get_stats(
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.get_stats(identity)


@router.get("/low-stock", response_model=List[ItemResponse])
async def get_low_stock(
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.get_low_stock(identity)


@router.get("/out-of-stock", response_model=List[ItemResponse])
async def get_out_of_stock(
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.get_out_of_stock(identity)


@router.post("/", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
async def create_item(
    fields: dict = Body(..., description="Inventory item to create"),
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.create_item(fields, identity)


@router.put("/bulk-update", response_model=BulkUpdateResult)
async def bulk_update(
    request: BulkUpdateRequest,
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.bulk_update(request.items, identity)


@router.get("/{item_id}", response_model=ItemResponse)
async def get_item(
    item_id: str = Path(..., title="The ID of the item to retrieve"),
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.get_item(item_id, identity)


@router.put("/{item_id}", response_model=ItemResponse)
async def update_item(
    patch: dict = Body(..., description="Fields to change"),
    item_id: str = Path(..., title="The ID of the item to update"),
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.update_item(item_id, patch, identity)


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_item(
    item_id: str = Path(..., title="The ID of the item to delete"),
    identity: Identity = Depends(get_identity),
    service: InventoryService = Depends(get_inventory_service),
):
    await service.delete_item(item_id, identity)
