"""Inventory API routes (cache-first reads, validated writes)."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, Query
from sqlalchemy.exc import SQLAlchemyError

from routes.responses import error_response, server_error
from services import cache, inventory_service, inventory_store
from services.db import RecordNotFoundError
from services.inventory_calculations import enrich_item
from services.schemas import InventoryItemCreate, InventoryItemUpdate, StockStatus

router = APIRouter(prefix="/api/inventory")
logger = logging.getLogger(__name__)


@router.get("")
def get_inventory(
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=inventory_service.MAX_LIMIT),
    status: Optional[StockStatus] = None,
    vendor: Optional[str] = None,
    location: Optional[str] = None,
    search: Optional[str] = None,
    sortBy: str = "product_name",
    sortDirection: str = Query("asc", pattern="^(asc|desc)$"),
    forceRefresh: bool = False,
):
    try:
        return inventory_service.list_inventory(
            page=page,
            limit=limit,
            status=status,
            vendor=vendor,
            location=location,
            search=search,
            sort_by=sortBy,
            sort_direction=sortDirection,
            force_refresh=forceRefresh,
        )
    except Exception as exc:
        return server_error("load inventory", exc)


@router.post("", status_code=201)
def create_inventory_item(body: InventoryItemCreate):
    try:
        if inventory_store.get_by_sku(body.sku) is not None:
            return error_response(f"Item with SKU {body.sku} already exists", 409)
        row = inventory_store.create_item(body.model_dump())
    except SQLAlchemyError as exc:
        return server_error("create inventory item", exc)
    inventory_service.invalidate()
    return {"item": enrich_item(row)}


@router.put("")
def update_inventory_item(body: InventoryItemUpdate):
    changes = body.model_dump(exclude_unset=True, exclude={"id", "sku"})
    try:
        item_id = body.id
        if item_id is None:
            existing = inventory_store.get_by_sku(body.sku.strip())
            if existing is None:
                return error_response(f"Item with SKU {body.sku} not found", 404)
            item_id = existing["id"]
        row = inventory_store.update_item(item_id, changes)
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except SQLAlchemyError as exc:
        return server_error("update inventory item", exc)
    inventory_service.invalidate()
    return {"item": enrich_item(row)}


@router.delete("")
def delete_inventory_item(id: int = Query(..., ge=1)):
    try:
        inventory_store.delete_item(id)
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except SQLAlchemyError as exc:
        return server_error("delete inventory item", exc)
    inventory_service.invalidate()
    return {"success": True, "id": id}


@router.get("/cache")
def get_inventory_cache_status():
    return cache.cache_status()


@router.delete("/cache")
def clear_inventory_cache(pattern: str = "inventory:*"):
    removed = cache.clear_cache(pattern)
    if pattern.startswith("inventory"):
        removed += cache.invalidate_dashboard()
    return {"success": True, "pattern": pattern, "keys_removed": removed}


def register_inventory_routes(app: FastAPI) -> None:
    app.include_router(router)
