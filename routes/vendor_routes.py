"""Vendor API routes."""

from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, FastAPI, Query
from sqlalchemy.exc import SQLAlchemyError

from routes.responses import error_response, server_error
from services import cache, inventory_store, vendor_store
from services.db import RecordNotFoundError
from services.schemas import VendorCreate, VendorUpdate

router = APIRouter(prefix="/api/vendors")
logger = logging.getLogger(__name__)


def _load_vendors():
    cached = cache.get_vendors_snapshot()
    if cached is not None:
        return cached, "hit"
    vendors = vendor_store.list_vendors()
    cache.set_vendors_snapshot(vendors)
    return vendors, "miss"


def _invalidate() -> None:
    cache.delete(cache.VENDORS_KEY)
    cache.invalidate_dashboard()


@router.get("")
def list_vendors(
    search: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
):
    try:
        vendors, cache_status = _load_vendors()
    except SQLAlchemyError as exc:
        return server_error("load vendors", exc)
    if active is not None:
        vendors = [v for v in vendors if bool(v.get("active")) == active]
    if search:
        needle = search.strip().lower()
        vendors = [
            v
            for v in vendors
            if needle in (v.get("name") or "").lower()
            or needle in (v.get("email") or "").lower()
            or needle in (v.get("contact_name") or "").lower()
        ]
    start = (page - 1) * limit
    return {
        "vendors": vendors[start : start + limit],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": len(vendors),
            "totalPages": max(1, math.ceil(len(vendors) / limit)),
        },
        "cacheStatus": cache_status,
    }


@router.post("", status_code=201)
def create_vendor(body: VendorCreate):
    try:
        if vendor_store.get_by_name(body.name.strip()) is not None:
            return error_response(f"Vendor {body.name} already exists", 409)
        vendor = vendor_store.create_vendor({**body.model_dump(), "name": body.name.strip()})
    except SQLAlchemyError as exc:
        return server_error("create vendor", exc)
    _invalidate()
    return {"vendor": vendor}


@router.get("/{vendor_id}")
def get_vendor(vendor_id: int):
    try:
        vendor = vendor_store.get_vendor(vendor_id)
        vendor["item_count"] = inventory_store.count_by_vendor().get(vendor["name"], 0)
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except SQLAlchemyError as exc:
        return server_error("load vendor", exc)
    return {"vendor": vendor}


@router.put("/{vendor_id}")
def update_vendor(vendor_id: int, body: VendorUpdate):
    try:
        vendor = vendor_store.update_vendor(vendor_id, body.model_dump(exclude_unset=True))
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except SQLAlchemyError as exc:
        return server_error("update vendor", exc)
    _invalidate()
    return {"vendor": vendor}


@router.delete("/{vendor_id}")
def deactivate_vendor(vendor_id: int):
    try:
        vendor = vendor_store.deactivate_vendor(vendor_id)
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except SQLAlchemyError as exc:
        return server_error("deactivate vendor", exc)
    _invalidate()
    return {"success": True, "vendor": vendor}


def register_vendor_routes(app: FastAPI) -> None:
    app.include_router(router)
