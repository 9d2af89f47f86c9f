"""Purchase-order API routes."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, Query
from sqlalchemy.exc import SQLAlchemyError

from routes.responses import error_response, server_error
from services import po_generation, po_service
from services.db import RecordNotFoundError
from services.purchase_order_store import InvalidTransitionError
from services.schemas import GeneratePoRequest, PoStatus, PurchaseOrderCreate, PurchaseOrderUpdate

router = APIRouter(prefix="/api/purchase-orders")
logger = logging.getLogger(__name__)


@router.get("")
def list_purchase_orders(
    status: Optional[PoStatus] = None,
    vendor: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
):
    try:
        return po_service.list_purchase_orders(status=status, vendor=vendor, page=page, limit=limit)
    except Exception as exc:
        return server_error("load purchase orders", exc)


@router.post("", status_code=201)
def create_purchase_order(body: PurchaseOrderCreate):
    try:
        po = po_service.create_purchase_order(body.model_dump())
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except SQLAlchemyError as exc:
        return server_error("create purchase order", exc)
    return {"purchase_order": po}


@router.post("/generate")
def generate_purchase_orders(body: GeneratePoRequest):
    manual = [{"inventory_item_id": i.inventoryItemId, "quantity": i.quantity} for i in body.items or []]
    try:
        return po_generation.generate_purchase_orders(body.type, vendor_id=body.vendorId, manual_items=manual or None)
    except po_generation.GenerationError as exc:
        return error_response(str(exc), 400)
    except SQLAlchemyError as exc:
        return server_error("generate purchase orders", exc)


@router.get("/suggestions")
def get_purchase_order_suggestions(
    vendor: Optional[str] = None,
    urgency: Optional[str] = Query(None, pattern="^(critical|high|medium|low)$"),
):
    try:
        return po_generation.build_suggestions(vendor=vendor, urgency=urgency)
    except SQLAlchemyError as exc:
        return server_error("build purchase order suggestions", exc)


@router.get("/{po_id}")
def get_purchase_order(po_id: int):
    try:
        return po_service.get_purchase_order_detail(po_id)
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except SQLAlchemyError as exc:
        return server_error("load purchase order", exc)


@router.put("/{po_id}")
def update_purchase_order(po_id: int, body: PurchaseOrderUpdate):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        return error_response("No changes supplied", 400)
    try:
        return {"purchase_order": po_service.update_purchase_order(po_id, changes)}
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except InvalidTransitionError as exc:
        return error_response(str(exc), 400)
    except SQLAlchemyError as exc:
        return server_error("update purchase order", exc)


@router.post("/{po_id}/approve")
def approve_purchase_order(po_id: int):
    try:
        return {"purchase_order": po_service.approve_purchase_order(po_id)}
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except InvalidTransitionError as exc:
        return error_response(str(exc), 400)
    except SQLAlchemyError as exc:
        return server_error("approve purchase order", exc)


@router.delete("/{po_id}")
def delete_purchase_order(po_id: int):
    try:
        return po_service.delete_purchase_order(po_id)
    except RecordNotFoundError as exc:
        return error_response(str(exc), 404)
    except InvalidTransitionError as exc:
        return error_response(str(exc), 400)
    except SQLAlchemyError as exc:
        return server_error("delete purchase order", exc)


def register_purchase_order_routes(app: FastAPI) -> None:
    app.include_router(router)
