"""Purchase-order lifecycle: create, update, approve, cancel, detail."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Optional

from services import cache, purchase_order_store, vendor_store
from services.db import RecordNotFoundError, now_iso
from services.finale_api import FinaleApiError
from services.purchase_order_store import InvalidTransitionError, check_transition, compute_total

LOGGER = logging.getLogger(__name__)

ENTITY = "purchase_order"
TOTAL_FIELDS = ("items", "shipping_cost", "tax_amount")


def list_purchase_orders(
    status: Optional[str] = None,
    vendor: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    rows = purchase_order_store.list_purchase_orders(status=status, vendor=vendor)
    limit = max(1, min(int(limit), 200))
    page = max(1, int(page))
    start = (page - 1) * limit
    return {
        "purchase_orders": rows[start : start + limit],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": len(rows),
            "totalPages": max(1, math.ceil(len(rows) / limit)),
        },
    }


def create_purchase_order(data: Mapping[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
    payload = dict(data)
    if payload.get("vendor_id") and not payload.get("vendor_name"):
        vendor = vendor_store.get_vendor(int(payload["vendor_id"]))
        payload["vendor_name"] = vendor["name"]
        payload.setdefault("vendor_email", vendor.get("email"))
    payload["status"] = "draft"
    payload["created_by"] = user_id or payload.get("created_by") or "user"
    po = purchase_order_store.create_purchase_order(payload)
    purchase_order_store.add_audit_log(
        "CREATE", ENTITY, po["id"], {"order_number": po["order_number"], "item_count": len(po["items"])}, user_id
    )
    cache.invalidate_dashboard()
    return po


def _push_to_finale(po: Mapping[str, Any]) -> Optional[str]:
    """Create the PO in Finale. Failures are logged and never fail the caller."""
    from services.finale_sync import build_finale_client

    try:
        client = build_finale_client()
        response = client.create_purchase_order(dict(po))
    except (FinaleApiError, RuntimeError) as exc:
        LOGGER.warning("[PO] Finale push failed for %s: %s", po.get("order_number"), exc)
        return None
    order_id = response.get("orderId") or response.get("orderNumber") or response.get("orderUrl")
    LOGGER.info("[PO] pushed %s to Finale as %s", po.get("order_number"), order_id)
    return str(order_id) if order_id else None


def update_purchase_order(po_id: int, changes: Mapping[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Apply edits and/or a status change.

    The total is recomputed whenever items, shipping or tax change. Moving to
    'sent' pushes the order to Finale.
    """
    current = purchase_order_store.get_purchase_order(po_id)
    fields = {k: v for k, v in changes.items() if v is not None}
    target = fields.get("status")
    if target:
        check_transition(current["status"], target)

    if any(f in fields for f in TOTAL_FIELDS):
        items = fields.get("items", current["items"])
        fields["total_amount"] = compute_total(
            items,
            fields.get("shipping_cost", current.get("shipping_cost") or 0),
            fields.get("tax_amount", current.get("tax_amount") or 0),
        )

    now = now_iso()
    if target == "approved" and current["status"] != "approved":
        fields["approved_at"] = now
        fields["approved_by"] = user_id or "user"
    if target == "sent" and current["status"] != "sent":
        fields["sent_at"] = now

    updated = purchase_order_store.update_purchase_order(po_id, fields)

    if target == "sent" and current["status"] != "sent":
        finale_id = _push_to_finale(updated)
        if finale_id:
            updated = purchase_order_store.update_purchase_order(po_id, {"finale_order_id": finale_id})

    changed = sorted(k for k in fields if current.get(k) != fields[k] and k != "updated_at")
    purchase_order_store.add_audit_log(
        "UPDATE",
        ENTITY,
        po_id,
        {"changed_fields": changed, "previous_status": current["status"], "status": updated["status"]},
        user_id,
    )
    cache.invalidate_dashboard()
    return updated


def approve_purchase_order(po_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
    current = purchase_order_store.get_purchase_order(po_id)
    if current["status"] not in ("draft", "pending_approval"):
        raise InvalidTransitionError(f"Cannot approve a purchase order in status {current['status']}")
    po = update_purchase_order(po_id, {"status": "approved"}, user_id)
    purchase_order_store.add_audit_log("APPROVE", ENTITY, po_id, {"order_number": po["order_number"]}, user_id)
    return po


def delete_purchase_order(po_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Drafts are deleted outright; anything else is cancelled and kept."""
    current = purchase_order_store.get_purchase_order(po_id)
    if current["status"] == "draft":
        purchase_order_store.delete_purchase_order(po_id)
        purchase_order_store.add_audit_log("DELETE", ENTITY, po_id, {"order_number": current["order_number"]}, user_id)
        cache.invalidate_dashboard()
        return {"deleted": True, "cancelled": False, "id": po_id}
    if current["status"] in purchase_order_store.TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Cannot delete a purchase order in status {current['status']}")
    check_transition(current["status"], "cancelled")
    purchase_order_store.update_purchase_order(po_id, {"status": "cancelled"})
    purchase_order_store.add_audit_log(
        "CANCEL", ENTITY, po_id, {"order_number": current["order_number"], "previous_status": current["status"]}, user_id
    )
    cache.invalidate_dashboard()
    return {"deleted": False, "cancelled": True, "id": po_id}


def _timeline(po: Mapping[str, Any], audit: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    events = [{"event": "created", "at": po.get("created_at"), "by": po.get("created_by")}]
    if po.get("approved_at"):
        events.append({"event": "approved", "at": po["approved_at"], "by": po.get("approved_by")})
    if po.get("sent_at"):
        events.append({"event": "sent", "at": po["sent_at"], "by": None})
    for entry in audit:
        if entry["action"] in ("UPDATE", "CANCEL"):
            events.append(
                {
                    "event": entry["action"].lower(),
                    "at": entry["created_at"],
                    "by": entry.get("user_id"),
                    "details": entry.get("details"),
                }
            )
    return sorted(events, key=lambda e: e["at"] or "")


def get_purchase_order_detail(po_id: int) -> Dict[str, Any]:
    po = purchase_order_store.get_purchase_order(po_id)
    vendor = None
    if po.get("vendor_id"):
        try:
            vendor = vendor_store.get_vendor(int(po["vendor_id"]))
        except RecordNotFoundError:
            vendor = None
    if vendor is None and po.get("vendor_name"):
        vendor = vendor_store.get_by_name(po["vendor_name"])
    audit = purchase_order_store.list_audit_logs(ENTITY, po_id)
    return {**po, "vendor": vendor, "timeline": _timeline(po, audit), "audit_logs": audit}
