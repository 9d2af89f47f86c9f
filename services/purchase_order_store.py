"""Data access for purchase_orders and audit_logs."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from services import db as db_service
from services.db import RecordNotFoundError

logger = logging.getLogger(__name__)

TABLE = "purchase_orders"
AUDIT_TABLE = "audit_logs"

PO_STATUSES = ("draft", "pending_approval", "approved", "sent", "partial", "received", "cancelled")
TERMINAL_STATUSES = ("received", "cancelled")

ALLOWED_TRANSITIONS: Dict[str, tuple] = {
    "draft": ("pending_approval", "approved", "cancelled"),
    "pending_approval": ("draft", "approved", "cancelled"),
    "approved": ("sent", "cancelled"),
    "sent": ("partial", "received", "cancelled"),
    "partial": ("received", "cancelled"),
    "received": (),
    "cancelled": (),
}

EDITABLE_COLUMNS = [
    "vendor_id",
    "vendor_name",
    "vendor_email",
    "status",
    "items",
    "total_amount",
    "shipping_cost",
    "tax_amount",
    "urgency_level",
    "notes",
    "expected_date",
    "approved_at",
    "approved_by",
    "sent_at",
    "finale_order_id",
]


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed from the current status."""


def check_transition(current: str, target: str) -> None:
    if current == target:
        return
    if target not in PO_STATUSES:
        raise InvalidTransitionError(f"Unknown status: {target}")
    if target not in ALLOWED_TRANSITIONS.get(current, ()):
        raise InvalidTransitionError(f"Cannot change status from {current} to {target}")


def _decode(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    try:
        row["items"] = json.loads(row.get("items") or "[]")
    except (TypeError, ValueError):
        logger.warning("[PO] Undecodable items on %s", row.get("order_number"))
        row["items"] = []
    row["auto_generated"] = bool(row.get("auto_generated"))
    return row


def compute_total(items: List[Mapping[str, Any]], shipping_cost: float = 0, tax_amount: float = 0) -> float:
    subtotal = sum(float(i.get("quantity") or 0) * float(i.get("unit_cost") or 0) for i in items)
    return round(subtotal + float(shipping_cost or 0) + float(tax_amount or 0), 2)


def next_order_number(year: int, now_ms: Optional[int] = None) -> str:
    """PO-{year}-{last 6 digits of the ms timestamp}; bumped until unused."""
    seq = int(str(now_ms if now_ms is not None else int(time.time() * 1000))[-6:])
    for _ in range(1000):
        candidate = f"PO-{year}-{seq % 1_000_000:06d}"
        if db_service.fetch_one(f"SELECT 1 AS x FROM {TABLE} WHERE order_number = :n", {"n": candidate}) is None:
            return candidate
        seq += 1
    raise RuntimeError("Could not allocate a purchase order number")


# ----------------------------
# Purchase orders
# ----------------------------
def list_purchase_orders(status: Optional[str] = None, vendor: Optional[str] = None) -> List[Dict[str, Any]]:
    clauses = []
    params: Dict[str, Any] = {}
    if status:
        clauses.append("status = :status")
        params["status"] = status
    if vendor:
        clauses.append("vendor_name = :vendor")
        params["vendor"] = vendor
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db_service.fetch_all(f"SELECT * FROM {TABLE} {where} ORDER BY created_at DESC, id DESC", params)
    return [_decode(r) for r in rows]


def get_purchase_order(po_id: int) -> Dict[str, Any]:
    row = db_service.fetch_one(f"SELECT * FROM {TABLE} WHERE id = :id", {"id": po_id})
    if row is None:
        raise RecordNotFoundError(f"Purchase order {po_id} not found")
    return _decode(row)


def create_purchase_order(data: Mapping[str, Any]) -> Dict[str, Any]:
    now = db_service.now_iso()
    items = list(data.get("items") or [])
    shipping = float(data.get("shipping_cost") or 0)
    tax = float(data.get("tax_amount") or 0)
    params = {
        "order_number": data.get("order_number") or next_order_number(int(now[:4])),
        "vendor_id": data.get("vendor_id"),
        "vendor_name": data.get("vendor_name"),
        "vendor_email": data.get("vendor_email"),
        "status": data.get("status") or "draft",
        "items": json.dumps(items, default=str),
        "total_amount": compute_total(items, shipping, tax),
        "shipping_cost": shipping,
        "tax_amount": tax,
        "urgency_level": data.get("urgency_level"),
        "auto_generated": 1 if data.get("auto_generated") else 0,
        "created_by": data.get("created_by"),
        "notes": data.get("notes"),
        "expected_date": data.get("expected_date"),
        "created_at": now,
        "updated_at": now,
    }
    columns = list(params)
    row = db_service.execute_returning(
        f"""
        INSERT INTO {TABLE} ({", ".join(columns)})
        VALUES ({", ".join(":" + c for c in columns)})
        RETURNING *
        """,
        params,
    )
    logger.info("[PO] created %s for %s (%d items)", params["order_number"], params["vendor_name"], len(items))
    return _decode(row)


def update_purchase_order(po_id: int, changes: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {k: v for k, v in changes.items() if k in EDITABLE_COLUMNS}
    if "items" in fields:
        fields["items"] = json.dumps(list(fields["items"] or []), default=str)
    fields["updated_at"] = db_service.now_iso()
    assignments = ", ".join(f"{col} = :{col}" for col in fields)
    row = db_service.execute_returning(
        f"UPDATE {TABLE} SET {assignments} WHERE id = :id RETURNING *",
        {**fields, "id": po_id},
    )
    if row is None:
        raise RecordNotFoundError(f"Purchase order {po_id} not found")
    return _decode(row)


def delete_purchase_order(po_id: int) -> None:
    if db_service.execute_write(f"DELETE FROM {TABLE} WHERE id = :id", {"id": po_id}) == 0:
        raise RecordNotFoundError(f"Purchase order {po_id} not found")


def status_counts() -> Dict[str, int]:
    rows = db_service.fetch_all(f"SELECT status, COUNT(*) AS n FROM {TABLE} GROUP BY status")
    counts = {status: 0 for status in PO_STATUSES}
    for row in rows:
        counts[row["status"]] = int(row["n"])
    return counts


def totals_by_vendor() -> Dict[str, Dict[str, Any]]:
    rows = db_service.fetch_all(
        f"""
        SELECT vendor_name, COUNT(*) AS po_count, COALESCE(SUM(total_amount), 0) AS total_spend,
               MAX(created_at) AS last_order_at
        FROM {TABLE}
        WHERE status <> 'cancelled' AND vendor_name IS NOT NULL
        GROUP BY vendor_name
        """
    )
    return {row["vendor_name"]: row for row in rows}


# ----------------------------
# Audit log
# ----------------------------
def add_audit_log(
    action: str,
    entity_type: str,
    entity_id: Any,
    details: Optional[Mapping[str, Any]] = None,
    user_id: Optional[str] = None,
) -> None:
    db_service.execute_write(
        f"""
        INSERT INTO {AUDIT_TABLE} (action, entity_type, entity_id, user_id, details, created_at)
        VALUES (:action, :entity_type, :entity_id, :user_id, :details, :created_at)
        """,
        {
            "action": action,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "user_id": user_id,
            "details": json.dumps(dict(details or {}), default=str),
            "created_at": db_service.now_iso(),
        },
    )


def _decode_audit(row: Dict[str, Any]) -> Dict[str, Any]:
    try:
        row["details"] = json.loads(row.get("details") or "{}")
    except (TypeError, ValueError):
        row["details"] = {}
    return row


def list_audit_logs(entity_type: str, entity_id: Any) -> List[Dict[str, Any]]:
    rows = db_service.fetch_all(
        f"""
        SELECT * FROM {AUDIT_TABLE}
        WHERE entity_type = :entity_type AND entity_id = :entity_id
        ORDER BY created_at DESC, id DESC
        """,
        {"entity_type": entity_type, "entity_id": str(entity_id)},
    )
    return [_decode_audit(r) for r in rows]


def recent_audit_logs(since_iso: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {"limit": int(limit)}
    where = ""
    if since_iso:
        where = "WHERE created_at > :since"
        params["since"] = since_iso
    rows = db_service.fetch_all(
        f"SELECT * FROM {AUDIT_TABLE} {where} ORDER BY created_at DESC, id DESC LIMIT :limit",
        params,
    )
    return [_decode_audit(r) for r in rows]
