"""Data access for vendors."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import text

from services import db as db_service
from services.db import RecordNotFoundError

logger = logging.getLogger(__name__)

TABLE = "vendors"
DEFAULT_LEAD_TIME_DAYS = 7

EDITABLE_COLUMNS = [
    "name",
    "contact_name",
    "email",
    "phone",
    "address",
    "payment_terms",
    "lead_time_days",
    "notes",
    "active",
]

SYNC_COLUMNS = ["finale_id", "name", "contact_name", "email", "phone", "address", "payment_terms", "notes"]


def _row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is not None:
        row["active"] = bool(row.get("active"))
    return row


def list_vendors(active_only: bool = False) -> List[Dict[str, Any]]:
    sql = f"SELECT * FROM {TABLE}"
    if active_only:
        sql += " WHERE active = 1"
    sql += " ORDER BY name"
    return [_row(r) for r in db_service.fetch_all(sql)]


def get_vendor(vendor_id: int) -> Dict[str, Any]:
    row = db_service.fetch_one(f"SELECT * FROM {TABLE} WHERE id = :id", {"id": vendor_id})
    if row is None:
        raise RecordNotFoundError(f"Vendor {vendor_id} not found")
    return _row(row)


def get_by_name(name: str) -> Optional[Dict[str, Any]]:
    return _row(db_service.fetch_one(f"SELECT * FROM {TABLE} WHERE name = :name", {"name": name}))


def vendors_by_name() -> Dict[str, Dict[str, Any]]:
    return {v["name"]: v for v in list_vendors()}


def create_vendor(data: Mapping[str, Any]) -> Dict[str, Any]:
    now = db_service.now_iso()
    params = {col: data.get(col) for col in EDITABLE_COLUMNS}
    params["lead_time_days"] = params.get("lead_time_days") or DEFAULT_LEAD_TIME_DAYS
    params["active"] = 1 if data.get("active", True) else 0
    params["finale_id"] = data.get("finale_id")
    params["created_at"] = now
    params["updated_at"] = now
    columns = list(params)
    row = db_service.execute_returning(
        f"""
        INSERT INTO {TABLE} ({", ".join(columns)})
        VALUES ({", ".join(":" + c for c in columns)})
        RETURNING *
        """,
        params,
    )
    logger.info("[Vendors] created %s", data.get("name"))
    return _row(row)


def update_vendor(vendor_id: int, changes: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {k: v for k, v in changes.items() if k in EDITABLE_COLUMNS}
    if not fields:
        return get_vendor(vendor_id)
    if "active" in fields:
        fields["active"] = 1 if fields["active"] else 0
    fields["updated_at"] = db_service.now_iso()
    assignments = ", ".join(f"{col} = :{col}" for col in fields)
    row = db_service.execute_returning(
        f"UPDATE {TABLE} SET {assignments} WHERE id = :id RETURNING *",
        {**fields, "id": vendor_id},
    )
    if row is None:
        raise RecordNotFoundError(f"Vendor {vendor_id} not found")
    return _row(row)


def deactivate_vendor(vendor_id: int) -> Dict[str, Any]:
    return update_vendor(vendor_id, {"active": False})


def upsert_vendors(records: List[Mapping[str, Any]]) -> int:
    """
    Insert or refresh vendors from Finale. Rows already carrying a
    finale_id are matched on it first (so a rename in Finale renames the
    row); anything else is keyed on name. User-edited lead time and the
    active flag are kept.
    """
    if not records:
        return 0
    now = db_service.now_iso()
    seen = set()
    batch = []
    for record in records:
        name = (record.get("name") or "").strip()
        if not name or name in seen:
            continue
        seen.add(name)
        params = {col: record.get(col) for col in SYNC_COLUMNS}
        params["name"] = name
        params["now"] = now
        batch.append(params)

    refresh = ", ".join(f"{col} = COALESCE(:{col}, {col})" for col in SYNC_COLUMNS if col not in ("finale_id", "name"))
    by_finale_id = text(
        f"UPDATE {TABLE} SET name = :name, {refresh}, updated_at = :now WHERE finale_id = :finale_id"
    )
    updates = ", ".join(
        f"{col} = COALESCE(excluded.{col}, {TABLE}.{col})" for col in SYNC_COLUMNS if col != "name"
    )
    by_name = text(
        f"""
        INSERT INTO {TABLE} ({", ".join(SYNC_COLUMNS)}, lead_time_days, active, created_at, updated_at)
        VALUES ({", ".join(":" + c for c in SYNC_COLUMNS)}, {DEFAULT_LEAD_TIME_DAYS}, 1, :now, :now)
        ON CONFLICT (name) DO UPDATE SET {updates}, updated_at = excluded.updated_at
        """
    )
    renamed = 0
    with db_service.write_transaction() as conn:
        for params in batch:
            if params["finale_id"] and conn.execute(by_finale_id, params).rowcount:
                renamed += 1
                continue
            conn.execute(by_name, params)
    if renamed:
        logger.debug("[Vendors] %d vendors matched on finale_id", renamed)
    return len(batch)
