"""Data access for inventory_items."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from services import db as db_service
from services.db import RecordNotFoundError

logger = logging.getLogger(__name__)

TABLE = "inventory_items"

EDITABLE_COLUMNS = [
    "product_name",
    "current_stock",
    "cost",
    "reorder_point",
    "reorder_quantity",
    "vendor",
    "location",
    "sales_last_30_days",
    "sales_last_90_days",
    "sales_velocity",
    "maximum_stock",
    "active",
    "discontinued",
]

UPSERT_COLUMNS = [
    "sku",
    "product_name",
    "current_stock",
    "cost",
    "reorder_point",
    "reorder_quantity",
    "vendor",
    "location",
    "sales_last_30_days",
    "sales_last_90_days",
    "sales_velocity",
    "finale_id",
    "content_hash",
    "last_synced_at",
    "sync_priority",
    "last_updated",
]

_NUMERIC_DEFAULTS = {
    "current_stock": 0,
    "cost": 0,
    "reorder_point": 0,
    "reorder_quantity": 0,
    "sales_last_30_days": 0,
    "sales_last_90_days": 0,
    "sales_velocity": 0,
    "sync_priority": 0,
}


def _row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    row["active"] = bool(row.get("active"))
    row["discontinued"] = bool(row.get("discontinued"))
    return row


def list_items(active_only: bool = False) -> List[Dict[str, Any]]:
    sql = f"SELECT * FROM {TABLE}"
    if active_only:
        sql += " WHERE active = 1 AND discontinued = 0"
    sql += " ORDER BY sku"
    return [_row(r) for r in db_service.fetch_all(sql)]


def count_items() -> int:
    row = db_service.fetch_one(f"SELECT COUNT(*) AS n FROM {TABLE}")
    return int(row["n"]) if row else 0


def get_item(item_id: int) -> Dict[str, Any]:
    row = db_service.fetch_one(f"SELECT * FROM {TABLE} WHERE id = :id", {"id": item_id})
    if row is None:
        raise RecordNotFoundError(f"Inventory item {item_id} not found")
    return _row(row)


def get_by_sku(sku: str) -> Optional[Dict[str, Any]]:
    return _row(db_service.fetch_one(f"SELECT * FROM {TABLE} WHERE sku = :sku", {"sku": sku}))


def get_items_by_ids(ids: Iterable[int]) -> List[Dict[str, Any]]:
    id_list = [int(i) for i in ids]
    if not id_list:
        return []
    params = {f"id{idx}": value for idx, value in enumerate(id_list)}
    placeholders = ",".join(f":{name}" for name in params)
    rows = db_service.fetch_all(f"SELECT * FROM {TABLE} WHERE id IN ({placeholders})", params)
    return [_row(r) for r in rows]


def get_change_index() -> Dict[str, Dict[str, Any]]:
    """sku -> stored monitored fields plus content_hash / last_synced_at."""
    rows = db_service.fetch_all(
        f"""
        SELECT sku, current_stock, cost, reorder_point, vendor, location,
               content_hash, last_synced_at
        FROM {TABLE}
        """
    )
    return {row["sku"]: row for row in rows}


def create_item(data: Mapping[str, Any]) -> Dict[str, Any]:
    now = db_service.now_iso()
    params = {col: data.get(col) for col in EDITABLE_COLUMNS}
    for col, default in _NUMERIC_DEFAULTS.items():
        if col in params and params[col] is None:
            params[col] = default
    params["active"] = 1 if data.get("active", True) else 0
    params["discontinued"] = 1 if data.get("discontinued", False) else 0
    params["sku"] = data["sku"]
    params["last_updated"] = now
    columns = ["sku", *EDITABLE_COLUMNS, "last_updated"]
    row = db_service.execute_returning(
        f"""
        INSERT INTO {TABLE} ({", ".join(columns)})
        VALUES ({", ".join(":" + c for c in columns)})
        RETURNING *
        """,
        params,
    )
    logger.info("[Inventory] created %s", data["sku"])
    return _row(row)


def update_item(item_id: int, changes: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {k: v for k, v in changes.items() if k in EDITABLE_COLUMNS}
    if not fields:
        return get_item(item_id)
    for flag in ("active", "discontinued"):
        if flag in fields:
            fields[flag] = 1 if fields[flag] else 0
    fields["last_updated"] = db_service.now_iso()
    assignments = ", ".join(f"{col} = :{col}" for col in fields)
    row = db_service.execute_returning(
        f"UPDATE {TABLE} SET {assignments} WHERE id = :id RETURNING *",
        {**fields, "id": item_id},
    )
    if row is None:
        raise RecordNotFoundError(f"Inventory item {item_id} not found")
    return _row(row)


def delete_item(item_id: int) -> None:
    if db_service.execute_write(f"DELETE FROM {TABLE} WHERE id = :id", {"id": item_id}) == 0:
        raise RecordNotFoundError(f"Inventory item {item_id} not found")


def _upsert_params(record: Mapping[str, Any], synced_at: str) -> Dict[str, Any]:
    params = {col: record.get(col) for col in UPSERT_COLUMNS}
    for col, default in _NUMERIC_DEFAULTS.items():
        if params.get(col) is None:
            params[col] = default
    params["last_synced_at"] = params.get("last_synced_at") or synced_at
    params["last_updated"] = params.get("last_updated") or synced_at
    return params


def upsert_items(records: List[Mapping[str, Any]]) -> int:
    """
    Insert or update rows keyed on sku. The batch commits atomically;
    a failure raises and nothing in the batch is written.
    """
    if not records:
        return 0
    synced_at = db_service.now_iso()
    updates = ", ".join(f"{col} = excluded.{col}" for col in UPSERT_COLUMNS if col != "sku")
    sql = f"""
        INSERT INTO {TABLE} ({", ".join(UPSERT_COLUMNS)})
        VALUES ({", ".join(":" + c for c in UPSERT_COLUMNS)})
        ON CONFLICT (sku) DO UPDATE SET {updates}
    """
    db_service.execute_many_write(sql, [_upsert_params(r, synced_at) for r in records])
    return len(records)


def update_stock_levels(levels: Mapping[str, float]) -> int:
    """Apply quantity-on-hand by finale_id (falling back to sku). Returns rows touched."""
    if not levels:
        return 0
    now = db_service.now_iso()
    params = [{"key": key, "stock": float(qty), "now": now} for key, qty in levels.items()]
    existing = {
        row["finale_id"] or row["sku"]
        for row in db_service.fetch_all(f"SELECT sku, finale_id FROM {TABLE}")
    }
    params = [p for p in params if p["key"] in existing]
    db_service.execute_many_write(
        f"""
        UPDATE {TABLE}
        SET current_stock = :stock, last_synced_at = :now, last_updated = :now
        WHERE finale_id = :key OR (finale_id IS NULL AND sku = :key)
        """,
        params,
    )
    return len(params)


def list_vendor_names() -> List[str]:
    rows = db_service.fetch_all(
        f"SELECT DISTINCT vendor FROM {TABLE} WHERE vendor IS NOT NULL AND vendor <> '' ORDER BY vendor"
    )
    return [row["vendor"] for row in rows]


def count_by_vendor() -> Dict[str, int]:
    rows = db_service.fetch_all(
        f"SELECT vendor, COUNT(*) AS n FROM {TABLE} WHERE vendor IS NOT NULL GROUP BY vendor"
    )
    return {row["vendor"]: int(row["n"]) for row in rows}
