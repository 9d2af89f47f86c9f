"""
Content-hash change detection for Finale items.

Only items whose monitored fields changed since the last sync are
re-written; each gets a sync priority (0-10, higher first).
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from services.db import parse_iso, utc_now

MONITORED_FIELDS = ["stock", "cost", "reorder_point", "vendor", "location"]

NEW_ITEM_PRIORITY = 8
BASE_PRIORITY = 5
LOW_STOCK_PRIORITY = 9
OUT_OF_STOCK_PRIORITY = 10
MAX_PRIORITY = 10


def _first(item: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return default


def _as_number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def monitored_values(item: Mapping[str, Any]) -> Dict[str, Any]:
    """Monitored fields under stable names, accepting Finale and stored aliases."""
    return {
        "stock": _as_number(_first(item, "current_stock", "stock", "quantityAvailable", "quantityOnHand", default=0)),
        "cost": _as_number(_first(item, "cost", "unitCost", "unit_cost", default=0)),
        "reorderPoint": _as_number(_first(item, "reorder_point", "reorderPoint", "reorderLevel", default=0)),
        "vendor": str(_first(item, "vendor", "primaryVendor", "supplier", default="")),
        "location": str(_first(item, "location", "primaryLocation", "facility", default="")),
    }


def generate_item_hash(item: Mapping[str, Any]) -> str:
    data = json.dumps(monitored_values(item), sort_keys=True, separators=(",", ":"))
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def item_key(item: Mapping[str, Any]) -> str:
    return str(_first(item, "sku", "productId", default="")).strip()


def detect_changes(
    item: Mapping[str, Any],
    previous_hash: Optional[str],
    last_synced_at: Any,
    previous: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Compare an item to its last-synced hash.

    Returns {"has_changed", "changed_fields", "priority", "hash"}. When the
    previous row is supplied the changed fields are computed exactly,
    otherwise every monitored field is reported.
    """
    current_hash = generate_item_hash(item)
    if current_hash == previous_hash:
        return {"has_changed": False, "changed_fields": [], "priority": 0, "hash": current_hash}

    values = monitored_values(item)
    if previous is not None:
        before = monitored_values(previous)
        changed_fields = [
            field
            for field, key in zip(MONITORED_FIELDS, ["stock", "cost", "reorderPoint", "vendor", "location"])
            if before[key] != values[key]
        ]
    else:
        changed_fields = list(MONITORED_FIELDS)

    priority = BASE_PRIORITY
    if values["stock"] <= 0:
        priority = OUT_OF_STOCK_PRIORITY
    elif values["stock"] <= values["reorderPoint"]:
        priority = LOW_STOCK_PRIORITY

    synced = parse_iso(last_synced_at)
    if synced is not None:
        hours = ((now or utc_now()) - synced).total_seconds() / 3600.0
        if hours > 24:
            priority = min(priority + 2, MAX_PRIORITY)
        elif hours > 6:
            priority = min(priority + 1, MAX_PRIORITY)

    return {"has_changed": True, "changed_fields": changed_fields, "priority": priority, "hash": current_hash}


def filter_changed_items(
    items: List[Mapping[str, Any]],
    existing: Mapping[str, Mapping[str, Any]],
    force_sync: bool = False,
    *,
    now: Optional[datetime] = None,
) -> Tuple[List[Mapping[str, Any]], int, Dict[str, int]]:
    """
    Partition items into those needing a write and an unchanged count.

    existing maps sku -> stored row carrying content_hash and last_synced_at.
    Returns (to_sync sorted by priority desc, unchanged, priorities by sku).
    """
    if force_sync:
        return list(items), 0, {}

    to_sync: List[Mapping[str, Any]] = []
    priorities: Dict[str, int] = {}
    unchanged = 0
    for item in items:
        sku = item_key(item)
        row = existing.get(sku)
        if row is None:
            to_sync.append(item)
            priorities[sku] = NEW_ITEM_PRIORITY
            continue
        result = detect_changes(item, row.get("content_hash"), row.get("last_synced_at"), row, now=now)
        if result["has_changed"]:
            to_sync.append(item)
            priorities[sku] = result["priority"]
        else:
            unchanged += 1

    to_sync.sort(key=lambda it: priorities.get(item_key(it), 0), reverse=True)
    return to_sync, unchanged, priorities


def calculate_sync_stats(total_items: int, changed_items: int, duration_ms: float) -> Dict[str, float]:
    if total_items <= 0:
        return {"change_rate": 0.0, "items_per_second": 0.0, "estimated_full_sync_seconds": 0.0, "efficiency_gain": 0.0}
    seconds = max(duration_ms, 1) / 1000.0
    items_per_second = changed_items / seconds
    return {
        "change_rate": round(changed_items / total_items * 100, 2),
        "items_per_second": round(items_per_second, 2),
        "estimated_full_sync_seconds": round(total_items / items_per_second, 2) if items_per_second else 0.0,
        "efficiency_gain": round((total_items - changed_items) / total_items * 100, 2),
    }
