"""
Cache-first inventory reads.

The full enriched list lives in Redis under inventory:full; filtering,
sorting and pagination happen here in memory. That keeps reads to a single
cache hit, at the cost of holding the whole catalog per request.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from services import cache, inventory_store
from services.inventory_calculations import STOCK_STATUSES, enrich_items, summarize

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "sku",
    "product_name",
    "current_stock",
    "cost",
    "reorder_point",
    "vendor",
    "location",
    "sales_velocity",
    "sales_last_30_days",
    "days_until_stockout",
    "stock_status_level",
    "inventory_value",
    "last_updated",
}
STATUS_FILTERS = set(STOCK_STATUSES) | {"out_of_stock", "in_stock", "reorder", "all"}
MAX_LIMIT = 1000
# critical sorts first when sorting by status ascending
_STATUS_RANK = {"critical": 0, "low": 1, "adequate": 2, "overstocked": 3}


def load_inventory(force_refresh: bool = False) -> Tuple[List[Dict[str, Any]], str]:
    """Return (enriched items, 'hit' | 'miss')."""
    if not force_refresh:
        cached = cache.get_inventory_snapshot()
        if cached is not None:
            return cached, "hit"
    items = enrich_items(inventory_store.list_items())
    cache.set_inventory_snapshot(items, source="database")
    logger.info("[Inventory] cache %s; loaded %d items from database", "refresh" if force_refresh else "miss", len(items))
    return items, "miss"


def invalidate() -> None:
    cache.delete(cache.INVENTORY_KEY)
    cache.invalidate_dashboard()


def _matches_status(item: Dict[str, Any], status: str) -> bool:
    if status == "all":
        return True
    stock = float(item.get("current_stock") or 0)
    if status == "out_of_stock":
        return stock <= 0
    if status == "in_stock":
        return stock > 0
    if status == "reorder":
        return bool(item.get("reorder_recommended"))
    return item.get("stock_status_level") == status


def filter_items(
    items: List[Dict[str, Any]],
    *,
    status: Optional[str] = None,
    vendor: Optional[str] = None,
    location: Optional[str] = None,
    search: Optional[str] = None,
) -> List[Dict[str, Any]]:
    out = items
    if status:
        out = [i for i in out if _matches_status(i, status)]
    if vendor:
        wanted = vendor.strip().lower()
        out = [i for i in out if (i.get("vendor") or "").lower() == wanted]
    if location:
        wanted = location.strip().lower()
        out = [i for i in out if (i.get("location") or "").lower() == wanted]
    if search:
        needle = search.strip().lower()
        out = [
            i
            for i in out
            if needle in (i.get("sku") or "").lower()
            or needle in (i.get("product_name") or "").lower()
            or needle in (i.get("vendor") or "").lower()
        ]
    return out


def sort_items(items: List[Dict[str, Any]], sort_by: str = "product_name", direction: str = "asc") -> List[Dict[str, Any]]:
    if sort_by not in SORTABLE_FIELDS:
        sort_by = "product_name"
    reverse = direction == "desc"

    def key(item: Dict[str, Any]):
        value = item.get(sort_by)
        if sort_by == "stock_status_level":
            value = _STATUS_RANK.get(value)
        if value is None:
            return (1, 0)
        if isinstance(value, str):
            return (0, value.lower())
        return (0, value)

    present = [i for i in items if key(i)[0] == 0]
    missing = [i for i in items if key(i)[0] == 1]
    # Missing values always go last, whichever direction.
    return sorted(present, key=key, reverse=reverse) + missing


def paginate(items: List[Dict[str, Any]], page: int, limit: int) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    limit = max(1, min(int(limit), MAX_LIMIT))
    total = len(items)
    total_pages = max(1, math.ceil(total / limit))
    page = max(1, int(page))
    start = (page - 1) * limit
    return items[start : start + limit], {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasMore": start + limit < total,
    }


def list_inventory(
    *,
    page: int = 1,
    limit: int = 100,
    status: Optional[str] = None,
    vendor: Optional[str] = None,
    location: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "product_name",
    sort_direction: str = "asc",
    force_refresh: bool = False,
) -> Dict[str, Any]:
    items, cache_status = load_inventory(force_refresh)
    filtered = filter_items(items, status=status, vendor=vendor, location=location, search=search)
    ordered = sort_items(filtered, sort_by, sort_direction)
    page_items, pagination = paginate(ordered, page, limit)
    summary = summarize(items)
    summary["filtered_count"] = len(filtered)
    summary["vendors"] = sorted({i["vendor"] for i in items if i.get("vendor")})
    summary["locations"] = sorted({i["location"] for i in items if i.get("location")})
    return {
        "inventory": page_items,
        "pagination": pagination,
        "summary": summary,
        "cacheStatus": cache_status,
    }
