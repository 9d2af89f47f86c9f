"""
Dashboard aggregates.

Each view is cached in Redis under its own key; builders read the shared
inventory snapshot so status counts always agree with the inventory list.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from services import cache, inventory_service, purchase_order_store, sync_log_store, vendor_store
from services.db import iso, parse_iso, utc_now
from services.inventory_calculations import summarize
from services.settings_store import get_settings_store

LOGGER = logging.getLogger(__name__)

PENDING_PO_STATUSES = ("draft", "pending_approval", "approved", "sent", "partial")
TREND_PERIODS = (7, 30, 60, 90)
NO_RECENT_ORDER_DAYS = 60


def _cached(key: str, ttl: int, builder: Callable[[], Any], force_refresh: bool = False) -> Tuple[Any, str]:
    if not force_refresh:
        hit = cache.get_json(key)
        if hit is not None:
            return hit, "hit"
    value = builder()
    cache.set_json(key, value, ttl)
    return value, "miss"


def _last_sync_time() -> Optional[str]:
    settings = get_settings_store().get()
    if settings.get("last_sync_time"):
        return settings["last_sync_time"]
    last = sync_log_store.get_last_successful()
    return last.get("completed_at") if last else None


# ----------------------------
# Metrics
# ----------------------------
def _build_metrics() -> Dict[str, Any]:
    items, _ = inventory_service.load_inventory()
    summary = summarize(items)
    velocities = [float(i.get("sales_velocity") or 0) for i in items if float(i.get("sales_velocity") or 0) > 0]
    counts = purchase_order_store.status_counts()
    return {
        "totalInventoryValue": summary["total_inventory_value"],
        "totalSKUs": summary["total_items"],
        "criticalItems": summary["critical_count"],
        "lowStockItems": summary["low_stock_count"],
        "healthyItems": summary["adequate_count"],
        "overstockedItems": summary["overstocked_count"],
        "outOfStockItems": summary["out_of_stock_count"],
        "averageSalesVelocity": round(sum(velocities) / len(velocities), 2) if velocities else 0.0,
        "totalPendingPOs": sum(counts.get(s, 0) for s in PENDING_PO_STATUSES),
        "lastSyncTime": _last_sync_time(),
    }


def get_metrics(force_refresh: bool = False) -> Tuple[Dict[str, Any], str]:
    return _cached(cache.DASHBOARD_METRICS_KEY, cache.DASHBOARD_METRICS_TTL, _build_metrics, force_refresh)


# ----------------------------
# Critical items
# ----------------------------
def _action_for(item: Dict[str, Any]) -> str:
    stock = float(item.get("current_stock") or 0)
    days = item.get("days_until_stockout")
    if stock <= 0:
        return "URGENT: Out of stock - create PO immediately"
    if days is not None and days <= 7:
        return "URGENT: Create PO immediately"
    if days is not None and days <= 14:
        return "Create PO this week"
    return "Review stock levels and plan reorder"


def _build_critical_items(limit: int) -> Dict[str, Any]:
    items, _ = inventory_service.load_inventory()
    flagged = [i for i in items if i.get("stock_status_level") in ("critical", "low")]
    # No-velocity items (days unknown) sort after every item with a stockout estimate.
    flagged.sort(key=lambda i: (i.get("days_until_stockout") is None, i.get("days_until_stockout") or 0, i["sku"]))
    rows = [
        {
            "id": item.get("id"),
            "sku": item["sku"],
            "product_name": item.get("product_name") or "Unknown Product",
            "current_stock": item.get("current_stock"),
            "sales_velocity": item.get("sales_velocity"),
            "days_until_stockout": item.get("days_until_stockout"),
            "reorder_point": item.get("reorder_point"),
            "vendor": item.get("vendor") or "Unknown",
            "status": item["stock_status_level"],
            "action_required": _action_for(item),
        }
        for item in flagged
    ]
    return {"items": rows[:limit], "total": len(rows), "showing": min(limit, len(rows))}


def get_critical_items(limit: int = 20, force_refresh: bool = False) -> Tuple[Dict[str, Any], str]:
    return _cached(
        cache.critical_items_key(limit),
        cache.CRITICAL_ITEMS_TTL,
        lambda: _build_critical_items(limit),
        force_refresh,
    )


# ----------------------------
# Vendor stats
# ----------------------------
def _build_vendor_stats(limit: int) -> Dict[str, Any]:
    now = utc_now()
    items, _ = inventory_service.load_inventory()
    vendors = vendor_store.list_vendors()
    spend = purchase_order_store.totals_by_vendor()
    by_vendor: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        if item.get("vendor"):
            by_vendor.setdefault(item["vendor"], []).append(item)

    names = {v["name"] for v in vendors} | set(by_vendor)
    rows_by_name = {v["name"]: v for v in vendors}
    stats: List[Dict[str, Any]] = []
    alerts: List[Dict[str, Any]] = []
    for name in sorted(names):
        vendor = rows_by_name.get(name, {})
        vendor_items = by_vendor.get(name, [])
        critical = sum(1 for i in vendor_items if i.get("stock_status_level") == "critical")
        orders = spend.get(name, {})
        last_order = orders.get("last_order_at")
        stats.append(
            {
                "id": vendor.get("id"),
                "name": name,
                "totalOrders": int(orders.get("po_count") or 0),
                "totalSpent": round(float(orders.get("total_spend") or 0), 2),
                "leadTimeDays": vendor.get("lead_time_days"),
                "itemsSupplied": len(vendor_items),
                "criticalItems": critical,
                "lastOrderDate": last_order,
            }
        )
        if critical:
            alerts.append(
                {
                    "vendor": name,
                    "issue": f"{critical} critical items need ordering",
                    "severity": "high" if critical > 3 else "medium",
                }
            )
        last = parse_iso(last_order)
        if vendor_items and last is not None and now - last > timedelta(days=NO_RECENT_ORDER_DAYS):
            alerts.append({"vendor": name, "issue": f"No orders in {NO_RECENT_ORDER_DAYS}+ days", "severity": "low"})

    stats.sort(key=lambda s: (-s["totalSpent"], -s["itemsSupplied"], s["name"]))

    def _best(key: str, reverse: bool = True) -> Optional[Dict[str, Any]]:
        candidates = [s for s in stats if s.get(key) is not None]
        if not candidates:
            return None
        pick = sorted(candidates, key=lambda s: s[key], reverse=reverse)[0]
        return {"vendor": pick["name"], "value": pick[key]}

    return {
        "topVendors": stats[:limit],
        "performanceMetrics": {
            "bestLeadTime": _best("leadTimeDays", reverse=False),
            "highestVolume": _best("totalOrders"),
            "mostCriticalSupplier": _best("criticalItems"),
        },
        "alerts": alerts,
        "totalVendors": len(stats),
    }


def get_vendor_stats(limit: int = 10, force_refresh: bool = False) -> Tuple[Dict[str, Any], str]:
    return _cached(
        cache.vendor_stats_key(limit),
        cache.VENDOR_STATS_TTL,
        lambda: _build_vendor_stats(limit),
        force_refresh,
    )


# ----------------------------
# PO summary
# ----------------------------
def _build_po_summary() -> Dict[str, Any]:
    now = utc_now()
    pos = purchase_order_store.list_purchase_orders()
    counts = purchase_order_store.status_counts()
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)
    pending_value = sum(float(p.get("total_amount") or 0) for p in pos if p["status"] in PENDING_PO_STATUSES)
    processing_days = [
        (parse_iso(p["sent_at"]) - parse_iso(p["created_at"])).total_seconds() / 86400
        for p in pos
        if p.get("sent_at") and parse_iso(p.get("created_at"))
    ]
    upcoming = sorted(
        (p for p in pos if p["status"] in ("approved", "sent", "partial") and p.get("expected_date")),
        key=lambda p: p["expected_date"],
    )[:5]
    return {
        "statusCounts": counts,
        "recentActivity": [
            {
                "id": p["id"],
                "order_number": p["order_number"],
                "vendor_name": p.get("vendor_name"),
                "total_amount": p.get("total_amount"),
                "status": p["status"],
                "created_at": p.get("created_at"),
                "item_count": len(p.get("items") or []),
            }
            for p in pos[:10]
        ],
        "upcomingDeliveries": [
            {
                "order_number": p["order_number"],
                "vendor_name": p.get("vendor_name"),
                "expected_date": p["expected_date"],
                "total_amount": p.get("total_amount"),
                "status": p["status"],
            }
            for p in upcoming
        ],
        "metrics": {
            "totalPendingValue": round(pending_value, 2),
            "averageProcessingDays": round(sum(processing_days) / len(processing_days), 1) if processing_days else None,
            "createdThisWeek": sum(1 for p in pos if (parse_iso(p.get("created_at")) or now) >= week_ago),
            "createdThisMonth": sum(1 for p in pos if (parse_iso(p.get("created_at")) or now) >= month_ago),
        },
    }


def get_po_summary(force_refresh: bool = False) -> Tuple[Dict[str, Any], str]:
    return _cached(cache.DASHBOARD_PO_SUMMARY_KEY, cache.PO_SUMMARY_TTL, _build_po_summary, force_refresh)


# ----------------------------
# Trends
# ----------------------------
def _build_trends(days: int) -> Dict[str, Any]:
    now = utc_now()
    start = (now - timedelta(days=days - 1)).date()
    buckets: Dict[str, Dict[str, Any]] = {}
    for offset in range(days):
        day = (start + timedelta(days=offset)).isoformat()
        buckets[day] = {"date": day, "syncs": 0, "successfulSyncs": 0, "failedSyncs": 0, "itemsProcessed": 0, "posCreated": 0}

    for log in sync_log_store.logs_since(now - timedelta(days=days)):
        started = parse_iso(log["synced_at"])
        bucket = buckets.get(started.date().isoformat()) if started else None
        if bucket is None:
            continue
        bucket["syncs"] += 1
        if log["status"] == "success":
            bucket["successfulSyncs"] += 1
        elif log["status"] == "error":
            bucket["failedSyncs"] += 1
        bucket["itemsProcessed"] += int(log.get("items_processed") or 0)

    for po in purchase_order_store.list_purchase_orders():
        created = parse_iso(po.get("created_at"))
        bucket = buckets.get(created.date().isoformat()) if created else None
        if bucket is not None:
            bucket["posCreated"] += 1

    items, _ = inventory_service.load_inventory()
    summary = summarize(items)
    healthy = summary["adequate_count"] + summary["overstocked_count"]
    return {
        "period": days,
        "daily": list(buckets.values()),
        "current": {
            "inventoryValue": summary["total_inventory_value"],
            "criticalItems": summary["critical_count"],
            "stockHealth": round(healthy / summary["total_items"] * 100, 1) if summary["total_items"] else 100.0,
        },
    }


def get_trends(period: int = 30, force_refresh: bool = False) -> Tuple[Dict[str, Any], str]:
    if period not in TREND_PERIODS:
        raise ValueError(f"period must be one of {TREND_PERIODS}")
    return _cached(cache.trends_key(str(period)), cache.TRENDS_TTL, lambda: _build_trends(period), force_refresh)


# ----------------------------
# Live updates (never cached)
# ----------------------------
def get_live_updates(since: Optional[str] = None) -> Dict[str, Any]:
    now = utc_now()
    since_dt = parse_iso(since) or (now - timedelta(minutes=5))
    updates: List[Dict[str, Any]] = []
    for log in sync_log_store.logs_since(since_dt)[-5:]:
        severity = {"success": "success", "error": "error", "partial": "warning"}.get(log["status"], "info")
        updates.append(
            {
                "timestamp": log.get("completed_at") or log["synced_at"],
                "type": "sync",
                "message": f"Sync {log['status']}: {log['sync_type']}",
                "severity": severity,
                "details": {"items_processed": log.get("items_processed"), "duration_ms": log.get("duration_ms")},
            }
        )
    for entry in purchase_order_store.recent_audit_logs(iso(since_dt), limit=10):
        updates.append(
            {
                "timestamp": entry["created_at"],
                "type": "po" if entry["entity_type"] == "purchase_order" else entry["entity_type"],
                "message": f"{entry['action']} {entry['entity_type']} {entry['entity_id']}",
                "severity": "info",
                "details": entry.get("details"),
            }
        )
    critical, _ = get_critical_items(limit=5)
    for item in critical["items"]:
        if item["status"] == "critical":
            updates.append(
                {
                    "timestamp": iso(now),
                    "type": "alert",
                    "message": f"Critical stock alert: {item['sku']}",
                    "severity": "error",
                    "details": {"current_stock": item["current_stock"], "days_remaining": item["days_until_stockout"]},
                }
            )
    updates.sort(key=lambda u: u["timestamp"] or "", reverse=True)
    return {"updates": updates, "since": iso(since_dt), "timestamp": iso(now)}
