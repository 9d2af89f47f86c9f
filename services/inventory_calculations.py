"""
Inventory business calculations.

determine_stock_status() is the one place stock status is derived. Every
endpoint that reports a status (inventory list, dashboard metrics,
critical items, PO generation) goes through it.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

STOCK_STATUSES = ("critical", "low", "adequate", "overstocked")

CRITICAL_DAYS = 7
LOW_DAYS = 30
OVERSTOCK_DAYS = 180
REORDER_WINDOW_DAYS = 14


def _num(value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    return out if math.isfinite(out) else 0.0


def calculate_sales_velocity(item: Mapping[str, Any]) -> float:
    """Units per day: stored velocity when present, else the 30-day average."""
    stored = _num(item.get("sales_velocity"))
    if stored > 0:
        return stored
    return _num(item.get("sales_last_30_days")) / 30.0


def days_until_stockout(current_stock: Any, sales_velocity: Any) -> float:
    stock = _num(current_stock)
    velocity = _num(sales_velocity)
    if stock <= 0:
        return 0.0
    if velocity <= 0:
        return math.inf
    return stock / velocity


def determine_stock_status(current_stock: Any, reorder_point: Any, sales_velocity: Any) -> str:
    """
    Classify stock as critical, low, adequate or overstocked.

    - out of stock, or 7 days of cover or less -> critical
    - at/below the reorder point, or 30 days of cover or less -> low
    - more than 180 days of cover at a non-zero velocity -> overstocked
    - otherwise adequate
    """
    stock = _num(current_stock)
    if stock <= 0:
        return "critical"
    days = days_until_stockout(stock, sales_velocity)
    if days <= CRITICAL_DAYS:
        return "critical"
    if stock <= _num(reorder_point) or days <= LOW_DAYS:
        return "low"
    if math.isfinite(days) and days > OVERSTOCK_DAYS:
        return "overstocked"
    return "adequate"


def stock_status_for(item: Mapping[str, Any]) -> str:
    return determine_stock_status(
        item.get("current_stock"),
        item.get("reorder_point"),
        calculate_sales_velocity(item),
    )


def calculate_trend(item: Mapping[str, Any]) -> str:
    sales30 = _num(item.get("sales_last_30_days"))
    sales90 = _num(item.get("sales_last_90_days"))
    recent = sales30 / 30.0
    previous = (sales90 - sales30) / 60.0
    if previous == 0:
        return "stable"
    ratio = (recent - previous) / previous
    if ratio > 0.1:
        return "increasing"
    if ratio < -0.1:
        return "decreasing"
    return "stable"


def should_reorder(item: Mapping[str, Any]) -> bool:
    status = stock_status_for(item)
    velocity = calculate_sales_velocity(item)
    days = days_until_stockout(item.get("current_stock"), velocity)
    return status == "critical" or (status == "low" and days <= REORDER_WINDOW_DAYS)


def inventory_value(item: Mapping[str, Any]) -> float:
    return _num(item.get("current_stock")) * _num(item.get("cost"))


def velocity_category(velocity: float) -> str:
    if velocity > 1:
        return "fast"
    if velocity > 0.1:
        return "medium"
    if velocity > 0:
        return "slow"
    return "dead"


def _json_days(days: float) -> Optional[float]:
    # JSON has no Infinity; no-velocity items report null.
    if not math.isfinite(days):
        return None
    return round(days, 1)


def enrich_item(item: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of an inventory row with the derived fields attached."""
    out = dict(item)
    velocity = calculate_sales_velocity(item)
    days = days_until_stockout(item.get("current_stock"), velocity)
    out["sales_velocity"] = round(velocity, 4)
    out["days_until_stockout"] = _json_days(days)
    out["stock_status_level"] = determine_stock_status(
        item.get("current_stock"), item.get("reorder_point"), velocity
    )
    out["trend"] = calculate_trend(item)
    out["reorder_recommended"] = should_reorder(item)
    out["inventory_value"] = round(inventory_value(item), 2)
    return out


def enrich_items(items: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return [enrich_item(item) for item in items]


def summarize(items: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Counts per status plus totals over already-enriched items."""
    counts = {status: 0 for status in STOCK_STATUSES}
    total_value = 0.0
    total = 0
    out_of_stock = 0
    for item in items:
        total += 1
        status = item.get("stock_status_level") or stock_status_for(item)
        counts[status] = counts.get(status, 0) + 1
        total_value += inventory_value(item)
        if _num(item.get("current_stock")) <= 0:
            out_of_stock += 1
    return {
        "total_items": total,
        "critical_count": counts["critical"],
        "low_stock_count": counts["low"],
        "adequate_count": counts["adequate"],
        "overstocked_count": counts["overstocked"],
        "out_of_stock_count": out_of_stock,
        "total_inventory_value": round(total_value, 2),
    }
