"""
Purchase-order generation from inventory needs.

generate_purchase_orders() creates draft POs, one per vendor, for a
selection of items (critical, out of stock, at reorder point, or a manual
list). build_suggestions() is the read-only EOQ-based counterpart.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from services import inventory_store, purchase_order_store, vendor_store
from services.db import iso, utc_now
from services.inventory_calculations import calculate_sales_velocity, days_until_stockout, stock_status_for

LOGGER = logging.getLogger(__name__)

GENERATION_TYPES = ("critical", "out_of_stock", "reorder_point", "manual")
DEFAULT_LEAD_TIME_DAYS = 7
LEAD_TIME_BUFFER = 1.5
ORDER_COST = 50.0
HOLDING_COST_RATE = 0.25
TARGET_COVERAGE_DAYS = 45
EXPECTED_DELIVERY_DAYS = 7
UNKNOWN_VENDOR = "Unknown Vendor"
_URGENCY_ORDER = ("critical", "high", "medium", "low")


class GenerationError(ValueError):
    """Raised for generation requests that cannot be satisfied as asked."""


def urgency_for(days: float) -> str:
    if days <= 7:
        return "critical"
    if days <= 14:
        return "high"
    if days <= 30:
        return "medium"
    return "low"


def overall_urgency(urgencies: Iterable[str]) -> str:
    present = set(urgencies)
    for level in _URGENCY_ORDER:
        if level in present:
            return level
    return "low"


def round_to_increment(quantity: float, increment: int = 1) -> int:
    increment = max(1, int(increment or 1))
    return int(math.ceil(quantity / increment) * increment)


def order_quantity(item: Mapping[str, Any], lead_time_days: int = DEFAULT_LEAD_TIME_DAYS, increment: int = 1) -> int:
    """max(reorder quantity, 1, velocity x lead time x 1.5), rounded up to the order increment."""
    velocity = calculate_sales_velocity(item)
    quantity = max(
        float(item.get("reorder_quantity") or 0),
        1.0,
        math.ceil(velocity * lead_time_days * LEAD_TIME_BUFFER),
    )
    return round_to_increment(quantity, increment)


def economic_order_quantity(annual_demand: float, unit_cost: float) -> int:
    if annual_demand <= 0:
        return 0
    holding = (unit_cost or 10.0) * HOLDING_COST_RATE
    return int(math.ceil(math.sqrt(2 * annual_demand * ORDER_COST / holding)))


def suggested_quantity(item: Mapping[str, Any], lead_time_days: int = DEFAULT_LEAD_TIME_DAYS) -> int:
    """Median of EOQ, coverage, reorder quantity and the reorder-gap estimate."""
    velocity = calculate_sales_velocity(item)
    if velocity <= 0:
        return max(1, int(float(item.get("reorder_quantity") or 0)))
    sales90 = float(item.get("sales_last_90_days") or 0) / 90.0
    variance = abs(velocity - (sales90 or velocity))
    safety = math.ceil(variance * lead_time_days * 2)
    buffer = math.ceil(velocity * lead_time_days * LEAD_TIME_BUFFER)
    candidates = sorted(
        [
            economic_order_quantity(velocity * 365, float(item.get("cost") or 0)),
            math.ceil(velocity * TARGET_COVERAGE_DAYS),
            float(item.get("reorder_quantity") or 0),
            float(item.get("reorder_point") or 0) - float(item.get("current_stock") or 0) + buffer + safety,
        ]
    )
    quantity = candidates[len(candidates) // 2]
    if quantity > 100:
        quantity = math.ceil(quantity / 10) * 10
    return max(1, int(math.ceil(quantity)))


def _eligible(item: Mapping[str, Any]) -> bool:
    return bool(item.get("active", True)) and not item.get("discontinued")


def select_items(generation_type: str) -> List[Dict[str, Any]]:
    items = [i for i in inventory_store.list_items() if _eligible(i)]
    if generation_type == "out_of_stock":
        return [i for i in items if float(i.get("current_stock") or 0) <= 0]
    if generation_type == "critical":
        return [i for i in items if stock_status_for(i) == "critical"]
    if generation_type == "reorder_point":
        return [
            i
            for i in items
            if float(i.get("current_stock") or 0) <= float(i.get("reorder_point") or 0)
            or stock_status_for(i) in ("critical", "low")
        ]
    raise GenerationError(f"Unknown generation type: {generation_type}")


def _line_item(item: Mapping[str, Any], quantity: int) -> Dict[str, Any]:
    velocity = calculate_sales_velocity(item)
    days = days_until_stockout(item.get("current_stock"), velocity)
    unit_cost = float(item.get("cost") or 0)
    return {
        "inventory_item_id": item.get("id"),
        "sku": item["sku"],
        "product_name": item.get("product_name"),
        "quantity": quantity,
        "unit_cost": unit_cost,
        "total_cost": round(quantity * unit_cost, 2),
        "current_stock": item.get("current_stock"),
        "sales_velocity": round(velocity, 4),
        "days_until_stockout": None if math.isinf(days) else round(days, 1),
        "urgency_level": urgency_for(days),
    }


def _group_by_vendor(items: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    groups: Dict[str, List[Mapping[str, Any]]] = {}
    for item in items:
        groups.setdefault(item.get("vendor") or UNKNOWN_VENDOR, []).append(item)
    return groups


def generate_purchase_orders(
    generation_type: str,
    *,
    vendor_id: Optional[int] = None,
    manual_items: Optional[List[Mapping[str, Any]]] = None,
    created_by: str = "system",
) -> Dict[str, Any]:
    if generation_type not in GENERATION_TYPES:
        raise GenerationError(f"Unknown generation type: {generation_type}")

    overrides: Dict[int, int] = {}
    if generation_type == "manual":
        if not manual_items:
            raise GenerationError("Items are required for manual PO generation")
        overrides = {int(m["inventory_item_id"]): int(math.ceil(float(m["quantity"]))) for m in manual_items}
        items = inventory_store.get_items_by_ids(overrides)
    else:
        items = select_items(generation_type)

    if not items:
        return {"message": "No items need ordering at this time", "purchase_orders": [], "summary": _summary([])}

    vendors = vendor_store.vendors_by_name()
    created: List[Dict[str, Any]] = []
    for vendor_name, group in _group_by_vendor(items).items():
        vendor = vendors.get(vendor_name)
        if vendor_id is not None and (vendor is None or vendor["id"] != vendor_id):
            continue
        lead_time = int((vendor or {}).get("lead_time_days") or DEFAULT_LEAD_TIME_DAYS)
        lines = [
            _line_item(item, overrides.get(item["id"]) or order_quantity(item, lead_time))
            for item in sorted(group, key=lambda i: i["sku"])
        ]
        urgency = overall_urgency(line["urgency_level"] for line in lines)
        po = purchase_order_store.create_purchase_order(
            {
                "vendor_id": vendor["id"] if vendor else None,
                "vendor_name": vendor_name,
                "vendor_email": (vendor or {}).get("email"),
                "status": "draft",
                "items": lines,
                "urgency_level": urgency,
                "auto_generated": True,
                "created_by": created_by,
                "notes": f"Auto-generated PO for {generation_type} items",
                "expected_date": iso(utc_now() + timedelta(days=max(lead_time, EXPECTED_DELIVERY_DAYS))),
            }
        )
        purchase_order_store.add_audit_log(
            "AUTO_GENERATE",
            "purchase_order",
            po["id"],
            {"generation_type": generation_type, "item_count": len(lines), "urgency_level": urgency},
            user_id=created_by,
        )
        created.append(po)

    LOGGER.info("[POGeneration] %s: created %d POs from %d items", generation_type, len(created), len(items))
    return {
        "message": f"Generated {len(created)} purchase order(s)",
        "purchase_orders": created,
        "summary": _summary(created),
    }


def _summary(pos: List[Mapping[str, Any]]) -> Dict[str, Any]:
    return {
        "total_pos": len(pos),
        "total_items": sum(len(po.get("items") or []) for po in pos),
        "total_value": round(sum(float(po.get("total_amount") or 0) for po in pos), 2),
    }


def build_suggestions(vendor: Optional[str] = None, urgency: Optional[str] = None) -> Dict[str, Any]:
    """EOQ-based reorder suggestions grouped by vendor, most urgent first. Nothing is written."""
    items = select_items("reorder_point")
    vendors = vendor_store.vendors_by_name()
    suggestions = []
    for vendor_name, group in _group_by_vendor(items).items():
        if vendor and vendor_name.lower() != vendor.lower():
            continue
        vendor_row = vendors.get(vendor_name) or {}
        lead_time = int(vendor_row.get("lead_time_days") or DEFAULT_LEAD_TIME_DAYS)
        lines = [_line_item(item, suggested_quantity(item, lead_time)) for item in group]
        if urgency:
            lines = [line for line in lines if line["urgency_level"] == urgency]
        if not lines:
            continue
        lines.sort(key=lambda l: (l["days_until_stockout"] is None, l["days_until_stockout"] or 0))
        days = [line["days_until_stockout"] for line in lines if line["days_until_stockout"] is not None]
        suggestions.append(
            {
                "vendor_id": vendor_row.get("id"),
                "vendor_name": vendor_name,
                "vendor_email": vendor_row.get("email"),
                "items": lines,
                "total_items": len(lines),
                "total_amount": round(sum(line["total_cost"] for line in lines), 2),
                "urgency_level": overall_urgency(line["urgency_level"] for line in lines),
                "estimated_stockout_days": min(days) if days else None,
            }
        )
    suggestions.sort(key=lambda s: (_URGENCY_ORDER.index(s["urgency_level"]), -s["total_amount"]))
    return {
        "suggestions": suggestions,
        "summary": {
            "total_vendors": len(suggestions),
            "total_items": sum(s["total_items"] for s in suggestions),
            "total_value": round(sum(s["total_amount"] for s in suggestions), 2),
            "critical_vendors": sum(1 for s in suggestions if s["urgency_level"] == "critical"),
        },
    }
