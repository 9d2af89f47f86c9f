from datetime import datetime, timedelta, timezone

from services.change_detection import (
    NEW_ITEM_PRIORITY,
    calculate_sync_stats,
    detect_changes,
    filter_changed_items,
    generate_item_hash,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _item(**overrides):
    item = {"sku": "SKU-1", "current_stock": 50, "cost": 4.0, "reorder_point": 10, "vendor": "Acme", "location": "Shipping"}
    item.update(overrides)
    return item


def test_hash_ignores_unmonitored_fields_and_aliases():
    base = _item()
    assert generate_item_hash(base) == generate_item_hash({**base, "product_name": "Renamed"})
    finale_shaped = {"sku": "SKU-1", "quantityOnHand": 50, "unitCost": 4, "reorderLevel": 10, "supplier": "Acme", "facility": "Shipping"}
    assert generate_item_hash(base) == generate_item_hash(finale_shaped)


def test_unchanged_item_has_zero_priority():
    item = _item()
    result = detect_changes(item, generate_item_hash(item), NOW.isoformat(), now=NOW)
    assert result == {"has_changed": False, "changed_fields": [], "priority": 0, "hash": generate_item_hash(item)}


def test_out_of_stock_change_gets_top_priority():
    previous = _item()
    current = _item(current_stock=0)
    result = detect_changes(current, generate_item_hash(previous), NOW.isoformat(), previous, now=NOW)
    assert result["has_changed"]
    assert result["changed_fields"] == ["stock"]
    assert result["priority"] == 10


def test_staleness_raises_priority():
    previous = _item()
    current = _item(cost=5.0)
    fresh = detect_changes(current, generate_item_hash(previous), (NOW - timedelta(hours=1)).isoformat(), now=NOW)
    stale = detect_changes(current, generate_item_hash(previous), (NOW - timedelta(hours=12)).isoformat(), now=NOW)
    very_stale = detect_changes(current, generate_item_hash(previous), (NOW - timedelta(days=3)).isoformat(), now=NOW)
    assert (fresh["priority"], stale["priority"], very_stale["priority"]) == (5, 6, 7)


def test_filter_changed_items_partitions_and_orders():
    stored_same = _item(sku="SAME")
    stored_low = _item(sku="LOW")
    existing = {
        "SAME": {**stored_same, "content_hash": generate_item_hash(stored_same), "last_synced_at": NOW.isoformat()},
        "LOW": {**stored_low, "content_hash": generate_item_hash(stored_low), "last_synced_at": NOW.isoformat()},
    }
    items = [_item(sku="SAME"), _item(sku="NEW"), _item(sku="LOW", current_stock=5)]

    to_sync, unchanged, priorities = filter_changed_items(items, existing, now=NOW)

    assert unchanged == 1
    assert [i["sku"] for i in to_sync] == ["LOW", "NEW"]
    assert priorities == {"LOW": 9, "NEW": NEW_ITEM_PRIORITY}


def test_force_sync_returns_everything():
    items = [_item(sku="A"), _item(sku="B")]
    to_sync, unchanged, priorities = filter_changed_items(items, {}, force_sync=True)
    assert len(to_sync) == 2 and unchanged == 0 and priorities == {}


def test_sync_stats():
    assert calculate_sync_stats(0, 0, 10)["change_rate"] == 0.0
    stats = calculate_sync_stats(100, 25, 1000)
    assert stats["change_rate"] == 25.0
    assert stats["efficiency_gain"] == 75.0
    assert stats["items_per_second"] == 25.0
