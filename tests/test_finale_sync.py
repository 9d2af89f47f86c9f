import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

import config
from services import cache, finale_sync, inventory_store, sync_log_store, sync_monitoring, vendor_store
from services import db as db_service
from services.change_detection import generate_item_hash
from services.finale_api import FinaleApiError, transform_product
from services.settings_store import get_settings_store


class _FakeClient:
    def __init__(self, products=(), error=None, vendors=(), levels=None, gate=None):
        self.products = list(products)
        self.error = error
        self.vendors = list(vendors)
        self.levels = levels or {}
        self.gate = gate
        self.product_calls = 0
        self.vendor_calls = 0

    def get_products(self, filter_year=None):
        self.product_calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return list(self.products)

    def get_inventory_levels(self):
        if self.error is not None:
            raise self.error
        return dict(self.levels)

    def get_vendors(self):
        self.vendor_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.vendors)


def _products():
    return [
        {"productId": "P1", "productName": "Widget", "quantityOnHand": 40, "averageCost": 2, "primarySupplierName": "Acme", "salesLast30Days": 30},
        {"productId": "P2", "productName": "Gadget", "quantityOnHand": 0, "averageCost": 5, "primarySupplierName": "Acme"},
        {"productId": "P3", "productName": "Doohickey", "quantityOnHand": 500, "averageCost": 1, "primarySupplierName": "Beta"},
    ]


def _backdate(sync_id, minutes):
    db_service.execute_write(
        "UPDATE sync_logs SET synced_at = :t WHERE id = :id",
        {"t": db_service.iso(db_service.utc_now() - timedelta(minutes=minutes)), "id": sync_id},
    )


def test_full_sync_writes_items_and_closes_log(tmp_db):
    result = finale_sync.run_sync("full", client=_FakeClient(_products()))

    assert result["status"] == "success"
    assert result["items_processed"] == 3
    assert result["items_updated"] == 3
    assert inventory_store.count_items() == 3
    row = sync_log_store.get_sync(result["sync_id"])
    assert row["status"] == "success"
    assert row["active_marker"] is None
    assert row["completed_at"] is not None
    assert len(cache.get_inventory_snapshot()) == 3
    assert get_settings_store().get()["last_sync_time"] is not None


def test_upstream_failure_writes_nothing(tmp_db):
    client = _FakeClient(error=FinaleApiError("Finale API error: 500 - boom", status_code=500))

    with pytest.raises(finale_sync.SyncError) as excinfo:
        finale_sync.run_sync("full", client=client)

    assert isinstance(excinfo.value.__cause__, FinaleApiError)
    assert inventory_store.count_items() == 0
    latest = sync_log_store.get_latest()
    assert latest["status"] == "error"
    assert "500" in latest["errors"][0]
    assert sync_log_store.get_running() == []


def test_second_sync_is_refused_while_one_runs(tmp_db):
    running = sync_log_store.start_sync(sync_log_store.INVENTORY_SYNC)
    client = _FakeClient(_products())

    with pytest.raises(finale_sync.SyncAlreadyRunningError) as excinfo:
        finale_sync.run_sync("full", client=client)

    assert excinfo.value.running["id"] == running["id"]
    assert client.product_calls == 0
    assert sync_log_store.start_sync(sync_log_store.INVENTORY_SYNC) is None
    # other sync types are not blocked
    assert sync_log_store.start_sync(sync_log_store.VENDOR_SYNC) is not None


def test_smart_sync_skips_unchanged_items(tmp_db):
    synced_at = db_service.now_iso()
    records = [transform_product(p, synced_at) for p in _products()]
    for record in records:
        record["content_hash"] = generate_item_hash(record)
    inventory_store.upsert_items(records)

    products = _products()
    products[2]["quantityOnHand"] = 450
    result = finale_sync.run_sync("smart", client=_FakeClient(products))

    assert result["effective_strategy"] == "full"
    assert result["items_processed"] == 3
    assert result["items_updated"] == 1
    assert result["unchanged"] == 2
    assert inventory_store.get_by_sku("P3")["current_stock"] == 450


def test_smart_strategy_choice():
    now = db_service.utc_now()

    def last(hours):
        return {"completed_at": db_service.iso(now - timedelta(hours=hours))}

    assert finale_sync.choose_smart_strategy(None, now) == "full"
    assert finale_sync.choose_smart_strategy(last(2), now) == "inventory"
    assert finale_sync.choose_smart_strategy(last(12), now) == "critical"
    assert finale_sync.choose_smart_strategy(last(30), now) == "full"


def test_inventory_strategy_updates_stock_only(tmp_db):
    finale_sync.run_sync("full", client=_FakeClient(_products()))

    result = finale_sync.run_sync("inventory", client=_FakeClient(levels={"P1": 3, "UNKNOWN": 9}))

    assert result["status"] == "success"
    assert result["items_updated"] == 1
    assert inventory_store.get_by_sku("P1")["current_stock"] == 3
    assert inventory_store.get_by_sku("P1")["product_name"] == "Widget"


def test_critical_strategy_only_writes_critical_and_low(tmp_db):
    result = finale_sync.run_sync("critical", client=_FakeClient(_products()))

    assert result["items_updated"] == 1
    assert inventory_store.get_by_sku("P2") is not None
    assert inventory_store.get_by_sku("P3") is None


def test_full_sync_syncs_vendors_before_products(tmp_db):
    client = _FakeClient(_products(), vendors=[{"vendorName": "Acme", "partyId": "V1", "email": "a@acme.test"}])

    result = finale_sync.run_sync("full", client=client)

    assert client.vendor_calls == 1
    assert result["vendors_updated"] == 1
    assert [(v["name"], v["finale_id"]) for v in vendor_store.list_vendors()] == [("Acme", "V1")]
    assert [v["name"] for v in cache.get_vendors_snapshot()] == ["Acme"]
    vendors_meta = sync_log_store.get_sync(result["sync_id"])["metadata"]["vendors"]
    assert vendors_meta == {"source": "finale", "processed": 1, "updated": 1, "failed": 0}


def test_full_sync_derives_vendors_from_products_when_finale_has_none(tmp_db):
    result = finale_sync.run_sync("full", client=_FakeClient(_products()))

    assert result["vendors_updated"] == 2
    assert [v["name"] for v in vendor_store.list_vendors()] == ["Acme", "Beta"]
    assert sync_log_store.get_sync(result["sync_id"])["metadata"]["vendors"]["source"] == "extracted_from_products"


def test_inventory_strategy_does_not_touch_vendors(tmp_db):
    client = _FakeClient(levels={"P1": 3})

    finale_sync.run_sync("inventory", client=client)

    assert client.vendor_calls == 0
    assert vendor_store.list_vendors() == []


def test_force_full_sync_ignores_unchanged_hashes(tmp_db):
    synced_at = db_service.now_iso()
    records = [transform_product(p, synced_at) for p in _products()]
    for record in records:
        record["content_hash"] = generate_item_hash(record)
    inventory_store.upsert_items(records)

    result = finale_sync.run_sync("smart", force_full_sync=True, client=_FakeClient(_products()))

    assert result["effective_strategy"] == "full"
    assert result["items_updated"] == 3
    assert result["unchanged"] == 0
    assert sync_log_store.get_sync(result["sync_id"])["metadata"]["force_full_sync"] is True


def test_priority_threshold_drops_low_priority_changes(tmp_db):
    # new SKUs score 8
    result = finale_sync.run_sync("smart", priority_threshold=9, client=_FakeClient(_products()))

    assert result["status"] == "success"
    assert result["items_processed"] == 3
    assert result["items_updated"] == 0
    assert inventory_store.count_items() == 0


def test_vendor_filter_limits_product_writes(tmp_db):
    result = finale_sync.run_sync("full", vendor_filter="acme", client=_FakeClient(_products()))

    assert result["items_processed"] == 2
    assert inventory_store.get_by_sku("P3") is None
    assert inventory_store.get_by_sku("P1")["vendor"] == "Acme"


def test_active_strategy_skips_inactive_and_discontinued(tmp_db):
    inventory_store.create_item({"sku": "P2", "product_name": "Gadget", "current_stock": 7, "discontinued": True})
    products = _products()
    products[2]["statusId"] = "PRODUCT_INACTIVE"

    result = finale_sync.run_sync("active", client=_FakeClient(products))

    assert result["effective_strategy"] == "active"
    assert result["items_updated"] == 1
    assert inventory_store.get_by_sku("P1") is not None
    assert inventory_store.get_by_sku("P2")["current_stock"] == 7
    assert inventory_store.get_by_sku("P3") is None


def test_dry_run_touches_nothing(tmp_db):
    result = finale_sync.run_sync("full", dry_run=True, client=_FakeClient(_products()))

    assert result["dry_run"] is True
    assert result["items_to_write"] == 3
    assert inventory_store.count_items() == 0
    assert sync_log_store.list_history()["total"] == 0


def test_failed_batch_marks_run_partial(tmp_db, monkeypatch):
    monkeypatch.setattr(finale_sync, "SYNC_BATCH_SIZE", 2)
    real_upsert = inventory_store.upsert_items
    calls = []

    def flaky_upsert(batch):
        calls.append(len(batch))
        if len(calls) == 2:
            raise SQLAlchemyError("disk I/O error")
        return real_upsert(batch)

    monkeypatch.setattr(inventory_store, "upsert_items", flaky_upsert)

    result = finale_sync.run_sync("full", client=_FakeClient(_products()))

    assert result["status"] == "partial"
    assert result["items_updated"] == 2
    assert result["items_failed"] == 1
    assert "Batch 2" in result["errors"][0]
    assert sync_log_store.get_sync(result["sync_id"])["status"] == "partial"


def test_stuck_sweep_terminates_each_run_once(tmp_db):
    row = sync_log_store.start_sync(sync_log_store.INVENTORY_SYNC)
    _backdate(row["id"], 45)

    first = finale_sync.check_stuck_syncs(auto_fix=True, threshold_minutes=30)
    second = finale_sync.check_stuck_syncs(auto_fix=True, threshold_minutes=30)

    assert (first["stuck_count"], first["fixed_count"]) == (1, 1)
    assert (second["stuck_count"], second["fixed_count"]) == (0, 0)
    terminated = sync_log_store.get_sync(row["id"])
    assert terminated["status"] == "error"
    assert terminated["errors"] == ["Sync terminated after running for 45 minutes"]
    assert terminated["metadata"]["terminationReason"] == "Exceeded 30 minute timeout"
    # a late finisher cannot resurrect the row
    assert sync_log_store.finish_sync(row["id"], "success") is False
    assert sync_log_store.start_sync(sync_log_store.INVENTORY_SYNC) is not None


def test_check_stuck_without_fix_only_reports(tmp_db):
    row = sync_log_store.start_sync(sync_log_store.INVENTORY_SYNC)
    _backdate(row["id"], 45)

    report = finale_sync.check_stuck_syncs(threshold_minutes=30)

    assert report["stuck_count"] == 1
    assert report["fixed_count"] == 0
    assert report["stuck_syncs"][0]["running_minutes"] >= 45
    assert sync_log_store.get_sync(row["id"])["status"] == "running"


def test_vendor_sync_falls_back_to_inventory_vendors(tmp_db):
    finale_sync.run_sync("full", client=_FakeClient(_products()))

    result = finale_sync.run_vendor_sync(client=_FakeClient(error=FinaleApiError("not found", status_code=404)))

    assert result["source"] == "extracted_from_inventory"
    assert result["vendors_updated"] == 2
    assert [v["name"] for v in vendor_store.list_vendors()] == ["Acme", "Beta"]
    assert len(cache.get_vendors_snapshot()) == 2


def test_vendor_sync_keeps_user_lead_time(tmp_db):
    vendor = vendor_store.create_vendor({"name": "Acme", "lead_time_days": 21})

    finale_sync.run_vendor_sync(client=_FakeClient(vendors=[{"vendorName": "Acme", "partyId": "V1", "email": "a@acme.test"}]))

    refreshed = vendor_store.get_vendor(vendor["id"])
    assert refreshed["lead_time_days"] == 21
    assert refreshed["email"] == "a@acme.test"
    assert refreshed["finale_id"] == "V1"


def test_vendor_renamed_in_finale_renames_the_row(tmp_db):
    finale_sync.run_vendor_sync(client=_FakeClient(vendors=[{"vendorName": "Acme", "partyId": "V1"}]))
    original = vendor_store.get_by_name("Acme")

    result = finale_sync.run_vendor_sync(client=_FakeClient(vendors=[{"vendorName": "Acme Inc", "partyId": "V1"}]))

    assert result["status"] == "success"
    assert result["vendors_updated"] == 1
    assert [(v["id"], v["name"]) for v in vendor_store.list_vendors()] == [(original["id"], "Acme Inc")]


def test_vendor_sync_failure_releases_the_guard(tmp_db, monkeypatch):
    def broken_list_vendors(active_only=False):
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(vendor_store, "list_vendors", broken_list_vendors)

    with pytest.raises(finale_sync.SyncError):
        finale_sync.run_vendor_sync(client=_FakeClient(vendors=[{"vendorName": "Acme", "partyId": "V1"}]))

    assert sync_log_store.get_running(sync_log_store.VENDOR_SYNC) == []
    latest = sync_log_store.get_latest(sync_log_store.VENDOR_SYNC)
    assert latest["status"] == "error"
    assert "connection lost" in latest["errors"][0]
    assert sync_log_store.start_sync(sync_log_store.VENDOR_SYNC) is not None


def test_health_uses_configured_stuck_threshold(tmp_db, monkeypatch):
    monkeypatch.setattr(config, "SYNC_STUCK_MINUTES", 10)
    row = sync_log_store.start_sync(sync_log_store.INVENTORY_SYNC)
    _backdate(row["id"], 15)

    health = sync_monitoring.check_health()

    assert health["checks"]["sync_process"]["message"] == "Sync appears stuck (running for over 10 minutes)"


def test_rebuild_timeout_keeps_previous_snapshot(tmp_db):
    cache.set_inventory_snapshot([{"sku": "OLD"}])
    gate = threading.Event()
    try:
        with pytest.raises(finale_sync.CacheRebuildTimeout):
            finale_sync.rebuild_cache(timeout_seconds=0.05, client=_FakeClient(_products(), gate=gate))
        assert cache.get_inventory_snapshot() == [{"sku": "OLD"}]
    finally:
        gate.set()


def test_rebuild_replaces_snapshot(tmp_db):
    cache.set_inventory_snapshot([{"sku": "OLD"}])

    result = finale_sync.rebuild_cache(client=_FakeClient(_products()))

    assert result["items_cached"] == 3
    assert sorted(i["sku"] for i in cache.get_inventory_snapshot()) == ["P1", "P2", "P3"]
