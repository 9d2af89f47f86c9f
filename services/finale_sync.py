"""
Finale -> database -> Redis synchronization.

A run fetches everything it needs from Finale before writing anything, so
an upstream failure leaves the database untouched. Writes go out in
batches; a failing batch is counted and the run ends 'partial'.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

import config
from auth.finale_auth import require_finale_credentials
from services import cache
from services import inventory_store, sync_log_store, vendor_store
from services.change_detection import calculate_sync_stats, filter_changed_items, generate_item_hash
from services.db import now_iso, parse_iso, utc_now
from services.finale_api import FinaleApiClient, FinaleApiError, is_active_product, transform_product, transform_vendor
from services.inventory_calculations import enrich_items, stock_status_for
from services.perf import time_block
from services.settings_store import get_settings_store

LOGGER = logging.getLogger(__name__)

STRATEGIES = ("smart", "full", "inventory", "critical", "active")
SYNC_BATCH_SIZE = config.SYNC_BATCH_SIZE
SYNC_STUCK_MINUTES = config.SYNC_STUCK_MINUTES
CACHE_REBUILD_TIMEOUT_SECONDS = config.CACHE_REBUILD_TIMEOUT_SECONDS
SMART_INVENTORY_HOURS = 6
SMART_CRITICAL_HOURS = 24


class SyncError(RuntimeError):
    """A sync run failed; the sync_logs row (if any) is already closed as 'error'."""


class SyncAlreadyRunningError(RuntimeError):
    def __init__(self, running: Optional[Dict[str, Any]]):
        self.running = running or {}
        started = parse_iso(self.running.get("synced_at"))
        self.running_seconds = int((utc_now() - started).total_seconds()) if started else None
        super().__init__(f"Sync {self.running.get('id')} is already running")


class CacheRebuildTimeout(RuntimeError):
    pass


def build_finale_client() -> FinaleApiClient:
    return FinaleApiClient(require_finale_credentials())


def _report_url(settings: Dict[str, Any], field: str, env_value: str) -> str:
    return env_value or (settings.get(field) or "")


def _close_failed(
    sync_id: Optional[int],
    message: str,
    started: datetime,
    metadata: Optional[Dict[str, Any]] = None,
) -> SyncError:
    """Close the run as 'error' and return the SyncError for the caller to raise."""
    if sync_id is not None:
        try:
            sync_log_store.finish_sync(sync_id, "error", errors=[message], metadata=metadata, started_at=started)
        except SQLAlchemyError:
            LOGGER.exception("[FinaleSync] could not close sync %s; the stuck sweep will", sync_id)
    LOGGER.error("[FinaleSync] sync %s failed: %s", sync_id, message)
    return SyncError(message)


def choose_smart_strategy(last_success: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> str:
    """
    Pick the cheapest strategy that keeps data fresh:
    last success under 6h -> inventory, under 24h -> critical, else full.
    """
    if not last_success:
        return "full"
    finished = parse_iso(last_success.get("completed_at") or last_success.get("synced_at"))
    if finished is None:
        return "full"
    hours = ((now or utc_now()) - finished).total_seconds() / 3600.0
    if hours < SMART_INVENTORY_HOURS:
        return "inventory"
    if hours < SMART_CRITICAL_HOURS:
        return "critical"
    return "full"


def _chunks(items: List[Any], size: int):
    for idx in range(0, len(items), size):
        yield idx // size + 1, items[idx : idx + size]


def _dedupe_records(products: List[Dict[str, Any]], synced_at: str) -> List[Dict[str, Any]]:
    by_sku: Dict[str, Dict[str, Any]] = {}
    for product in products:
        record = transform_product(product, synced_at)
        if record["sku"]:
            by_sku[record["sku"]] = record
    return list(by_sku.values())


def _fetch_products(client: FinaleApiClient, settings: Dict[str, Any], filter_year: Optional[int]) -> List[Dict[str, Any]]:
    report_url = _report_url(settings, "finale_inventory_report_url", config.FINALE_INVENTORY_REPORT_URL)
    if report_url:
        LOGGER.info("[FinaleSync] fetching products via inventory report")
        return client.fetch_inventory_report(report_url)
    return client.get_products(filter_year=filter_year)


def _refresh_inventory_snapshot(source: str) -> int:
    items = enrich_items(inventory_store.list_items())
    cache.set_inventory_snapshot(items, source=source)
    cache.invalidate_dashboard()
    return len(items)


def _write_batches(records: List[Dict[str, Any]], batch_size: int) -> Dict[str, Any]:
    written = 0
    failed = 0
    errors: List[str] = []
    for batch_no, batch in _chunks(records, batch_size):
        try:
            written += inventory_store.upsert_items(batch)
        except SQLAlchemyError as exc:
            failed += len(batch)
            message = f"Batch {batch_no} ({len(batch)} items) failed: {exc.__class__.__name__}: {exc}"
            errors.append(message[:500])
            LOGGER.error("[FinaleSync] %s", message)
    return {"written": written, "failed": failed, "errors": errors}


# ----------------------------
# Vendors
# ----------------------------
def _fetch_vendor_records(client: FinaleApiClient, settings: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], str]:
    report_url = _report_url(settings, "finale_vendors_report_url", config.FINALE_VENDORS_REPORT_URL)
    if report_url:
        return [transform_vendor(v) for v in client.fetch_report(report_url, "jsonObject")], "finale_report"
    try:
        raw = client.get_vendors()
    except FinaleApiError as exc:
        if exc.status_code != 404:
            raise
        raw = []
    return [transform_vendor(v) for v in raw], "finale"


def _vendors_from_names(names: Iterable[Optional[str]]) -> List[Dict[str, Any]]:
    return [{"finale_id": None, "name": name} for name in sorted({n for n in names if n})]


def _vendors_from_inventory() -> List[Dict[str, Any]]:
    names = inventory_store.list_vendor_names()
    if not names:
        snapshot = cache.get_inventory_snapshot() or []
        names = [item.get("vendor") for item in snapshot]
    return _vendors_from_names(names)


def _store_vendors(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Upsert vendors in batches and refresh the vendors:full snapshot."""
    written = 0
    errors: List[str] = []
    for batch_no, batch in _chunks(records, SYNC_BATCH_SIZE):
        try:
            written += vendor_store.upsert_vendors(batch)
        except SQLAlchemyError as exc:
            errors.append(f"Vendor batch {batch_no} failed: {exc}"[:500])
            LOGGER.error("[FinaleSync] %s", errors[-1])
    cache.set_vendors_snapshot(vendor_store.list_vendors())
    return {"processed": len(records), "written": written, "failed": len(records) - written, "errors": errors}


# ----------------------------
# Inventory
# ----------------------------
def run_sync(
    strategy: str = "smart",
    *,
    dry_run: bool = False,
    filter_year: Optional[int] = None,
    force_full_sync: bool = False,
    vendor_filter: Optional[str] = None,
    priority_threshold: Optional[int] = None,
    client: Optional[FinaleApiClient] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Run one inventory sync.

    'full' also syncs vendors ahead of products. 'smart' skips items whose
    content hash is unchanged unless force_full_sync is set; its
    priority_threshold drops changed items scored below it. vendor_filter
    limits product writes to one primary vendor.

    Raises SyncAlreadyRunningError when another inventory sync holds the
    guard, and SyncError when Finale or the run fails outright.
    """
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown sync strategy: {strategy}")

    settings = get_settings_store().get()
    effective = strategy
    if strategy == "smart":
        effective = "full" if force_full_sync else choose_smart_strategy(sync_log_store.get_last_successful(), now)
    detect_changes = strategy == "smart" and not force_full_sync
    metadata: Dict[str, Any] = {"strategy": strategy, "effective_strategy": effective, "dry_run": dry_run}
    if filter_year:
        metadata["filter_year"] = filter_year
    if force_full_sync:
        metadata["force_full_sync"] = True
    if vendor_filter:
        metadata["vendor_filter"] = vendor_filter
    if priority_threshold is not None:
        metadata["priority_threshold"] = priority_threshold

    sync_row = None
    if not dry_run:
        sync_row = sync_log_store.start_sync(sync_log_store.INVENTORY_SYNC, metadata)
        if sync_row is None:
            running = sync_log_store.get_running(sync_log_store.INVENTORY_SYNC)
            raise SyncAlreadyRunningError(running[0] if running else None)

    started = utc_now()
    sync_id = sync_row["id"] if sync_row else None
    LOGGER.info("[FinaleSync] sync %s started strategy=%s effective=%s dry_run=%s", sync_id, strategy, effective, dry_run)

    try:
        client = client or build_finale_client()
    except RuntimeError as exc:
        raise _close_failed(sync_id, str(exc), started, metadata) from exc

    try:
        if effective == "inventory":
            return _run_inventory_levels(client, sync_id, metadata, started, dry_run)

        # Fetch phase: nothing is written until Finale has answered in full.
        vendor_records: List[Dict[str, Any]] = []
        vendor_source = None
        try:
            if effective == "full":
                with time_block("sync.fetch_vendors"):
                    vendor_records, vendor_source = _fetch_vendor_records(client, settings)
            with time_block("sync.fetch_products"):
                products = _fetch_products(client, settings, filter_year)
        except FinaleApiError as exc:
            raise _close_failed(sync_id, f"Finale fetch failed: {exc}", started, metadata) from exc

        fetched = len(products)
        if effective == "active":
            products = [p for p in products if is_active_product(p)]

        synced_at = now_iso()
        records = _dedupe_records(products, synced_at)
        if effective == "full" and not vendor_records:
            vendor_records = _vendors_from_names(r.get("vendor") for r in records)
            vendor_source = "extracted_from_products"

        if vendor_filter:
            wanted = vendor_filter.strip().lower()
            records = [r for r in records if (r.get("vendor") or "").strip().lower() == wanted]
        total = len(records)

        if effective in ("critical", "active"):
            stored = {row["sku"]: row for row in inventory_store.list_items()}
            if effective == "critical":
                records = [
                    r
                    for r in records
                    if stock_status_for(r) in ("critical", "low")
                    or (r["sku"] in stored and stock_status_for(stored[r["sku"]]) in ("critical", "low"))
                ]
            else:
                records = [r for r in records if not (r["sku"] in stored and stored[r["sku"]]["discontinued"])]

        priorities: Dict[str, int] = {}
        unchanged = 0
        if detect_changes:
            records, unchanged, priorities = filter_changed_items(records, inventory_store.get_change_index(), now=now)
            if priority_threshold is not None:
                records = [r for r in records if priorities.get(r["sku"], 0) >= priority_threshold]
        for record in records:
            record["content_hash"] = generate_item_hash(record)
            record["sync_priority"] = priorities.get(record["sku"], 0)
            record["last_synced_at"] = synced_at

        metadata.update({"fetched": fetched, "unchanged": unchanged, "selected": len(records)})

        if dry_run:
            LOGGER.info("[FinaleSync] dry run: %d items would be written", len(records))
            preview = {
                "success": True,
                "dry_run": True,
                "strategy": strategy,
                "effective_strategy": effective,
                "items_processed": total,
                "items_to_write": len(records),
                "unchanged": unchanged,
                "sample": records[:5],
            }
            if effective == "full":
                preview["vendors"] = len(vendor_records)
            return preview

        errors: List[str] = []
        vendor_failed = 0
        if effective == "full":
            with time_block("sync.write_vendors"):
                vendor_outcome = _store_vendors(vendor_records)
            metadata["vendors"] = {
                "source": vendor_source,
                "processed": vendor_outcome["processed"],
                "updated": vendor_outcome["written"],
                "failed": vendor_outcome["failed"],
            }
            vendor_failed = vendor_outcome["failed"] if vendor_outcome["errors"] else 0
            errors.extend(vendor_outcome["errors"])

        with time_block("sync.write_batches"):
            outcome = _write_batches(records, SYNC_BATCH_SIZE)
        errors = outcome["errors"] + errors

        snapshot_count = _refresh_inventory_snapshot(source=f"sync:{effective}")
        duration_ms = (utc_now() - started).total_seconds() * 1000
        metadata["stats"] = calculate_sync_stats(total, len(records), duration_ms)
        metadata["snapshot_items"] = snapshot_count

        if outcome["failed"] == 0 and not vendor_failed:
            status = "success"
        elif outcome["written"] > 0:
            status = "partial"
        else:
            status = "error"
        sync_log_store.finish_sync(
            sync_id,
            status,
            items_processed=total,
            items_updated=outcome["written"],
            items_failed=outcome["failed"],
            errors=errors,
            metadata=metadata,
            started_at=started,
        )
        if status != "error":
            get_settings_store().update_last_sync_time()
        LOGGER.info(
            "[FinaleSync] sync %s %s: processed=%d written=%d failed=%d unchanged=%d",
            sync_id, status, total, outcome["written"], outcome["failed"], unchanged,
        )
        result = {
            "success": status != "error",
            "sync_id": sync_id,
            "status": status,
            "strategy": strategy,
            "effective_strategy": effective,
            "items_processed": total,
            "items_updated": outcome["written"],
            "items_failed": outcome["failed"],
            "unchanged": unchanged,
            "errors": errors,
            "duration_ms": int(duration_ms),
        }
        if "vendors" in metadata:
            result["vendors_updated"] = metadata["vendors"]["updated"]
        return result
    except (SyncError, SyncAlreadyRunningError):
        raise
    except Exception as exc:
        LOGGER.exception("[FinaleSync] sync %s crashed", sync_id)
        raise _close_failed(sync_id, f"Unexpected sync failure: {exc}", started, metadata) from exc


def _run_inventory_levels(
    client: FinaleApiClient,
    sync_id: Optional[int],
    metadata: Dict[str, Any],
    started: datetime,
    dry_run: bool,
) -> Dict[str, Any]:
    try:
        with time_block("sync.fetch_inventory_levels"):
            levels = client.get_inventory_levels()
    except FinaleApiError as exc:
        raise _close_failed(sync_id, f"Finale fetch failed: {exc}", started, metadata) from exc

    if dry_run:
        return {
            "success": True,
            "dry_run": True,
            "strategy": metadata["strategy"],
            "effective_strategy": "inventory",
            "items_processed": len(levels),
        }

    errors: List[str] = []
    try:
        updated = inventory_store.update_stock_levels(levels)
    except SQLAlchemyError as exc:
        updated = 0
        errors.append(f"Stock level update failed: {exc}"[:500])
        LOGGER.error("[FinaleSync] %s", errors[-1])

    status = "error" if errors else "success"
    _refresh_inventory_snapshot(source="sync:inventory")
    sync_log_store.finish_sync(
        sync_id,
        status,
        items_processed=len(levels),
        items_updated=updated,
        items_failed=len(levels) if errors else 0,
        errors=errors,
        metadata=metadata,
        started_at=started,
    )
    if status == "success":
        get_settings_store().update_last_sync_time()
    return {
        "success": status == "success",
        "sync_id": sync_id,
        "status": status,
        "strategy": metadata["strategy"],
        "effective_strategy": "inventory",
        "items_processed": len(levels),
        "items_updated": updated,
        "items_failed": len(levels) if errors else 0,
        "errors": errors,
    }


# ----------------------------
# Vendor sync
# ----------------------------
def run_vendor_sync(*, dry_run: bool = False, client: Optional[FinaleApiClient] = None) -> Dict[str, Any]:
    """
    Sync vendors from Finale. When Finale exposes no vendors (no report URL
    and an empty or missing vendor endpoint), vendors are derived from the
    distinct vendor names on inventory items.
    """
    settings = get_settings_store().get()
    sync_row = None
    if not dry_run:
        sync_row = sync_log_store.start_sync(sync_log_store.VENDOR_SYNC, {"dry_run": dry_run})
        if sync_row is None:
            running = sync_log_store.get_running(sync_log_store.VENDOR_SYNC)
            raise SyncAlreadyRunningError(running[0] if running else None)
    sync_id = sync_row["id"] if sync_row else None
    started = utc_now()

    try:
        try:
            client = client or build_finale_client()
            records, source = _fetch_vendor_records(client, settings)
        except (FinaleApiError, RuntimeError) as exc:
            raise _close_failed(sync_id, f"Vendor fetch failed: {exc}", started) from exc
        if not records:
            LOGGER.warning("[FinaleSync] no vendors from Finale; deriving from inventory")
            records = _vendors_from_inventory()
            source = "extracted_from_inventory"

        if dry_run:
            return {"success": True, "dry_run": True, "source": source, "vendors": len(records), "sample": records[:5]}

        outcome = _store_vendors(records)
        errors = outcome["errors"]
        status = "success" if not errors else ("partial" if outcome["written"] else "error")
        sync_log_store.finish_sync(
            sync_id,
            status,
            items_processed=outcome["processed"],
            items_updated=outcome["written"],
            items_failed=outcome["failed"],
            errors=errors,
            metadata={"source": source},
            started_at=started,
        )
        LOGGER.info("[FinaleSync] vendor sync %s %s: %d vendors from %s", sync_id, status, outcome["written"], source)
        return {
            "success": status != "error",
            "sync_id": sync_id,
            "status": status,
            "source": source,
            "vendors_processed": outcome["processed"],
            "vendors_updated": outcome["written"],
            "errors": errors,
        }
    except SyncError:
        raise
    except Exception as exc:
        LOGGER.exception("[FinaleSync] vendor sync %s crashed", sync_id)
        raise _close_failed(sync_id, f"Unexpected vendor sync failure: {exc}", started) from exc


# ----------------------------
# Stuck syncs
# ----------------------------
def check_stuck_syncs(auto_fix: bool = False, threshold_minutes: Optional[int] = None) -> Dict[str, Any]:
    threshold = threshold_minutes or SYNC_STUCK_MINUTES
    now = utc_now()
    stuck = sync_log_store.find_stuck(threshold, now)
    fixed: List[Dict[str, Any]] = []
    if auto_fix and stuck:
        fixed = sync_log_store.sweep_stuck(threshold, now)
    described = []
    for row in stuck:
        started = parse_iso(row["synced_at"]) or now
        described.append(
            {
                "id": row["id"],
                "sync_type": row["sync_type"],
                "started_at": row["synced_at"],
                "running_minutes": int((now - started).total_seconds() // 60),
            }
        )
    return {
        "threshold_minutes": threshold,
        "stuck_count": len(stuck),
        "stuck_syncs": described,
        "fixed_count": len(fixed),
        "fixed": [row["id"] for row in fixed],
    }


def terminate_sync(sync_id: int, reason: str = "Manually terminated") -> Optional[Dict[str, Any]]:
    return sync_log_store.terminate_sync(sync_id, reason)


# ----------------------------
# Cache rebuild
# ----------------------------
def rebuild_cache(
    *,
    timeout_seconds: Optional[int] = None,
    client: Optional[FinaleApiClient] = None,
) -> Dict[str, Any]:
    """
    Refetch products from Finale under a hard timeout, persist them and
    rewrite the Redis snapshot. On timeout the previous snapshot stays.
    """
    timeout = timeout_seconds or CACHE_REBUILD_TIMEOUT_SECONDS
    client = client or build_finale_client()
    settings = get_settings_store().get()
    started = utc_now()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-rebuild")
    future = executor.submit(_fetch_products, client, settings, None)
    try:
        products = future.result(timeout=timeout)
    except FutureTimeout as exc:
        LOGGER.error("[FinaleSync] cache rebuild timed out after %ss", timeout)
        raise CacheRebuildTimeout(f"Finale fetch exceeded {timeout}s") from exc
    finally:
        executor.shutdown(wait=False)

    synced_at = now_iso()
    records = _dedupe_records(products, synced_at)
    for record in records:
        record["content_hash"] = generate_item_hash(record)
    outcome = _write_batches(records, SYNC_BATCH_SIZE)
    count = _refresh_inventory_snapshot(source="rebuild")
    duration_ms = int((utc_now() - started).total_seconds() * 1000)
    LOGGER.info("[FinaleSync] cache rebuilt with %d items in %dms", count, duration_ms)
    return {
        "success": outcome["failed"] == 0,
        "items_cached": count,
        "items_written": outcome["written"],
        "items_failed": outcome["failed"],
        "errors": outcome["errors"],
        "duration_ms": duration_ms,
    }
