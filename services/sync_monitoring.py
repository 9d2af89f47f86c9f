"""Read-only views over sync history: status, health, data quality and metrics."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

import config
from auth.finale_auth import get_finale_credentials
from services import cache, inventory_store, sync_log_store
from services import db as db_service
from services.db import iso, parse_iso, utc_now
from services.finale_api import FinaleApiClient
from services.perf import summarize_timings
from services.settings_store import get_settings_store

LOGGER = logging.getLogger(__name__)

STALE_ITEM_DAYS = 7
OVERDUE_SYNC_HOURS = 24


def _stats(logs: List[Dict[str, Any]]) -> Dict[str, Any]:
    finished = [log for log in logs if log["status"] != "running"]
    by_status = Counter(log["status"] for log in logs)
    durations = [log["duration_ms"] for log in finished if log.get("duration_ms") is not None]
    success = by_status.get("success", 0)
    return {
        "total": len(logs),
        "success": success,
        "error": by_status.get("error", 0),
        "partial": by_status.get("partial", 0),
        "running": by_status.get("running", 0),
        "success_rate": round(success / len(finished) * 100, 1) if finished else 0.0,
        "avg_duration_ms": int(sum(durations) / len(durations)) if durations else None,
        "items_processed": sum(int(log.get("items_processed") or 0) for log in finished),
    }


def get_sync_status(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utc_now()
    settings = get_settings_store().get()
    running = sync_log_store.get_running()
    last = sync_log_store.get_latest(sync_log_store.INVENTORY_SYNC)
    last_success = sync_log_store.get_last_successful()
    week = sync_log_store.logs_since(now - timedelta(days=7), sync_log_store.INVENTORY_SYNC)

    frequency = int(settings.get("sync_frequency_minutes") or 60)
    last_time = parse_iso(settings.get("last_sync_time"))
    next_sync = last_time + timedelta(minutes=frequency) if last_time else None
    return {
        "is_running": bool(running),
        "current_sync": running[0] if running else None,
        "last_sync": last,
        "last_successful_sync": last_success,
        "stats_7d": _stats(week),
        "schedule": {
            "enabled": bool(settings.get("sync_enabled")),
            "frequency_minutes": frequency,
            "last_sync_time": settings.get("last_sync_time"),
            "next_sync_at": iso(next_sync) if next_sync else None,
            "is_due": bool(settings.get("sync_enabled")) and (next_sync is None or next_sync <= now),
        },
    }


def _check(status: str, message: str) -> Dict[str, str]:
    return {"status": status, "message": message}


def check_health(client: Optional[FinaleApiClient] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Database, Finale, sync-process and data-integrity checks rolled into one status."""
    now = now or utc_now()
    checks: Dict[str, Dict[str, str]] = {}
    warnings: List[str] = []
    errors: List[str] = []

    try:
        db_service.ping()
        checks["database"] = _check("healthy", "Database connection OK")
    except SQLAlchemyError as exc:
        checks["database"] = _check("unhealthy", f"Database error: {exc}")
        errors.append("Database connection failed")

    creds = get_finale_credentials()
    if client is None and creds is None:
        checks["finale_api"] = _check("unhealthy", "Finale API not configured")
        warnings.append("Finale API credentials missing")
    else:
        client = client or FinaleApiClient(creds)
        if client.test_connection():
            checks["finale_api"] = _check("healthy", "Finale API connection OK")
        else:
            checks["finale_api"] = _check("unhealthy", "Finale API connection failed")
            errors.append("Cannot connect to Finale API")

    checks["cache"] = _check("healthy", "Redis connection OK") if cache.ping() else _check("degraded", "Redis unavailable")
    if checks["cache"]["status"] != "healthy":
        warnings.append("Cache unavailable; reads fall back to the database")

    if "database" in checks and checks["database"]["status"] == "healthy":
        stuck = sync_log_store.find_stuck(config.SYNC_STUCK_MINUTES, now)
        last = sync_log_store.get_latest(sync_log_store.INVENTORY_SYNC)
        if stuck:
            checks["sync_process"] = _check(
                "degraded", f"Sync appears stuck (running for over {config.SYNC_STUCK_MINUTES} minutes)"
            )
            warnings.append("Sync process may be stuck")
        elif last is None:
            checks["sync_process"] = _check("degraded", "No sync history found")
            warnings.append("No sync has been performed yet")
        else:
            hours = (now - (parse_iso(last["synced_at"]) or now)).total_seconds() / 3600.0
            if hours > OVERDUE_SYNC_HOURS:
                checks["sync_process"] = _check("degraded", f"Last sync was {round(hours)} hours ago")
                warnings.append("Sync may be overdue")
            else:
                checks["sync_process"] = _check("healthy", f"Last sync: {round(hours, 1)} hours ago")

        issues = validate_data(now)["issue_count"]
        if issues:
            checks["data_integrity"] = _check("degraded", f"{issues} items have data issues")
            warnings.append(f"Found {issues} inventory items with missing or invalid data")
        else:
            checks["data_integrity"] = _check("healthy", "No data integrity issues found")

    statuses = {c["status"] for c in checks.values()}
    if errors:
        overall = "unhealthy"
    elif "degraded" in statuses or "unhealthy" in statuses:
        overall = "degraded"
    else:
        overall = "healthy"
    return {"timestamp": iso(now), "status": overall, "checks": checks, "warnings": warnings, "errors": errors}


def validate_data(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Data-quality report over stored inventory."""
    now = now or utc_now()
    stale_cutoff = now - timedelta(days=STALE_ITEM_DAYS)
    items = inventory_store.list_items()
    problems: Dict[str, List[str]] = {
        "missing_name": [],
        "negative_stock": [],
        "missing_cost": [],
        "missing_vendor": [],
        "stale": [],
    }
    for item in items:
        sku = item["sku"]
        if not (item.get("product_name") or "").strip():
            problems["missing_name"].append(sku)
        if float(item.get("current_stock") or 0) < 0:
            problems["negative_stock"].append(sku)
        if float(item.get("cost") or 0) <= 0:
            problems["missing_cost"].append(sku)
        if not item.get("vendor"):
            problems["missing_vendor"].append(sku)
        synced = parse_iso(item.get("last_synced_at"))
        if synced is None or synced < stale_cutoff:
            problems["stale"].append(sku)

    # Missing names and negative stock are integrity errors; the rest are warnings.
    flagged = set(problems["missing_name"]) | set(problems["negative_stock"])
    total = len(items)
    warn_skus = set().union(*problems.values())
    quality = round((total - len(warn_skus)) / total * 100, 1) if total else 100.0
    return {
        "total_items": total,
        "issue_count": len(flagged),
        "quality_score": quality,
        "issues": {name: {"count": len(skus), "sample": skus[:10]} for name, skus in problems.items()},
        "valid": not flagged,
    }


def get_sync_metrics(days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utc_now()
    logs = sync_log_store.logs_since(now - timedelta(days=days))
    hourly = [{"hour": h, "total": 0, "success": 0, "error": 0} for h in range(24)]
    errors: Counter = Counter()
    by_type: Dict[str, List[Dict[str, Any]]] = {}
    for log in logs:
        by_type.setdefault(log["sync_type"], []).append(log)
        started = parse_iso(log["synced_at"])
        if started is not None:
            bucket = hourly[started.hour]
            bucket["total"] += 1
            if log["status"] in ("success", "error"):
                bucket[log["status"]] += 1
        for message in log.get("errors") or []:
            errors[str(message)[:120]] += 1
    return {
        "period_days": days,
        "overall": _stats(logs),
        "by_type": {name: _stats(rows) for name, rows in by_type.items()},
        "hourly": hourly,
        "top_errors": [{"message": m, "count": c} for m, c in errors.most_common(5)],
        "syncs_per_day": round(len(logs) / days, 2) if days else 0.0,
        "timings": summarize_timings(),
        "cache": cache.get_cache_stats(),
    }
