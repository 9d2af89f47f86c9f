"""
Redis cache for inventory, vendor and dashboard read paths.

Every operation is soft: connection or decode problems are logged and the
caller sees a miss (reads) or False (writes). Values are JSON documents.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Optional

import redis

import config
from services.db import now_iso
from services.log_once import clear_log_once, log_once

logger = logging.getLogger(__name__)

REDIS_URL = config.REDIS_URL

# Keys
INVENTORY_KEY = "inventory:full"
INVENTORY_METADATA_KEY = "inventory:metadata"
VENDORS_KEY = "vendors:full"
DASHBOARD_METRICS_KEY = "dashboard:metrics"
DASHBOARD_PO_SUMMARY_KEY = "dashboard:po-summary"

# TTLs (in seconds)
INVENTORY_TTL = 15 * 60
INVENTORY_METADATA_TTL = 24 * 60 * 60
VENDORS_TTL = 60 * 60
DASHBOARD_METRICS_TTL = 5 * 60
CRITICAL_ITEMS_TTL = 5 * 60
VENDOR_STATS_TTL = 10 * 60
PO_SUMMARY_TTL = 5 * 60
TRENDS_TTL = 15 * 60

_OUTAGE_KEY = "cache-unavailable"

_client = None
_client_lock = threading.Lock()
_stats_lock = threading.Lock()
_stats = {"hits": 0, "misses": 0, "errors": 0, "writes": 0}


def critical_items_key(limit: int) -> str:
    return f"dashboard:critical-items:{limit}"


def vendor_stats_key(limit: int) -> str:
    return f"dashboard:vendor-stats:{limit}"


def trends_key(period: str) -> str:
    return f"dashboard:trends:{period}"


def get_redis():
    global _client
    with _client_lock:
        if _client is None:
            _client = redis.from_url(
                REDIS_URL,
                decode_responses=True,
                socket_timeout=2,
                socket_connect_timeout=2,
            )
        return _client


def _bump(counter: str) -> None:
    with _stats_lock:
        _stats[counter] += 1


def _on_error(op: str, key: str, exc: Exception) -> None:
    _bump("errors")
    if not log_once(logger, _OUTAGE_KEY, "warning", "[Cache] Redis unavailable (%s %s): %s", op, key, exc):
        logger.debug(f"[Cache] {op} {key} failed: {exc}")


# ----------------------------
# Primitive operations
# ----------------------------
def get_json(key: str) -> Optional[Any]:
    try:
        raw = get_redis().get(key)
    except redis.RedisError as exc:
        _on_error("GET", key, exc)
        return None
    if raw is None:
        _bump("misses")
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning(f"[Cache] Discarding undecodable value at {key}: {exc}")
        _bump("misses")
        return None
    _bump("hits")
    clear_log_once(_OUTAGE_KEY)
    return value


def set_json(key: str, value: Any, ttl_seconds: int) -> bool:
    try:
        payload = json.dumps(value, default=str)
        get_redis().setex(key, int(ttl_seconds), payload)
    except redis.RedisError as exc:
        _on_error("SETEX", key, exc)
        return False
    except (TypeError, ValueError) as exc:
        logger.warning(f"[Cache] Could not serialize value for {key}: {exc}")
        return False
    _bump("writes")
    return True


def delete(*keys: str) -> int:
    if not keys:
        return 0
    try:
        return int(get_redis().delete(*keys) or 0)
    except redis.RedisError as exc:
        _on_error("DEL", ",".join(keys), exc)
        return 0


def clear_cache(pattern: str = "*") -> int:
    """Delete every key matching the glob pattern via SCAN. Returns keys removed."""
    try:
        client = get_redis()
        keys = list(client.scan_iter(match=pattern, count=100))
        removed = int(client.delete(*keys) or 0) if keys else 0
    except redis.RedisError as exc:
        _on_error("SCAN", pattern, exc)
        return 0
    logger.info(f"[Cache] cleared {removed} keys matching {pattern}")
    return removed


def invalidate_dashboard() -> int:
    return clear_cache("dashboard:*")


def ttl(key: str) -> Optional[int]:
    try:
        value = get_redis().ttl(key)
    except redis.RedisError as exc:
        _on_error("TTL", key, exc)
        return None
    return int(value) if value is not None and value >= 0 else None


def ping() -> bool:
    try:
        return bool(get_redis().ping())
    except redis.RedisError as exc:
        _on_error("PING", "-", exc)
        return False


def get_cache_stats() -> Dict[str, Any]:
    with _stats_lock:
        stats = dict(_stats)
    lookups = stats["hits"] + stats["misses"]
    stats["hit_rate"] = round(stats["hits"] / lookups * 100, 2) if lookups else 0.0
    return stats


def reset_cache_stats() -> None:
    with _stats_lock:
        for key in _stats:
            _stats[key] = 0


# ----------------------------
# Snapshots
# ----------------------------
def get_inventory_snapshot() -> Optional[List[Dict[str, Any]]]:
    doc = get_json(INVENTORY_KEY)
    if isinstance(doc, dict) and isinstance(doc.get("items"), list):
        return doc["items"]
    return None


def set_inventory_snapshot(items: List[Dict[str, Any]], source: str = "database") -> bool:
    cached_at = now_iso()
    ok = set_json(INVENTORY_KEY, {"items": items, "cached_at": cached_at, "count": len(items)}, INVENTORY_TTL)
    if ok:
        set_json(
            INVENTORY_METADATA_KEY,
            {"last_sync": cached_at, "total_items": len(items), "source": source},
            INVENTORY_METADATA_TTL,
        )
    return ok


def get_vendors_snapshot() -> Optional[List[Dict[str, Any]]]:
    doc = get_json(VENDORS_KEY)
    if isinstance(doc, dict) and isinstance(doc.get("vendors"), list):
        return doc["vendors"]
    return None


def set_vendors_snapshot(vendors: List[Dict[str, Any]]) -> bool:
    return set_json(VENDORS_KEY, {"vendors": vendors, "cached_at": now_iso(), "count": len(vendors)}, VENDORS_TTL)


def cache_status() -> Dict[str, Any]:
    metadata = get_json(INVENTORY_METADATA_KEY)
    return {
        "connected": ping(),
        "inventory_ttl_seconds": ttl(INVENTORY_KEY),
        "vendors_ttl_seconds": ttl(VENDORS_KEY),
        "metadata": metadata,
        "stats": get_cache_stats(),
    }
