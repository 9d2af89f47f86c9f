"""
sync_logs persistence.

A running row holds active_marker = sync_type; the column is UNIQUE, so at
most one run per sync type can be in flight. Finishing or terminating a run
clears the marker. Every transition out of 'running' is a conditional
UPDATE (... AND status = 'running'), so a row leaves 'running' exactly once.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from services import db as db_service

LOGGER = logging.getLogger(__name__)

TABLE = "sync_logs"
INVENTORY_SYNC = "finale_inventory"
VENDOR_SYNC = "finale_vendors"
FINAL_STATUSES = ("success", "error", "partial")


def _decode(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    for field, default in (("errors", []), ("metadata", {})):
        raw = row.get(field)
        try:
            row[field] = json.loads(raw) if raw else default
        except (TypeError, ValueError):
            row[field] = default
    return row


def start_sync(sync_type: str, metadata: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """
    Atomically open a running row for sync_type.

    Returns the new row, or None when another run of the same type holds
    the active marker.
    """
    row = db_service.execute_returning(
        f"""
        INSERT INTO {TABLE} (sync_type, status, synced_at, items_processed, items_updated,
                             items_failed, errors, metadata, active_marker)
        VALUES (:sync_type, 'running', :synced_at, 0, 0, 0, '[]', :metadata, :sync_type)
        ON CONFLICT (active_marker) DO NOTHING
        RETURNING *
        """,
        {
            "sync_type": sync_type,
            "synced_at": db_service.now_iso(),
            "metadata": json.dumps(dict(metadata or {}), default=str),
        },
    )
    if row is None:
        LOGGER.info("[SyncLog] %s already running; start refused", sync_type)
    return _decode(row)


def finish_sync(
    sync_id: int,
    status: str,
    *,
    items_processed: int = 0,
    items_updated: int = 0,
    items_failed: int = 0,
    errors: Optional[List[str]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    started_at: Optional[datetime] = None,
) -> bool:
    """Close a running row. Returns False if the row was no longer running."""
    if status not in FINAL_STATUSES:
        raise ValueError(f"Invalid final sync status: {status}")
    now = db_service.utc_now()
    duration_ms = int((now - started_at).total_seconds() * 1000) if started_at else None
    changed = db_service.execute_write(
        f"""
        UPDATE {TABLE}
        SET status = :status,
            completed_at = :completed_at,
            items_processed = :items_processed,
            items_updated = :items_updated,
            items_failed = :items_failed,
            duration_ms = :duration_ms,
            errors = :errors,
            metadata = :metadata,
            active_marker = NULL
        WHERE id = :id AND status = 'running'
        """,
        {
            "id": sync_id,
            "status": status,
            "completed_at": db_service.iso(now),
            "items_processed": items_processed,
            "items_updated": items_updated,
            "items_failed": items_failed,
            "duration_ms": duration_ms,
            "errors": json.dumps(list(errors or [])),
            "metadata": json.dumps(dict(metadata or {}), default=str),
        },
    )
    if not changed:
        LOGGER.warning("[SyncLog] sync %s was no longer running; %s result dropped", sync_id, status)
    return bool(changed)


def get_sync(sync_id: int) -> Optional[Dict[str, Any]]:
    return _decode(db_service.fetch_one(f"SELECT * FROM {TABLE} WHERE id = :id", {"id": sync_id}))


def get_running(sync_type: Optional[str] = None) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {}
    sql = f"SELECT * FROM {TABLE} WHERE status = 'running'"
    if sync_type:
        sql += " AND sync_type = :sync_type"
        params["sync_type"] = sync_type
    sql += " ORDER BY synced_at DESC"
    return [_decode(r) for r in db_service.fetch_all(sql, params)]


def get_latest(sync_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
    params: Dict[str, Any] = {}
    sql = f"SELECT * FROM {TABLE}"
    if sync_type:
        sql += " WHERE sync_type = :sync_type"
        params["sync_type"] = sync_type
    sql += " ORDER BY synced_at DESC, id DESC LIMIT 1"
    return _decode(db_service.fetch_one(sql, params))


def get_last_successful(sync_type: Optional[str] = INVENTORY_SYNC) -> Optional[Dict[str, Any]]:
    params: Dict[str, Any] = {}
    sql = f"SELECT * FROM {TABLE} WHERE status = 'success'"
    if sync_type:
        sql += " AND sync_type = :sync_type"
        params["sync_type"] = sync_type
    sql += " ORDER BY synced_at DESC, id DESC LIMIT 1"
    return _decode(db_service.fetch_one(sql, params))


def list_history(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    sync_type: Optional[str] = None,
) -> Dict[str, Any]:
    clauses = []
    params: Dict[str, Any] = {}
    if status:
        clauses.append("status = :status")
        params["status"] = status
    if sync_type:
        clauses.append("sync_type = :sync_type")
        params["sync_type"] = sync_type
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    total = db_service.fetch_one(f"SELECT COUNT(*) AS n FROM {TABLE} {where}", params)
    rows = db_service.fetch_all(
        f"SELECT * FROM {TABLE} {where} ORDER BY synced_at DESC, id DESC LIMIT :limit OFFSET :offset",
        {**params, "limit": int(limit), "offset": int(offset)},
    )
    return {"logs": [_decode(r) for r in rows], "total": int(total["n"]) if total else 0}


def logs_since(since: datetime, sync_type: Optional[str] = None) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {"since": db_service.iso(since)}
    sql = f"SELECT * FROM {TABLE} WHERE synced_at >= :since"
    if sync_type:
        sql += " AND sync_type = :sync_type"
        params["sync_type"] = sync_type
    sql += " ORDER BY synced_at ASC, id ASC"
    return [_decode(r) for r in db_service.fetch_all(sql, params)]


def find_stuck(threshold_minutes: int, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    cutoff = (now or db_service.utc_now()) - timedelta(minutes=threshold_minutes)
    rows = db_service.fetch_all(
        f"SELECT * FROM {TABLE} WHERE status = 'running' AND synced_at < :cutoff ORDER BY synced_at ASC",
        {"cutoff": db_service.iso(cutoff)},
    )
    return [_decode(r) for r in rows]


def terminate_sync(sync_id: int, reason: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """
    Force a running row to 'error'. Returns the updated row, or None when
    the row was missing or had already left 'running'.
    """
    row = get_sync(sync_id)
    if row is None or row["status"] != "running":
        return None
    now = now or db_service.utc_now()
    started = db_service.parse_iso(row["synced_at"]) or now
    minutes = max(0, int((now - started).total_seconds() // 60))
    metadata = dict(row.get("metadata") or {})
    metadata["terminationReason"] = reason
    metadata["terminatedAt"] = db_service.iso(now)
    changed = db_service.execute_write(
        f"""
        UPDATE {TABLE}
        SET status = 'error',
            completed_at = :completed_at,
            duration_ms = :duration_ms,
            errors = :errors,
            metadata = :metadata,
            active_marker = NULL
        WHERE id = :id AND status = 'running'
        """,
        {
            "id": sync_id,
            "completed_at": db_service.iso(now),
            "duration_ms": int((now - started).total_seconds() * 1000),
            "errors": json.dumps([f"Sync terminated after running for {minutes} minutes"]),
            "metadata": json.dumps(metadata, default=str),
        },
    )
    if not changed:
        return None
    LOGGER.warning("[SyncLog] terminated sync %s after %s minutes: %s", sync_id, minutes, reason)
    return get_sync(sync_id)


def sweep_stuck(threshold_minutes: int, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Terminate every run older than the threshold. Returns the rows this call flipped."""
    terminated = []
    for row in find_stuck(threshold_minutes, now):
        updated = terminate_sync(row["id"], f"Exceeded {threshold_minutes} minute timeout", now)
        if updated is not None:
            terminated.append(updated)
    return terminated
