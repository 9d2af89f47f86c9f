"""Finale sync API routes: trigger, monitor, recover."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, Query
from sqlalchemy.exc import SQLAlchemyError

from auth.finale_auth import FinaleConfigError
from routes.responses import error_response, server_error
from services import finale_sync, sync_log_store, sync_monitoring
from services.finale_api import FinaleApiError
from services.schemas import RebuildCacheRequest, SyncTriggerRequest, TerminateSyncRequest

router = APIRouter()
logger = logging.getLogger(__name__)


def _sync_failure(exc: finale_sync.SyncError):
    cause = exc.__cause__
    if isinstance(cause, FinaleConfigError):
        return error_response(str(cause), 400)
    if isinstance(cause, FinaleApiError):
        return error_response(str(exc), 502, upstreamStatus=cause.status_code)
    return error_response(str(exc), 500)


def _already_running(exc: finale_sync.SyncAlreadyRunningError):
    return error_response(
        "Sync already in progress",
        409,
        syncId=exc.running.get("id"),
        runningForSeconds=exc.running_seconds,
    )


@router.post("/api/sync-finale/trigger")
def trigger_sync(body: Optional[SyncTriggerRequest] = None):
    body = body or SyncTriggerRequest()
    try:
        return finale_sync.run_sync(
            body.strategy,
            dry_run=body.dryRun,
            filter_year=body.filterYear,
            force_full_sync=body.forceFullSync,
            vendor_filter=body.vendorFilter,
            priority_threshold=body.priorityThreshold,
        )
    except finale_sync.SyncAlreadyRunningError as exc:
        return _already_running(exc)
    except finale_sync.SyncError as exc:
        return _sync_failure(exc)
    except SQLAlchemyError as exc:
        return server_error("run sync", exc)


@router.get("/api/sync-finale/status")
def get_sync_status():
    try:
        return sync_monitoring.get_sync_status()
    except SQLAlchemyError as exc:
        return server_error("load sync status", exc)


@router.get("/api/sync-finale/health")
def get_sync_health():
    result = sync_monitoring.check_health()
    return result if result["status"] != "unhealthy" else error_response("Unhealthy", 503, **result)


@router.get("/api/sync-finale/validate")
def validate_sync_data():
    try:
        return sync_monitoring.validate_data()
    except SQLAlchemyError as exc:
        return server_error("validate inventory data", exc)


@router.get("/api/sync-finale/metrics")
def get_sync_metrics(days: int = Query(7, ge=1, le=90)):
    try:
        return sync_monitoring.get_sync_metrics(days)
    except SQLAlchemyError as exc:
        return server_error("load sync metrics", exc)


@router.get("/api/sync-finale/history")
def get_sync_history(
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    status: Optional[str] = Query(None, pattern="^(running|success|error|partial)$"),
    syncType: Optional[str] = None,
):
    try:
        result = sync_log_store.list_history(limit=limit, offset=offset, status=status, sync_type=syncType)
    except SQLAlchemyError as exc:
        return server_error("load sync history", exc)
    return {**result, "limit": limit, "offset": offset}


@router.get("/api/sync-finale/check-stuck")
def check_stuck_syncs(autoFix: bool = False, thresholdMinutes: Optional[int] = Query(None, ge=1, le=1440)):
    try:
        return finale_sync.check_stuck_syncs(auto_fix=autoFix, threshold_minutes=thresholdMinutes)
    except SQLAlchemyError as exc:
        return server_error("check stuck syncs", exc)


@router.post("/api/sync-finale/check-stuck")
def terminate_stuck_sync(body: TerminateSyncRequest):
    try:
        row = finale_sync.terminate_sync(body.syncId, body.reason or "Manually terminated")
    except SQLAlchemyError as exc:
        return server_error("terminate sync", exc)
    if row is None:
        return error_response(f"Sync {body.syncId} is not running", 404)
    return {"success": True, "sync": row}


@router.post("/api/sync-vendors")
def sync_vendors(dryRun: bool = False):
    try:
        return finale_sync.run_vendor_sync(dry_run=dryRun)
    except finale_sync.SyncAlreadyRunningError as exc:
        return _already_running(exc)
    except finale_sync.SyncError as exc:
        return _sync_failure(exc)
    except SQLAlchemyError as exc:
        return server_error("sync vendors", exc)


@router.post("/api/sync/rebuild-cache")
def rebuild_cache(body: Optional[RebuildCacheRequest] = None):
    body = body or RebuildCacheRequest()
    try:
        return finale_sync.rebuild_cache(timeout_seconds=body.timeoutSeconds)
    except FinaleConfigError as exc:
        return error_response(str(exc), 400)
    except finale_sync.CacheRebuildTimeout as exc:
        return error_response(str(exc), 504)
    except FinaleApiError as exc:
        return error_response(str(exc), 502, upstreamStatus=exc.status_code)
    except SQLAlchemyError as exc:
        return server_error("rebuild cache", exc)


def register_sync_routes(app: FastAPI) -> None:
    app.include_router(router)
