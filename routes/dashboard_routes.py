"""Dashboard API routes. Every cached view reports whether it was served from Redis."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, Query

from routes.responses import error_response, server_error
from services import dashboard

router = APIRouter(prefix="/api/dashboard")
logger = logging.getLogger(__name__)


@router.get("/metrics")
def get_metrics(forceRefresh: bool = False):
    try:
        metrics, cache_status = dashboard.get_metrics(force_refresh=forceRefresh)
    except Exception as exc:
        return server_error("load dashboard metrics", exc)
    return {"metrics": metrics, "cacheStatus": cache_status}


@router.get("/critical-items")
def get_critical_items(limit: int = Query(20, ge=1, le=100), forceRefresh: bool = False):
    try:
        result, cache_status = dashboard.get_critical_items(limit=limit, force_refresh=forceRefresh)
    except Exception as exc:
        return server_error("load critical items", exc)
    return {**result, "cacheStatus": cache_status}


@router.get("/vendor-stats")
def get_vendor_stats(limit: int = Query(10, ge=1, le=100), forceRefresh: bool = False):
    try:
        result, cache_status = dashboard.get_vendor_stats(limit=limit, force_refresh=forceRefresh)
    except Exception as exc:
        return server_error("load vendor stats", exc)
    return {**result, "cacheStatus": cache_status}


@router.get("/po-summary")
def get_po_summary(forceRefresh: bool = False):
    try:
        result, cache_status = dashboard.get_po_summary(force_refresh=forceRefresh)
    except Exception as exc:
        return server_error("load purchase order summary", exc)
    return {**result, "cacheStatus": cache_status}


@router.get("/trends")
def get_trends(period: int = 30, forceRefresh: bool = False):
    if period not in dashboard.TREND_PERIODS:
        return error_response(f"period must be one of {list(dashboard.TREND_PERIODS)}", 400)
    try:
        result, cache_status = dashboard.get_trends(period=period, force_refresh=forceRefresh)
    except Exception as exc:
        return server_error("load trends", exc)
    return {**result, "cacheStatus": cache_status}


@router.get("/live-updates")
def get_live_updates(since: Optional[str] = None):
    try:
        return dashboard.get_live_updates(since=since)
    except Exception as exc:
        return server_error("load live updates", exc)


def register_dashboard_routes(app: FastAPI) -> None:
    app.include_router(router)
