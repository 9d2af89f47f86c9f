"""
Settings API routes.

/api/settings and /api/settings/simple read and write the same store; the
simple variant keeps the flat payload older clients send. Secrets always
leave masked, and a masked value sent back keeps the stored secret.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, FastAPI
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from routes.responses import error_response, server_error
from services.schemas import SettingsUpdate
from services.settings_store import get_settings_store, is_masked, masked

router = APIRouter(prefix="/api/settings")
logger = logging.getLogger(__name__)

# Legacy flat keys accepted by /simple.
SIMPLE_ALIASES = {
    "apiKey": "finale_api_key",
    "apiSecret": "finale_api_secret",
    "accountPath": "finale_account_path",
    "inventoryReportUrl": "finale_inventory_report_url",
    "vendorsReportUrl": "finale_vendors_report_url",
    "syncEnabled": "sync_enabled",
    "syncFrequencyMinutes": "sync_frequency_minutes",
    "lowStockThreshold": "low_stock_threshold",
    "criticalStockThreshold": "critical_stock_threshold",
    "alertEmail": "alert_email",
}


def _credential_flags(settings: Dict[str, Any]) -> Dict[str, bool]:
    return {
        "has_api_key": bool(settings.get("finale_api_key")),
        "has_api_secret": bool(settings.get("finale_api_secret")),
        "has_account_path": bool(settings.get("finale_account_path")),
    }


def _save(changes: Dict[str, Any]):
    store = get_settings_store()
    saved = store.save(changes)
    kept = sorted(k for k, v in changes.items() if is_masked(v))
    if kept:
        logger.info("[Settings] kept stored secrets for masked fields %s", kept)
    return saved


@router.get("")
def get_settings():
    try:
        settings = get_settings_store().get()
    except SQLAlchemyError as exc:
        return server_error("load settings", exc)
    return {"settings": masked(settings), **_credential_flags(settings)}


@router.put("")
def update_settings(body: SettingsUpdate):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        return error_response("No settings supplied", 400)
    try:
        saved = _save(changes)
    except SQLAlchemyError as exc:
        return server_error("save settings", exc)
    return {"success": True, "settings": masked(saved)}


@router.get("/simple")
def get_simple_settings():
    try:
        settings = masked(get_settings_store().get())
    except SQLAlchemyError as exc:
        return server_error("load settings", exc)
    return {alias: settings.get(field) for alias, field in SIMPLE_ALIASES.items()}


@router.post("/simple")
def save_simple_settings(payload: Dict[str, Any]):
    raw = {SIMPLE_ALIASES.get(k, k): v for k, v in payload.items()}
    try:
        changes = SettingsUpdate(**raw).model_dump(exclude_unset=True)
    except ValidationError as exc:
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return error_response("Validation failed", 400, details=details)
    if not changes:
        return error_response("No settings supplied", 400)
    try:
        saved = masked(_save(changes))
    except SQLAlchemyError as exc:
        return server_error("save settings", exc)
    return {"success": True, **{alias: saved.get(field) for alias, field in SIMPLE_ALIASES.items()}}


def register_settings_routes(app: FastAPI) -> None:
    app.include_router(router)
