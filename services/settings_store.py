"""
Application settings behind one interface.

Two backends share the same contract: the settings table (singleton row
id=1) and a JSON document on disk. SETTINGS_BACKEND picks one.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import config
from services import db as db_service

logger = logging.getLogger(__name__)

SETTINGS_BACKEND = config.SETTINGS_BACKEND
SETTINGS_FILE = config.SETTINGS_FILE

SECRET_FIELDS = ("finale_api_key", "finale_api_secret")
MASK_PREFIX = "***"

DEFAULTS: Dict[str, Any] = {
    "finale_api_key": None,
    "finale_api_secret": None,
    "finale_account_path": None,
    "finale_inventory_report_url": None,
    "finale_vendors_report_url": None,
    "sync_enabled": config.SYNC_ENABLED_DEFAULT,
    "sync_frequency_minutes": config.DEFAULT_SYNC_FREQUENCY_MINUTES,
    "low_stock_threshold": config.DEFAULT_LOW_STOCK_THRESHOLD,
    "critical_stock_threshold": 0,
    "alert_email": None,
    "last_sync_time": None,
    "updated_at": None,
}
FIELDS = tuple(DEFAULTS)


def mask_secret(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    return MASK_PREFIX + str(value)[-4:]


def is_masked(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(MASK_PREFIX)


def masked(settings: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(settings)
    for field in SECRET_FIELDS:
        out[field] = mask_secret(out.get(field))
    return out


def _merge_changes(current: Mapping[str, Any], changes: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(current)
    for key, value in changes.items():
        if key not in DEFAULTS or key == "updated_at":
            continue
        # A masked secret echoed back by a client means "keep what is stored".
        if key in SECRET_FIELDS and is_masked(value):
            continue
        merged[key] = value
    merged["updated_at"] = db_service.now_iso()
    return merged


class SettingsStore:
    name = "base"

    def get(self) -> Dict[str, Any]:
        raise NotImplementedError

    def save(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update_last_sync_time(self, when_iso: Optional[str] = None) -> None:
        self.save({"last_sync_time": when_iso or db_service.now_iso()})


class DbSettingsStore(SettingsStore):
    name = "db"

    def get(self) -> Dict[str, Any]:
        row = db_service.fetch_one("SELECT * FROM settings WHERE id = 1")
        settings = dict(DEFAULTS)
        if row:
            for key in FIELDS:
                if row.get(key) is not None:
                    settings[key] = row[key]
        settings["sync_enabled"] = bool(settings["sync_enabled"])
        return settings

    def save(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        merged = _merge_changes(self.get(), changes)
        params = {key: merged.get(key) for key in FIELDS}
        params["sync_enabled"] = 1 if merged.get("sync_enabled") else 0
        updates = ", ".join(f"{key} = excluded.{key}" for key in FIELDS)
        db_service.execute_write(
            f"""
            INSERT INTO settings (id, {", ".join(FIELDS)})
            VALUES (1, {", ".join(":" + k for k in FIELDS)})
            ON CONFLICT (id) DO UPDATE SET {updates}
            """,
            params,
        )
        logger.info("[Settings] saved (db): %s", sorted(k for k in changes if k in DEFAULTS))
        return self.get()


class FileSettingsStore(SettingsStore):
    name = "file"

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(f"[Settings] Unreadable settings file {self.path}: {exc}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self) -> Dict[str, Any]:
        settings = dict(DEFAULTS)
        settings.update({k: v for k, v in self._read().items() if k in DEFAULTS})
        return settings

    def save(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            merged = _merge_changes(self.get(), changes)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(merged, indent=2, default=str), encoding="utf-8")
            os.replace(tmp, self.path)
        logger.info("[Settings] saved (file): %s", sorted(k for k in changes if k in DEFAULTS))
        return self.get()


def get_settings_store() -> SettingsStore:
    if SETTINGS_BACKEND == "file":
        return FileSettingsStore(SETTINGS_FILE)
    if SETTINGS_BACKEND != "db":
        logger.warning("[Settings] Unknown SETTINGS_BACKEND=%r; using db", SETTINGS_BACKEND)
    return DbSettingsStore()
