import fnmatch

import pytest

import config
from services import cache
from services import db as db_service
from services import settings_store
from services.log_once import clear_log_once


class FakeRedis:
    """In-memory stand-in for the redis client surface the cache uses. `now` drives TTL expiry."""

    def __init__(self):
        self.now = 0.0
        self.store = {}

    def _live(self, key):
        entry = self.store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.now:
            del self.store[key]
            return None
        return value

    def get(self, key):
        return self._live(key)

    def setex(self, key, ttl, value):
        self.store[key] = (value, self.now + int(ttl))
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self.store.pop(key, None)
        return removed

    def scan_iter(self, match="*", count=None):
        return [key for key in list(self.store) if self._live(key) is not None and fnmatch.fnmatch(key, match)]

    def ping(self):
        return True

    def ttl(self, key):
        if self._live(key) is None:
            return -2
        return int(self.store[key][1] - self.now)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache, "_client", fake)
    cache.reset_cache_stats()
    clear_log_once("cache-unavailable")
    return fake


@pytest.fixture(autouse=True)
def _no_env_credentials(monkeypatch):
    for name in (
        "FINALE_API_KEY",
        "FINALE_API_SECRET",
        "FINALE_ACCOUNT_PATH",
        "FINALE_INVENTORY_REPORT_URL",
        "FINALE_VENDORS_REPORT_URL",
    ):
        monkeypatch.setattr(config, name, "")


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db_service, "DATABASE_URL", f"sqlite:///{tmp_path / 'inventory.db'}")
    monkeypatch.setattr(settings_store, "SETTINGS_BACKEND", "db")
    db_service.init_schema()
    return tmp_path
