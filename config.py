import logging
import os
from pathlib import Path

# Load .env early so os.getenv picks up local dev secrets.
try:  # pragma: no cover - environment bootstrap
    from dotenv import load_dotenv

    _DOTENV_PATHS = [Path.cwd() / ".env", Path(__file__).resolve().parent / ".env"]
    for _env_path in _DOTENV_PATHS:
        if _env_path.exists():
            load_dotenv(dotenv_path=_env_path, override=False)
except Exception as exc:
    logging.getLogger(__name__).warning("Failed to load .env: %s", exc)

APP_NAME = "Finale Inventory Sync"
APP_VERSION = "1.0.0"

# ----------------------------
# Helpers
# ----------------------------
def _str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Invalid integer for %s=%r; using %s", name, raw, default)
        return default


def _bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


# ----------------------------
# Finale credentials (env first; settings store is the fallback)
# ----------------------------
FINALE_API_KEY = _str("FINALE_API_KEY")
FINALE_API_SECRET = _str("FINALE_API_SECRET")
FINALE_ACCOUNT_PATH = _str("FINALE_ACCOUNT_PATH")
FINALE_INVENTORY_REPORT_URL = _str("FINALE_INVENTORY_REPORT_URL")
FINALE_VENDORS_REPORT_URL = _str("FINALE_VENDORS_REPORT_URL")
FINALE_HTTP_TIMEOUT = _int("FINALE_HTTP_TIMEOUT", 30)

# ----------------------------
# Storage
# ----------------------------
DATABASE_URL = _str(
    "DATABASE_URL",
    "sqlite:///" + str(Path(__file__).resolve().parent / "inventory.db"),
)
REDIS_URL = _str("REDIS_URL", "redis://localhost:6379/0")

# "db" keeps settings in the settings table, "file" in a JSON document.
SETTINGS_BACKEND = _str("SETTINGS_BACKEND", "db").lower()
SETTINGS_FILE = _str(
    "SETTINGS_FILE",
    str(Path(__file__).resolve().parent / "settings.json"),
)

# ----------------------------
# Sync tuning
# ----------------------------
SYNC_BATCH_SIZE = _int("SYNC_BATCH_SIZE", 100)
SYNC_STUCK_MINUTES = _int("SYNC_STUCK_MINUTES", 30)
CACHE_REBUILD_TIMEOUT_SECONDS = _int("CACHE_REBUILD_TIMEOUT_SECONDS", 240)
DEFAULT_SYNC_FREQUENCY_MINUTES = _int("DEFAULT_SYNC_FREQUENCY_MINUTES", 60)
DEFAULT_LOW_STOCK_THRESHOLD = _int("DEFAULT_LOW_STOCK_THRESHOLD", 10)
SYNC_ENABLED_DEFAULT = _bool("SYNC_ENABLED_DEFAULT", True)

LOG_LEVEL = _str("INVENTORY_LOG_LEVEL", "INFO").upper()
