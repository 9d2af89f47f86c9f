# ================================================================
#  FINALE AUTH MODULE
#  ---------------------------------------------------------------
#  - Resolve credentials (env first, then the settings store)
#  - Normalize the account path into the API base URL
#  - Build the HTTP Basic Authorization header
# ================================================================

import base64
import logging
import re
from dataclasses import dataclass
from typing import Optional

import config

logger = logging.getLogger("finale_auth")

FINALE_HOST = "https://app.finaleinventory.com"


class FinaleConfigError(RuntimeError):
    """Raised when Finale credentials are missing or incomplete."""


def clean_account_path(account_path: str) -> str:
    """
    Accept an account name or any pasted Finale URL and return the bare
    account segment, e.g. "https://app.finaleinventory.com/acme/api/" -> "acme".
    """
    path = (account_path or "").strip()
    path = re.sub(r"^https?://", "", path)
    path = re.sub(r"^app\.finaleinventory\.com/", "", path)
    path = re.sub(r"\.finaleinventory\.com.*$", "", path)
    path = re.sub(r"^app\.", "", path)
    path = path.strip("/")
    path = re.sub(r"/api(/.*)?$", "", path)
    return path.strip("/").strip()


@dataclass(frozen=True)
class FinaleCredentials:
    api_key: str
    api_secret: str
    account_path: str

    @property
    def base_url(self) -> str:
        return f"{FINALE_HOST}/{clean_account_path(self.account_path)}/api"

    @property
    def auth_header(self) -> str:
        token = base64.b64encode(f"{self.api_key}:{self.api_secret}".encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    def is_complete(self) -> bool:
        return bool(self.api_key and self.api_secret and clean_account_path(self.account_path))


def get_finale_credentials(settings: Optional[dict] = None) -> Optional[FinaleCredentials]:
    """
    Resolve Finale credentials.

    Environment variables win; the settings store fills any gaps. Returns
    None when the combined result is incomplete.
    """
    if settings is None:
        from services.settings_store import get_settings_store

        try:
            settings = get_settings_store().get()
        except Exception as exc:
            logger.warning(f"[FinaleAuth] Could not read settings store: {exc}")
            settings = {}

    creds = FinaleCredentials(
        api_key=config.FINALE_API_KEY or (settings.get("finale_api_key") or ""),
        api_secret=config.FINALE_API_SECRET or (settings.get("finale_api_secret") or ""),
        account_path=config.FINALE_ACCOUNT_PATH or (settings.get("finale_account_path") or ""),
    )
    if not creds.is_complete():
        logger.info("[FinaleAuth] Finale credentials not configured")
        return None
    return creds


def require_finale_credentials(settings: Optional[dict] = None) -> FinaleCredentials:
    creds = get_finale_credentials(settings)
    if creds is None:
        raise FinaleConfigError("Finale API credentials not configured")
    return creds
