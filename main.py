# =============================================
#  FINALE INVENTORY SYNC - API ENTRYPOINT
# =============================================

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from routes import (
    register_dashboard_routes,
    register_error_handlers,
    register_inventory_routes,
    register_purchase_order_routes,
    register_settings_routes,
    register_sync_routes,
    register_vendor_routes,
)
from services import cache
from services.db import init_schema, now_iso

# --- Logging configuration ---
LOG_DIR = Path(__file__).parent / "logs"
LOG_DIR.mkdir(exist_ok=True)

LOG_FILE_PATH = LOG_DIR / "inventory_sync.log"

root_logger = logging.getLogger()
logger = root_logger
if not root_logger.handlers:
    root_logger.setLevel(config.LOG_LEVEL)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        LOG_FILE_PATH,
        maxBytes=5_000_000,  # 5 MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

logging.getLogger("uvicorn").propagate = True
logging.getLogger("uvicorn.error").propagate = True
logging.getLogger("uvicorn.access").propagate = True
# --- End logging configuration ---

app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)

register_error_handlers(app)
register_inventory_routes(app)
register_purchase_order_routes(app)
register_vendor_routes(app)
register_sync_routes(app)
register_dashboard_routes(app)
register_settings_routes(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    """Ensure tables exist before the first request."""
    init_schema()
    if not cache.ping():
        logger.warning("[Startup] Redis unreachable at startup; reads will fall back to the database")
    logger.info("[Startup] %s %s ready", config.APP_NAME, config.APP_VERSION)


@app.get("/api/ping")
def ping():
    return {"status": "ok", "service": config.APP_NAME, "timestamp": now_iso()}


if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8001, reload=True)
