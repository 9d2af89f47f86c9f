import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

import config

logger = logging.getLogger(__name__)
DATABASE_URL = config.DATABASE_URL

# ====================================================================
# One engine per URL. Tests swap DATABASE_URL for a temp SQLite file.
# SQLite allows a single writer, so writes against it go through
# _db_write_lock; Postgres handles its own row locking.
# ====================================================================

class RecordNotFoundError(LookupError):
    """Raised by stores when a row looked up by id does not exist."""


_engines: Dict[str, Engine] = {}
_engines_lock = Lock()
_db_write_lock = Lock()


def get_engine() -> Engine:
    url = DATABASE_URL
    with _engines_lock:
        engine = _engines.get(url)
        if engine is None:
            if url.startswith("sqlite"):
                engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 10})
            else:
                engine = create_engine(url, pool_pre_ping=True, pool_recycle=300, pool_size=5, max_overflow=5)
            _engines[url] = engine
        return engine


def is_sqlite() -> bool:
    return get_engine().dialect.name == "sqlite"


@contextmanager
def get_db_connection():
    """
    Context manager for a database connection.
    - Caller commits its own writes (conn.commit())
    - Ensures cleanup even on exception
    """
    conn: Optional[Connection] = None
    try:
        conn = get_engine().connect()
        yield conn
    except SQLAlchemyError as e:
        logger.error(f"[DB] Database error: {e}", exc_info=True)
        raise
    finally:
        if conn is not None:
            try:
                conn.close()
            except Exception as e:
                logger.warning(f"[DB] Error closing connection: {e}")


@contextmanager
def _write_guard():
    if is_sqlite():
        with _db_write_lock:
            yield
    else:
        yield


def fetch_all(sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    with get_db_connection() as conn:
        rows = conn.execute(text(sql), params or {}).fetchall()
    return [dict(row._mapping) for row in rows]


def fetch_one(sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    with get_db_connection() as conn:
        row = conn.execute(text(sql), params or {}).fetchone()
    return dict(row._mapping) if row is not None else None


def execute_write(sql: str, params: Optional[Dict[str, Any]] = None) -> int:
    """
    Run a single INSERT/UPDATE/DELETE and commit.

    Returns the number of affected rows.
    """
    with _write_guard():
        with get_db_connection() as conn:
            try:
                result = conn.execute(text(sql), params or {})
                conn.commit()
                return result.rowcount
            except SQLAlchemyError as exc:
                conn.rollback()
                logger.error(f"[DB] Write failed for SQL: {sql.strip()[:120]} params={params}: {exc}")
                raise


def execute_returning(sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """
    Run a write with a RETURNING clause and commit.

    Returns the first returned row, or None when the statement produced none
    (e.g. ON CONFLICT DO NOTHING).
    """
    with _write_guard():
        with get_db_connection() as conn:
            try:
                row = conn.execute(text(sql), params or {}).fetchone()
                conn.commit()
                return dict(row._mapping) if row is not None else None
            except SQLAlchemyError as exc:
                conn.rollback()
                logger.error(f"[DB] Write failed for SQL: {sql.strip()[:120]} params={params}: {exc}")
                raise


@contextmanager
def write_transaction():
    """
    Yield a connection for several dependent writes; commits on exit,
    rolls back everything on any error.
    """
    with _write_guard():
        with get_db_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise


def execute_many_write(sql: str, seq_of_params: Iterable[Dict[str, Any]]) -> None:
    """
    Batched write helper; the whole batch commits or rolls back together.
    """
    batch = list(seq_of_params)
    if not batch:
        return
    with _write_guard():
        with get_db_connection() as conn:
            try:
                conn.execute(text(sql), batch)
                conn.commit()
            except SQLAlchemyError as exc:
                conn.rollback()
                logger.error(f"[DB] Batch write failed for SQL: {sql.strip()[:120]} params_count={len(batch)}: {exc}")
                raise


# ----------------------------
# Time helpers (timestamps are stored as ISO-8601 UTC text)
# ----------------------------
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return iso(utc_now())


def parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ----------------------------
# Schema
# ----------------------------
def _id_column() -> str:
    if is_sqlite():
        return "id INTEGER PRIMARY KEY AUTOINCREMENT"
    return "id SERIAL PRIMARY KEY"


def _schema_statements() -> List[str]:
    id_col = _id_column()
    return [
        f"""
        CREATE TABLE IF NOT EXISTS inventory_items (
            {id_col},
            sku TEXT NOT NULL UNIQUE,
            product_name TEXT,
            current_stock DOUBLE PRECISION DEFAULT 0,
            cost DOUBLE PRECISION DEFAULT 0,
            reorder_point DOUBLE PRECISION DEFAULT 0,
            reorder_quantity DOUBLE PRECISION DEFAULT 0,
            vendor TEXT,
            location TEXT,
            sales_last_30_days DOUBLE PRECISION DEFAULT 0,
            sales_last_90_days DOUBLE PRECISION DEFAULT 0,
            sales_velocity DOUBLE PRECISION DEFAULT 0,
            maximum_stock DOUBLE PRECISION,
            finale_id TEXT,
            content_hash TEXT,
            last_synced_at TEXT,
            sync_priority INTEGER DEFAULT 0,
            active INTEGER DEFAULT 1,
            discontinued INTEGER DEFAULT 0,
            last_updated TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS vendors (
            {id_col},
            finale_id TEXT UNIQUE,
            name TEXT NOT NULL UNIQUE,
            contact_name TEXT,
            email TEXT,
            phone TEXT,
            address TEXT,
            payment_terms TEXT,
            lead_time_days INTEGER DEFAULT 7,
            notes TEXT,
            active INTEGER DEFAULT 1,
            created_at TEXT,
            updated_at TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS purchase_orders (
            {id_col},
            order_number TEXT NOT NULL UNIQUE,
            vendor_id INTEGER,
            vendor_name TEXT,
            vendor_email TEXT,
            status TEXT NOT NULL DEFAULT 'draft',
            items TEXT NOT NULL DEFAULT '[]',
            total_amount DOUBLE PRECISION DEFAULT 0,
            shipping_cost DOUBLE PRECISION DEFAULT 0,
            tax_amount DOUBLE PRECISION DEFAULT 0,
            urgency_level TEXT,
            auto_generated INTEGER DEFAULT 0,
            created_by TEXT,
            notes TEXT,
            expected_date TEXT,
            approved_at TEXT,
            approved_by TEXT,
            sent_at TEXT,
            finale_order_id TEXT,
            created_at TEXT,
            updated_at TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS audit_logs (
            {id_col},
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT,
            user_id TEXT,
            details TEXT,
            created_at TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS sync_logs (
            {id_col},
            sync_type TEXT NOT NULL,
            status TEXT NOT NULL,
            synced_at TEXT NOT NULL,
            completed_at TEXT,
            items_processed INTEGER DEFAULT 0,
            items_updated INTEGER DEFAULT 0,
            items_failed INTEGER DEFAULT 0,
            duration_ms INTEGER,
            errors TEXT,
            metadata TEXT,
            active_marker TEXT UNIQUE
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS settings (
            id INTEGER PRIMARY KEY,
            finale_api_key TEXT,
            finale_api_secret TEXT,
            finale_account_path TEXT,
            finale_inventory_report_url TEXT,
            finale_vendors_report_url TEXT,
            sync_enabled INTEGER DEFAULT 1,
            sync_frequency_minutes INTEGER DEFAULT 60,
            low_stock_threshold INTEGER DEFAULT 10,
            critical_stock_threshold INTEGER DEFAULT 0,
            alert_email TEXT,
            last_sync_time TEXT,
            updated_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_inventory_vendor ON inventory_items (vendor)",
        "CREATE INDEX IF NOT EXISTS idx_sync_logs_synced_at ON sync_logs (synced_at)",
        "CREATE INDEX IF NOT EXISTS idx_po_status ON purchase_orders (status)",
        "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_logs (entity_type, entity_id)",
    ]


def init_schema() -> None:
    """
    Create all tables if they do not exist. Safe to call repeatedly.
    """
    try:
        with _write_guard():
            with get_db_connection() as conn:
                for stmt in _schema_statements():
                    conn.execute(text(stmt))
                conn.commit()
        logger.info("[DB] schema ensured (%s)", get_engine().dialect.name)
    except SQLAlchemyError as exc:
        logger.error(f"[DB] Failed to ensure schema: {exc}", exc_info=True)
        raise


def ping() -> bool:
    with get_db_connection() as conn:
        conn.execute(text("SELECT 1"))
    return True
