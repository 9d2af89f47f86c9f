"""Routes package initializer."""

from .dashboard_routes import register_dashboard_routes
from .inventory_routes import register_inventory_routes
from .purchase_order_routes import register_purchase_order_routes
from .responses import register_error_handlers
from .settings_routes import register_settings_routes
from .sync_routes import register_sync_routes
from .vendor_routes import register_vendor_routes

__all__ = [
    "register_error_handlers",
    "register_inventory_routes",
    "register_purchase_order_routes",
    "register_vendor_routes",
    "register_sync_routes",
    "register_dashboard_routes",
    "register_settings_routes",
]
