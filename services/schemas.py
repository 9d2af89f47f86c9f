"""Request bodies accepted by the API routes."""

from __future__ import annotations

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

StockStatus = Literal["critical", "low", "adequate", "overstocked", "out_of_stock", "in_stock", "reorder", "all"]
PoStatus = Literal["draft", "pending_approval", "approved", "sent", "partial", "received", "cancelled"]


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    value = value.strip()
    if not _EMAIL_RE.match(value):
        raise ValueError("must be a valid email address")
    return value


# ----------------------------
# Inventory
# ----------------------------
class InventoryItemCreate(BaseModel):
    sku: str = Field(..., min_length=1, max_length=100)
    product_name: str = Field(..., min_length=1, max_length=500)
    current_stock: float = Field(default=0, ge=0)
    cost: float = Field(default=0, ge=0)
    reorder_point: float = Field(default=0, ge=0)
    reorder_quantity: float = Field(default=0, ge=0)
    vendor: Optional[str] = None
    location: Optional[str] = None
    sales_last_30_days: float = Field(default=0, ge=0)
    sales_last_90_days: float = Field(default=0, ge=0)
    maximum_stock: Optional[float] = Field(default=None, ge=0)

    @field_validator("sku")
    @classmethod
    def _strip_sku(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("sku must not be blank")
        return value


class InventoryItemUpdate(BaseModel):
    id: Optional[int] = None
    sku: Optional[str] = None
    product_name: Optional[str] = Field(default=None, min_length=1, max_length=500)
    current_stock: Optional[float] = Field(default=None, ge=0)
    cost: Optional[float] = Field(default=None, ge=0)
    reorder_point: Optional[float] = Field(default=None, ge=0)
    reorder_quantity: Optional[float] = Field(default=None, ge=0)
    vendor: Optional[str] = None
    location: Optional[str] = None
    sales_last_30_days: Optional[float] = Field(default=None, ge=0)
    sales_last_90_days: Optional[float] = Field(default=None, ge=0)
    maximum_stock: Optional[float] = Field(default=None, ge=0)
    active: Optional[bool] = None
    discontinued: Optional[bool] = None

    @model_validator(mode="after")
    def _require_key(self):
        if self.id is None and not (self.sku or "").strip():
            raise ValueError("id or sku is required")
        return self


# ----------------------------
# Vendors
# ----------------------------
class VendorCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    payment_terms: Optional[str] = None
    lead_time_days: int = Field(default=7, ge=0, le=365)
    notes: Optional[str] = None
    active: bool = True

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


class VendorUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    payment_terms: Optional[str] = None
    lead_time_days: Optional[int] = Field(default=None, ge=0, le=365)
    notes: Optional[str] = None
    active: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


# ----------------------------
# Purchase orders
# ----------------------------
class PurchaseOrderItem(BaseModel):
    sku: str = Field(..., min_length=1)
    product_name: Optional[str] = None
    quantity: float = Field(..., gt=0)
    unit_cost: float = Field(default=0, ge=0)
    inventory_item_id: Optional[int] = None


class PurchaseOrderCreate(BaseModel):
    vendor_id: Optional[int] = None
    vendor_name: Optional[str] = None
    vendor_email: Optional[str] = None
    items: List[PurchaseOrderItem] = Field(..., min_length=1)
    shipping_cost: float = Field(default=0, ge=0)
    tax_amount: float = Field(default=0, ge=0)
    notes: Optional[str] = None
    expected_date: Optional[str] = None

    @field_validator("vendor_email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)

    @model_validator(mode="after")
    def _require_vendor(self):
        if self.vendor_id is None and not (self.vendor_name or "").strip():
            raise ValueError("vendor_id or vendor_name is required")
        return self


class PurchaseOrderUpdate(BaseModel):
    status: Optional[PoStatus] = None
    items: Optional[List[PurchaseOrderItem]] = Field(default=None, min_length=1)
    shipping_cost: Optional[float] = Field(default=None, ge=0)
    tax_amount: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None
    expected_date: Optional[str] = None
    vendor_email: Optional[str] = None


class ManualPoItem(BaseModel):
    inventoryItemId: int
    quantity: float = Field(..., gt=0)


class GeneratePoRequest(BaseModel):
    type: Literal["critical", "out_of_stock", "reorder_point", "manual"]
    vendorId: Optional[int] = None
    items: Optional[List[ManualPoItem]] = None


# ----------------------------
# Sync
# ----------------------------
class SyncTriggerRequest(BaseModel):
    strategy: Literal["smart", "full", "inventory", "critical", "active"] = "smart"
    dryRun: bool = False
    filterYear: Optional[int] = Field(default=None, ge=2000, le=2100)
    forceFullSync: bool = False
    vendorFilter: Optional[str] = Field(default=None, max_length=200)
    priorityThreshold: Optional[int] = Field(default=None, ge=0, le=10)


class TerminateSyncRequest(BaseModel):
    syncId: int
    reason: Optional[str] = Field(default=None, max_length=500)


class RebuildCacheRequest(BaseModel):
    timeoutSeconds: Optional[int] = Field(default=None, ge=10, le=900)


# ----------------------------
# Settings
# ----------------------------
class SettingsUpdate(BaseModel):
    finale_api_key: Optional[str] = None
    finale_api_secret: Optional[str] = None
    finale_account_path: Optional[str] = None
    finale_inventory_report_url: Optional[str] = None
    finale_vendors_report_url: Optional[str] = None
    sync_enabled: Optional[bool] = None
    sync_frequency_minutes: Optional[int] = Field(default=None, ge=5, le=1440)
    low_stock_threshold: Optional[int] = Field(default=None, ge=0)
    critical_stock_threshold: Optional[int] = Field(default=None, ge=0)
    alert_email: Optional[str] = None

    @field_validator("alert_email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)

    @field_validator("finale_inventory_report_url", "finale_vendors_report_url")
    @classmethod
    def _validate_url(cls, value: Optional[str]) -> Optional[str]:
        if value in (None, ""):
            return value
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value
