"""
Finale Inventory REST client.

Wraps the product, vendor, inventoryitem and purchaseOrder endpoints plus the
pivot-table reporting API. Every upstream failure surfaces as FinaleApiError.
"""

from __future__ import annotations

import csv
import io
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

import config
from auth.finale_auth import FinaleCredentials

logger = logging.getLogger(__name__)

PRODUCT_PAGE_SIZE = 100
VENDOR_PAGE_SIZE = 100
INVENTORY_PAGE_SIZE = 2000
MAX_ATTEMPTS = 3
MAX_PAGES = 500
DEFAULT_LOCATION = "Shipping"


class FinaleApiError(RuntimeError):
    """Raised when the Finale API returns an error or an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# ----------------------------
# Payload helpers
# ----------------------------
def extract_list(payload: Any, *keys: str) -> List[Dict[str, Any]]:
    """Finale returns either a bare array or an object wrapping one."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def normalize_columnar(payload: Any, key_column: str = "productId") -> List[Dict[str, Any]]:
    """
    Turn Finale's column-oriented JSON ({"productId": [...], "quantityOnHand": [...]})
    into row dicts. Columns shorter than the key column are padded with None.
    """
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    keys = payload.get(key_column)
    if not isinstance(keys, list):
        return []
    columns = {name: values for name, values in payload.items() if isinstance(values, list)}
    rows: List[Dict[str, Any]] = []
    for idx in range(len(keys)):
        rows.append({name: (values[idx] if idx < len(values) else None) for name, values in columns.items()})
    return rows


def _to_float(value: Any, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    try:
        return float(str(value).replace(",", ""))
    except (TypeError, ValueError):
        return default


def _modified_year(product: Dict[str, Any]) -> Optional[int]:
    raw = product.get("lastModifiedDate") or product.get("lastUpdatedDate")
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).year
    except ValueError:
        return None


def parse_csv_report(text: str) -> List[Dict[str, Any]]:
    """Parse a CSV report; numeric-looking cells become floats, blanks None."""
    reader = csv.reader(io.StringIO(text.strip()))
    rows = list(reader)
    if not rows:
        return []
    headers = rows[0]
    out: List[Dict[str, Any]] = []
    for values in rows[1:]:
        row: Dict[str, Any] = {}
        for idx, header in enumerate(headers):
            cell = values[idx] if idx < len(values) else ""
            if cell == "":
                row[header] = None
                continue
            try:
                row[header] = float(cell)
            except ValueError:
                row[header] = cell
        out.append(row)
    return out


def report_url_for_format(report_url: str, fmt: str) -> str:
    """Switch a saved report URL to the non-streaming pivotTable API in the given format."""
    url = report_url.replace("pivotTableStream", "pivotTable")
    parts = urlsplit(url)
    path = parts.path
    stem, dot, _ext = path.rpartition(".")
    if dot and "/" not in _ext:
        path = f"{stem}.{'json' if fmt == 'jsonObject' else 'csv'}"
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query["format"] = fmt
    return urlunsplit((parts.scheme, parts.netloc, path, urlencode(query), parts.fragment))


# ----------------------------
# Transforms (Finale -> stored rows)
# ----------------------------
def transform_product(product: Dict[str, Any], now_iso: Optional[str] = None) -> Dict[str, Any]:
    sku = str(product.get("productSku") or product.get("sku") or product.get("productId") or "").strip()
    sales30 = _to_float(product.get("salesLast30Days", product.get("Sales last 30 days")))
    sales90 = _to_float(product.get("salesLast90Days", product.get("Sales last 90 days")))
    return {
        "sku": sku,
        "product_name": product.get("productName") or product.get("internalName") or product.get("description") or sku,
        "current_stock": _to_float(product.get("quantityOnHand", product.get("quantityAvailable"))),
        "cost": _to_float(product.get("averageCost", product.get("unitCost"))),
        "reorder_point": _to_float(product.get("reorderPoint", product.get("reorderLevel"))),
        "reorder_quantity": _to_float(product.get("reorderQuantity")),
        "vendor": product.get("primarySupplierName") or product.get("supplier") or None,
        "location": product.get("facilityName") or DEFAULT_LOCATION,
        "sales_last_30_days": sales30,
        "sales_last_90_days": sales90,
        "sales_velocity": round(sales30 / 30.0, 4) if sales30 else 0.0,
        "finale_id": str(product.get("productId") or sku),
        "last_updated": now_iso or datetime.now(timezone.utc).isoformat(),
    }


INACTIVE_PRODUCT_STATUSES = {"PRODUCT_INACTIVE", "INACTIVE", "DISCONTINUED", "PRODUCT_DISCONTINUED"}


def is_active_product(product: Dict[str, Any]) -> bool:
    """Products without a status are treated as active."""
    status = str(product.get("statusId") or product.get("Status") or "").strip().upper()
    return status not in INACTIVE_PRODUCT_STATUSES


REPORT_ALIASES = {
    "productSku": ("Product ID", "SKU", "Item ID"),
    "productName": ("Product Name", "Description", "Name"),
    "primarySupplierName": ("Supplier 1", "Supplier", "Vendor", "Primary Supplier"),
    "quantityOnHand": ("Units in stock", "On hand", "Stock"),
    "reorderPoint": ("Reorder point", "Reorder Point"),
    "reorderQuantity": ("Reorder quantity", "Reorder Quantity"),
    "averageCost": ("Average cost", "Unit cost", "Cost"),
    "facilityName": ("Location",),
    "salesLast30Days": ("Sales last 30 days",),
    "salesLast90Days": ("Sales last 90 days",),
    "statusId": ("Status", "Product status"),
}


def report_row_to_product(row: Dict[str, Any]) -> Dict[str, Any]:
    product: Dict[str, Any] = {}
    for field, aliases in REPORT_ALIASES.items():
        for alias in aliases:
            if row.get(alias) not in (None, ""):
                product[field] = row[alias]
                break
    if "productSku" in product:
        product["productId"] = product["productSku"]
    return product


def transform_vendor(vendor: Dict[str, Any]) -> Dict[str, Any]:
    name = vendor.get("vendorName") or vendor.get("name") or vendor.get("groupName") or vendor.get("Vendor Name") or ""
    finale_id = vendor.get("vendorId") or vendor.get("partyId") or vendor.get("id") or vendor.get("Vendor ID")
    return {
        "finale_id": str(finale_id) if finale_id not in (None, "") else None,
        "name": str(name).strip() or "Unknown Vendor",
        "contact_name": vendor.get("contactName") or vendor.get("contact"),
        "email": vendor.get("email") or vendor.get("emailAddress") or vendor.get("Email"),
        "phone": vendor.get("phone") or vendor.get("phoneNumber"),
        "address": vendor.get("address") or vendor.get("streetAddress"),
        "payment_terms": vendor.get("paymentTerms"),
        "notes": vendor.get("notes") or vendor.get("description"),
    }


# ----------------------------
# Client
# ----------------------------
class FinaleApiClient:
    def __init__(
        self,
        credentials: FinaleCredentials,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credentials = credentials
        self.base_url = credentials.base_url
        self.session = session or requests.Session()
        self.timeout = timeout or config.FINALE_HTTP_TIMEOUT
        self._sleep = sleep

    def _headers(self, accept: str = "application/json") -> Dict[str, str]:
        return {
            "Authorization": self.credentials.auth_header,
            "Accept": accept,
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        accept: str = "application/json",
    ) -> requests.Response:
        """
        Perform a request with up to 3 attempts; 429, timeouts and connection
        errors back off 1s, 2s between attempts. Other non-2xx responses raise
        immediately.
        """
        url = self._url(path)
        last_error: Optional[FinaleApiError] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                resp = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=self._headers(accept),
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout:
                logger.warning(f"[Finale] {method} {path} timeout ({self.timeout}s), attempt {attempt}/{MAX_ATTEMPTS}")
                last_error = FinaleApiError(f"Finale request timed out after {self.timeout}s")
            except requests.exceptions.RequestException as exc:
                logger.warning(f"[Finale] {method} {path} network error: {exc}, attempt {attempt}/{MAX_ATTEMPTS}")
                last_error = FinaleApiError(f"Finale request failed: {exc}")
            else:
                if resp.status_code == 429:
                    logger.warning(f"[Finale] {method} {path} rate limited (429), attempt {attempt}/{MAX_ATTEMPTS}")
                    last_error = FinaleApiError("Finale API rate limit exceeded", status_code=429)
                elif resp.status_code >= 400:
                    body = (resp.text or "")[:300]
                    logger.error(f"[Finale] {method} {path} failed {resp.status_code}: {body}")
                    raise FinaleApiError(f"Finale API error: {resp.status_code} - {body}", status_code=resp.status_code)
                else:
                    return resp
            if attempt < MAX_ATTEMPTS:
                self._sleep(2 ** (attempt - 1))
        if last_error is None:
            raise FinaleApiError(f"Finale request {method} {path} made no attempts")
        raise last_error

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = self._request("GET", path, params=params)
        try:
            return resp.json()
        except ValueError as exc:
            raise FinaleApiError(f"Finale returned malformed JSON for {path}: {exc}", status_code=resp.status_code) from exc

    # ---- connection ----
    def test_connection(self) -> bool:
        try:
            self._get_json("product", params={"limit": 1})
            return True
        except FinaleApiError as exc:
            logger.warning(f"[Finale] Connection test failed: {exc}")
            return False

    # ---- paged collections ----
    def _paged(self, path: str, page_size: int, *list_keys: str) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        offset = 0
        for _ in range(MAX_PAGES):
            payload = self._get_json(path, params={"limit": page_size, "offset": offset})
            page = extract_list(payload, *list_keys)
            if not page and isinstance(payload, dict):
                page = normalize_columnar(payload, key_column=_columnar_key(payload))
            out.extend(page)
            logger.debug(f"[Finale] {path} offset={offset} got {len(page)}")
            if len(page) < page_size:
                break
            offset += page_size
        else:
            logger.warning(f"[Finale] {path} stopped after {MAX_PAGES} pages")
        return out

    def get_products(self, filter_year: Optional[int] = None) -> List[Dict[str, Any]]:
        """All products; with filter_year keep rows modified that year or undated."""
        products = self._paged("product", PRODUCT_PAGE_SIZE, "products", "productList")
        if filter_year is not None:
            products = [p for p in products if _modified_year(p) in (None, filter_year)]
        logger.info(f"[Finale] fetched {len(products)} products")
        return products

    def get_vendors(self) -> List[Dict[str, Any]]:
        vendors = self._paged("vendor", VENDOR_PAGE_SIZE, "vendors", "partyList")
        logger.info(f"[Finale] fetched {len(vendors)} vendors")
        return vendors

    def get_inventory_levels(self) -> Dict[str, float]:
        """Quantity on hand per productId, summed across facilities."""
        totals: Dict[str, float] = {}
        offset = 0
        for _ in range(MAX_PAGES):
            payload = self._get_json("inventoryitem/", params={"limit": INVENTORY_PAGE_SIZE, "offset": offset})
            rows = normalize_columnar(payload, "productId")
            for row in rows:
                product_id = row.get("productId")
                if not product_id:
                    continue
                totals[str(product_id)] = totals.get(str(product_id), 0.0) + _to_float(row.get("quantityOnHand"))
            if len(rows) < INVENTORY_PAGE_SIZE:
                break
            offset += INVENTORY_PAGE_SIZE
        logger.info(f"[Finale] inventory levels for {len(totals)} products")
        return totals

    # ---- reports ----
    def fetch_report(self, report_url: str, fmt: str = "jsonObject") -> List[Dict[str, Any]]:
        if fmt not in ("jsonObject", "csv"):
            raise ValueError(f"Unsupported report format: {fmt}")
        url = report_url_for_format(report_url, fmt)
        accept = "application/json" if fmt == "jsonObject" else "text/csv"
        resp = self._request("GET", url, accept=accept)
        if fmt == "csv":
            return parse_csv_report(resp.text or "")
        try:
            data = resp.json()
        except ValueError as exc:
            raise FinaleApiError(f"Finale report returned malformed JSON: {exc}", status_code=resp.status_code) from exc
        return data if isinstance(data, list) else extract_list(data, "rows", "data")

    def fetch_inventory_report(self, report_url: str) -> List[Dict[str, Any]]:
        rows = self.fetch_report(report_url, "jsonObject")
        products = [report_row_to_product(row) for row in rows]
        return [p for p in products if p.get("productSku")]

    # ---- purchase orders ----
    def create_purchase_order(self, po: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "orderDate": po.get("order_date") or datetime.now(timezone.utc).isoformat(),
            "expectedDate": po.get("expected_date"),
            "vendorName": po.get("vendor_name"),
            "notes": po.get("notes"),
            "items": [
                {
                    "productSku": item.get("sku"),
                    "quantity": item.get("quantity"),
                    "unitCost": item.get("unit_cost"),
                }
                for item in po.get("items") or []
            ],
        }
        resp = self._request("POST", "purchaseOrder", json_body=body)
        try:
            return resp.json()
        except ValueError:
            return {}

    def get_purchase_order(self, order_number: str) -> Dict[str, Any]:
        return self._get_json(f"purchaseOrder/{order_number}")

    def update_purchase_order_status(self, order_number: str, status: str) -> Dict[str, Any]:
        resp = self._request("PATCH", f"purchaseOrder/{order_number}", json_body={"status": status})
        try:
            return resp.json()
        except ValueError:
            return {}


def _columnar_key(payload: Dict[str, Any]) -> str:
    for key in ("productId", "partyId", "vendorId"):
        if isinstance(payload.get(key), list):
            return key
    return "productId"
