import pytest
import requests

from auth.finale_auth import FinaleConfigError, FinaleCredentials, clean_account_path, require_finale_credentials
from services import finale_api
from services.finale_api import (
    FinaleApiClient,
    FinaleApiError,
    is_active_product,
    normalize_columnar,
    parse_csv_report,
    report_url_for_format,
    transform_product,
    transform_vendor,
)

CREDS = FinaleCredentials(api_key="key", api_secret="secret", account_path="acme")


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(responses):
    session = _FakeSession(responses)
    sleeps = []
    return FinaleApiClient(CREDS, session=session, sleep=sleeps.append), session, sleeps


@pytest.mark.parametrize(
    "raw",
    ["acme", "https://app.finaleinventory.com/acme/api/", "app.finaleinventory.com/acme", "/acme/"],
)
def test_clean_account_path(raw):
    assert clean_account_path(raw) == "acme"


def test_credentials_build_base_url_and_basic_auth():
    assert CREDS.base_url == "https://app.finaleinventory.com/acme/api"
    assert CREDS.auth_header == "Basic a2V5OnNlY3JldA=="


def test_missing_credentials_raise_config_error():
    with pytest.raises(FinaleConfigError):
        require_finale_credentials({"finale_api_key": "k"})


def test_settings_fill_missing_credentials():
    creds = require_finale_credentials(
        {"finale_api_key": "k", "finale_api_secret": "s", "finale_account_path": "https://app.finaleinventory.com/shop/api"}
    )
    assert creds.base_url.endswith("/shop/api")


def test_products_are_paged_until_short_page(monkeypatch):
    monkeypatch.setattr("services.finale_api.PRODUCT_PAGE_SIZE", 2)
    client, session, _ = _client(
        [
            _FakeResponse(payload=[{"productId": "A"}, {"productId": "B"}]),
            _FakeResponse(payload={"products": [{"productId": "C"}]}),
        ]
    )
    products = client.get_products()
    assert [p["productId"] for p in products] == ["A", "B", "C"]
    assert [c["params"]["offset"] for c in session.calls] == [0, 2]
    assert session.calls[0]["headers"]["Authorization"] == CREDS.auth_header


def test_rate_limit_is_retried_with_backoff():
    client, session, sleeps = _client([_FakeResponse(429), _FakeResponse(payload=[{"productId": "A"}])])
    assert client.get_products() == [{"productId": "A"}]
    assert sleeps == [1]
    assert len(session.calls) == 2


def test_timeouts_exhaust_three_attempts():
    client, session, sleeps = _client([requests.exceptions.Timeout()] * 3)
    with pytest.raises(FinaleApiError, match="timed out"):
        client.get_products()
    assert len(session.calls) == 3
    assert sleeps == [1, 2]


def test_server_error_is_not_retried():
    client, session, _ = _client([_FakeResponse(500, text="boom")])
    with pytest.raises(FinaleApiError) as excinfo:
        client.get_vendors()
    assert excinfo.value.status_code == 500
    assert len(session.calls) == 1


def test_request_without_attempts_raises_api_error(monkeypatch):
    monkeypatch.setattr(finale_api, "MAX_ATTEMPTS", 0)
    client, session, _ = _client([])

    with pytest.raises(FinaleApiError, match="made no attempts"):
        client.get_products()
    assert session.calls == []


def test_inventory_levels_sum_across_facilities():
    payload = {"productId": ["A", "A", "B", None], "quantityOnHand": [3, 4, "1,200", 9]}
    client, _, _ = _client([_FakeResponse(payload=payload)])
    assert client.get_inventory_levels() == {"A": 7.0, "B": 1200.0}


def test_normalize_columnar_pads_short_columns():
    rows = normalize_columnar({"productId": ["A", "B"], "name": ["x"]})
    assert rows == [{"productId": "A", "name": "x"}, {"productId": "B", "name": None}]


def test_report_url_switches_to_pivot_table_format():
    url = report_url_for_format(
        "https://app.finaleinventory.com/acme/doc/report/pivotTableStream/123/Report.pdf?format=pdf&data=x", "jsonObject"
    )
    assert "pivotTableStream" not in url
    assert "/Report.json?" in url
    assert "format=jsonObject" in url
    assert "data=x" in url


def test_inventory_report_maps_report_columns():
    rows = [
        {"Product ID": "SKU-1", "Product Name": "Widget", "Supplier 1": "Acme", "Units in stock": 4, "Reorder point": 10},
        {"Product Name": "No sku"},
    ]
    client, _, _ = _client([_FakeResponse(payload=rows)])
    products = client.fetch_inventory_report("https://app.finaleinventory.com/acme/doc/report/pivotTable/1/R.json")
    assert len(products) == 1
    record = transform_product(products[0], "2025-01-01T00:00:00.000Z")
    assert record["sku"] == "SKU-1"
    assert record["vendor"] == "Acme"
    assert record["current_stock"] == 4.0
    assert record["location"] == "Shipping"


def test_parse_csv_report():
    rows = parse_csv_report("Product ID,Units in stock,Note\nA,5,\nB,x,hi\n")
    assert rows == [{"Product ID": "A", "Units in stock": 5.0, "Note": None}, {"Product ID": "B", "Units in stock": "x", "Note": "hi"}]


def test_transform_product_velocity_from_thirty_day_sales():
    record = transform_product({"productId": "P1", "quantityOnHand": "12", "salesLast30Days": 90})
    assert record["sku"] == "P1"
    assert record["finale_id"] == "P1"
    assert record["sales_velocity"] == 3.0


def test_transform_vendor_defaults_name():
    assert transform_vendor({"partyId": 7})["name"] == "Unknown Vendor"
    assert transform_vendor({"vendorName": " Acme ", "partyId": 7})["finale_id"] == "7"


def test_active_products():
    assert is_active_product({"productId": "P1"})
    assert is_active_product({"statusId": "PRODUCT_ACTIVE"})
    assert not is_active_product({"statusId": "PRODUCT_INACTIVE"})
