import re

import pytest

from services import finale_sync, inventory_store, po_generation, po_service, purchase_order_store, vendor_store
from services.db import RecordNotFoundError
from services.purchase_order_store import InvalidTransitionError


def _seed_inventory():
    acme = vendor_store.create_vendor({"name": "Acme", "email": "orders@acme.test", "lead_time_days": 7})
    a = inventory_store.create_item({"sku": "A", "product_name": "Alpha", "current_stock": 0, "cost": 2, "reorder_quantity": 10, "vendor": "Acme"})
    b = inventory_store.create_item({"sku": "B", "product_name": "Beta", "current_stock": 0, "cost": 3, "sales_velocity": 1, "vendor": "Acme"})
    c = inventory_store.create_item({"sku": "C", "product_name": "Gamma", "current_stock": 5, "cost": 1, "vendor": "Other"})
    return acme, a, b, c


def _actions(po_id):
    return [entry["action"] for entry in purchase_order_store.list_audit_logs("purchase_order", po_id)]


def test_out_of_stock_generation_groups_by_vendor(tmp_db):
    acme, *_ = _seed_inventory()

    result = po_generation.generate_purchase_orders("out_of_stock")

    assert result["summary"] == {"total_pos": 1, "total_items": 2, "total_value": 53.0}
    po = result["purchase_orders"][0]
    assert po["vendor_id"] == acme["id"]
    assert po["vendor_email"] == "orders@acme.test"
    assert po["status"] == "draft"
    assert po["auto_generated"] is True
    assert po["urgency_level"] == "critical"
    assert [(line["sku"], line["quantity"]) for line in po["items"]] == [("A", 10), ("B", 11)]
    assert po["total_amount"] == sum(line["quantity"] * line["unit_cost"] for line in po["items"])
    assert _actions(po["id"]) == ["AUTO_GENERATE"]


def test_generation_respects_vendor_filter(tmp_db):
    _seed_inventory()
    other = vendor_store.create_vendor({"name": "Unrelated"})

    result = po_generation.generate_purchase_orders("out_of_stock", vendor_id=other["id"])

    assert result["purchase_orders"] == []


def test_manual_generation_uses_requested_quantities(tmp_db):
    _, _, _, c = _seed_inventory()

    result = po_generation.generate_purchase_orders("manual", manual_items=[{"inventory_item_id": c["id"], "quantity": 4}])

    po = result["purchase_orders"][0]
    assert po["vendor_name"] == "Other"
    assert po["vendor_id"] is None
    assert po["items"][0]["quantity"] == 4
    assert po["total_amount"] == 4.0


def test_manual_generation_requires_items(tmp_db):
    with pytest.raises(po_generation.GenerationError):
        po_generation.generate_purchase_orders("manual")


def test_nothing_to_order(tmp_db):
    result = po_generation.generate_purchase_orders("critical")
    assert result["purchase_orders"] == []
    assert result["message"] == "No items need ordering at this time"


def test_order_quantity_rounds_to_increment():
    assert po_generation.order_quantity({"sales_velocity": 1}, lead_time_days=7) == 11
    assert po_generation.order_quantity({"sales_velocity": 1}, lead_time_days=7, increment=12) == 12
    assert po_generation.order_quantity({"reorder_quantity": 0}) == 1


def test_suggestions_are_read_only(tmp_db):
    _seed_inventory()

    result = po_generation.build_suggestions()

    assert result["summary"]["total_vendors"] == 1
    assert result["suggestions"][0]["vendor_name"] == "Acme"
    assert result["suggestions"][0]["urgency_level"] == "critical"
    assert purchase_order_store.list_purchase_orders() == []


def test_create_and_edit_recomputes_total(tmp_db):
    po = po_service.create_purchase_order(
        {"vendor_name": "Acme", "items": [{"sku": "A", "quantity": 2, "unit_cost": 5}], "shipping_cost": 3}
    )
    assert re.match(r"^PO-\d{4}-\d{6}$", po["order_number"])
    assert po["total_amount"] == 13.0

    updated = po_service.update_purchase_order(po["id"], {"items": [{"sku": "A", "quantity": 4, "unit_cost": 5}]})

    assert updated["total_amount"] == 23.0
    assert _actions(po["id"]) == ["UPDATE", "CREATE"]


def test_create_resolves_vendor_by_id(tmp_db):
    vendor = vendor_store.create_vendor({"name": "Acme", "email": "orders@acme.test"})

    po = po_service.create_purchase_order({"vendor_id": vendor["id"], "items": []})

    assert po["vendor_name"] == "Acme"
    assert po["vendor_email"] == "orders@acme.test"


def test_status_transitions(tmp_db):
    po = po_service.create_purchase_order({"vendor_name": "Acme", "items": []})

    with pytest.raises(InvalidTransitionError):
        po_service.update_purchase_order(po["id"], {"status": "received"})

    approved = po_service.approve_purchase_order(po["id"])
    assert approved["status"] == "approved"
    assert approved["approved_at"] is not None
    with pytest.raises(InvalidTransitionError):
        po_service.approve_purchase_order(po["id"])


def test_sending_pushes_to_finale(tmp_db, monkeypatch):
    class _Client:
        def create_purchase_order(self, po):
            return {"orderId": "F-100"}

    monkeypatch.setattr(finale_sync, "build_finale_client", lambda: _Client())
    po = po_service.create_purchase_order({"vendor_name": "Acme", "items": []})
    po_service.approve_purchase_order(po["id"])

    sent = po_service.update_purchase_order(po["id"], {"status": "sent"})

    assert sent["status"] == "sent"
    assert sent["sent_at"] is not None
    assert sent["finale_order_id"] == "F-100"


def test_sending_without_finale_still_succeeds(tmp_db):
    po = po_service.create_purchase_order({"vendor_name": "Acme", "items": []})
    po_service.approve_purchase_order(po["id"])

    sent = po_service.update_purchase_order(po["id"], {"status": "sent"})

    assert sent["status"] == "sent"
    assert sent["finale_order_id"] is None


def test_delete_draft_removes_but_approved_is_cancelled(tmp_db):
    draft = po_service.create_purchase_order({"vendor_name": "Acme", "items": []})
    approved = po_service.create_purchase_order({"vendor_name": "Acme", "items": []})
    po_service.approve_purchase_order(approved["id"])

    assert po_service.delete_purchase_order(draft["id"])["deleted"] is True
    assert po_service.delete_purchase_order(approved["id"])["cancelled"] is True

    with pytest.raises(RecordNotFoundError):
        purchase_order_store.get_purchase_order(draft["id"])
    assert purchase_order_store.get_purchase_order(approved["id"])["status"] == "cancelled"
    assert _actions(draft["id"])[0] == "DELETE"
    assert _actions(approved["id"])[0] == "CANCEL"


def test_order_numbers_skip_used_values(tmp_db):
    purchase_order_store.create_purchase_order({"order_number": "PO-2025-000123", "vendor_name": "Acme"})

    assert purchase_order_store.next_order_number(2025, now_ms=1700000000123) == "PO-2025-000124"


def test_detail_includes_vendor_timeline_and_audit(tmp_db):
    vendor_store.create_vendor({"name": "Acme"})
    po = po_service.create_purchase_order({"vendor_name": "Acme", "items": []})
    po_service.approve_purchase_order(po["id"])

    detail = po_service.get_purchase_order_detail(po["id"])

    assert detail["vendor"]["name"] == "Acme"
    assert [e["event"] for e in detail["timeline"]][:2] == ["created", "approved"]
    assert {"CREATE", "UPDATE", "APPROVE"} <= {a["action"] for a in detail["audit_logs"]}


def test_deleting_a_cancelled_order_is_rejected(tmp_db):
    po = po_service.create_purchase_order({"vendor_name": "Acme", "items": []})
    po_service.approve_purchase_order(po["id"])
    po_service.delete_purchase_order(po["id"])

    with pytest.raises(InvalidTransitionError):
        po_service.delete_purchase_order(po["id"])

    assert _actions(po["id"]).count("CANCEL") == 1
