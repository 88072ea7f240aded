"""Defective product reports and their review."""
import pytest

from db import db


@pytest.fixture
def report(stocked, dist_client, product):
    r = dist_client.post("/api/defective-products", json={
        "product_id": str(product["_id"]), "quantity": 3, "reason": "Broken seal",
    })
    assert r.status_code == 201, r.get_json()
    return r.get_json()


def _held(distributor, product):
    return db["distributor_stock"].find_one({"distributor_id": distributor["_id"], "product_id": product["_id"]})["quantity"]


def _total(product):
    return db["products"].find_one({"_id": product["_id"]})["total_stock"]


def test_distributor_report_takes_units_out(report, distributor, product):
    assert report["report"]["status"] == "pending"
    assert report["remaining_stock"] == 17
    assert _held(distributor, product) == 17
    assert _total(product) == 97


def test_report_requires_reason(stocked, dist_client, product):
    r = dist_client.post("/api/defective-products", json={"product_id": str(product["_id"]), "quantity": 1})
    assert r.status_code == 400


def test_report_more_than_held(stocked, dist_client, product):
    r = dist_client.post("/api/defective-products", json={
        "product_id": str(product["_id"]), "quantity": 21, "reason": "x",
    })
    assert r.status_code == 400
    assert r.get_json()["message"] == "Insufficient stock. Available: 20"


def test_reject_returns_units(report, admin_client, distributor, product):
    rid = report["report"]["_id"]
    r = admin_client.put(f"/api/defective-products/{rid}/reject", json={"admin_notes": "Seal was fine"})
    assert r.status_code == 200
    assert r.get_json()["report"]["status"] == "rejected"
    assert _held(distributor, product) == 20
    assert _total(product) == 100


def test_confirm_keeps_units_out_and_is_final(report, admin_client, distributor, product):
    rid = report["report"]["_id"]
    assert admin_client.put(f"/api/defective-products/{rid}/confirm").status_code == 200
    assert _held(distributor, product) == 17

    again = admin_client.put(f"/api/defective-products/{rid}/reject")
    assert again.status_code == 400
    assert again.get_json()["message"] == "Report is already confirmed"


def test_admin_report_is_confirmed_from_warehouse(admin_client, product):
    r = admin_client.post("/api/defective-products/admin", json={
        "product_id": str(product["_id"]), "quantity": 2, "reason": "Water damage",
    })
    assert r.status_code == 201
    assert r.get_json()["report"]["status"] == "confirmed"
    p = db["products"].find_one({"_id": product["_id"]})
    assert p["warehouse_stock"] == 98
    assert p["total_stock"] == 98


def test_distributors_see_only_their_reports(report, dist2_client, admin_client):
    assert dist2_client.get("/api/defective-products").get_json()["reports"] == []
    items = admin_client.get("/api/defective-products").get_json()["reports"]
    assert items[0]["product_name"] == "Perfume Rosa"
