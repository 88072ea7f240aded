"""Sale registration, payment confirmation and deletion."""
import re
import threading

import pytest

import routes.sales as sales_routes
from db import db
from helpers import BusinessRuleError


@pytest.fixture
def sale(stocked, dist_client, product):
    r = dist_client.post("/api/sales", json={"product_id": str(product["_id"]), "quantity": 2, "sale_price": 200})
    assert r.status_code == 201, r.get_json()
    return r.get_json()["sale"]


def _ledger(user_id):
    return list(db["profit_history"].find({"user_id": user_id}).sort([("date", 1), ("_id", 1)]))


class TestRegisterSale:
    def test_sale_is_pending_with_base_commission(self, sale, distributor, product):
        assert re.fullmatch(r"VTA-\d{4}-0001", sale["sale_id"])
        assert sale["payment_status"] == "pending"
        assert sale["distributor_profit_percentage"] == 20.0
        assert sale["commission_bonus"] == 0.0
        assert sale["distributor_price"] == 160.0
        assert sale["distributor_profit"] == 80.0
        assert sale["admin_profit"] == 120.0
        assert sale["total_profit"] == 200.0
        assert sale["remaining_stock"] == 18

    def test_stock_leaves_distributor_and_total(self, sale, distributor, product):
        held = db["distributor_stock"].find_one({"distributor_id": distributor["_id"]})
        p = db["products"].find_one({"_id": product["_id"]})
        assert held["quantity"] == 18
        assert p["total_stock"] == 98
        assert p["warehouse_stock"] == 80

    def test_codes_are_sequential(self, sale, dist_client, product):
        r = dist_client.post("/api/sales", json={"product_id": str(product["_id"]), "quantity": 1, "sale_price": 200})
        assert r.get_json()["sale"]["sale_id"].endswith("-0002")

    def test_no_ledger_until_confirmed(self, sale, distributor):
        assert _ledger(distributor["_id"]) == []

    def test_product_not_assigned(self, dist2_client, product):
        r = dist2_client.post("/api/sales", json={"product_id": str(product["_id"]), "quantity": 1, "sale_price": 200})
        assert r.status_code == 400
        assert r.get_json()["message"] == "This product is not assigned to you"

    def test_insufficient_stock_reports_available(self, stocked, dist_client, product):
        r = dist_client.post("/api/sales", json={"product_id": str(product["_id"]), "quantity": 21, "sale_price": 200})
        assert r.status_code == 400
        assert r.get_json()["message"] == "Insufficient stock. Available: 20"
        assert db["sales"].count_documents({}) == 0

    @pytest.mark.parametrize("payload", [
        {"quantity": 0, "sale_price": 200},
        {"quantity": 1, "sale_price": 0},
        {"quantity": 1, "sale_price": "abc"},
    ])
    def test_invalid_input(self, stocked, dist_client, product, payload):
        r = dist_client.post("/api/sales", json={"product_id": str(product["_id"]), **payload})
        assert r.status_code == 400

    def test_admin_cannot_use_distributor_endpoint(self, admin_client, product):
        r = admin_client.post("/api/sales", json={"product_id": str(product["_id"]), "quantity": 1, "sale_price": 200})
        assert r.status_code == 403


class TestConfirmPayment:
    def test_confirm_books_ledger_and_stats(self, sale, admin_client, admin, distributor):
        r = admin_client.put(f"/api/sales/{sale['_id']}/confirm-payment")
        assert r.status_code == 200
        assert r.get_json()["sale"]["payment_status"] == "confirmed"

        dist_entries = _ledger(distributor["_id"])
        admin_entries = _ledger(admin["_id"])
        assert [(e["type"], e["amount"]) for e in dist_entries] == [("sale", 80.0)]
        assert [(e["type"], e["amount"]) for e in admin_entries] == [("sale", 120.0)]

        stats = db["distributor_stats"].find_one({"distributor_id": distributor["_id"]})
        assert stats["total_sales"] == 1
        assert stats["total_revenue"] == 400.0
        assert stats["total_units"] == 2
        # 1 point per sale + 0.1 per peso
        assert stats["total_points"] == 41.0

    def test_confirm_twice(self, sale, admin_client, distributor):
        admin_client.put(f"/api/sales/{sale['_id']}/confirm-payment")
        r = admin_client.put(f"/api/sales/{sale['_id']}/confirm-payment")
        assert r.status_code == 400
        assert r.get_json()["message"] == "Payment already confirmed"
        assert len(_ledger(distributor["_id"])) == 1

    def test_confirm_unknown_sale(self, admin_client):
        r = admin_client.put("/api/sales/65f000000000000000000000/confirm-payment")
        assert r.status_code == 404

    def test_distributor_cannot_confirm(self, sale, dist_client):
        r = dist_client.put(f"/api/sales/{sale['_id']}/confirm-payment")
        assert r.status_code == 403


class TestAdminSale:
    def test_admin_sale_is_confirmed_and_booked(self, admin_client, admin, product):
        r = admin_client.post("/api/sales/admin", json={"product_id": str(product["_id"]), "quantity": 3, "sale_price": 150})
        assert r.status_code == 201
        s = r.get_json()["sale"]
        assert s["payment_status"] == "confirmed"
        assert s["distributor_id"] is None
        assert s["distributor_profit"] == 0.0
        assert s["admin_profit"] == 150.0

        p = db["products"].find_one({"_id": product["_id"]})
        assert p["warehouse_stock"] == 97
        assert p["total_stock"] == 97
        assert [e["amount"] for e in _ledger(admin["_id"])] == [150.0]

    def test_admin_sale_insufficient_warehouse(self, admin_client, product):
        r = admin_client.post("/api/sales/admin", json={"product_id": str(product["_id"]), "quantity": 101, "sale_price": 150})
        assert r.status_code == 400
        assert r.get_json()["available"] == 100


class TestDeleteSale:
    def test_delete_pending_restores_stock(self, sale, admin_client, distributor, product):
        r = admin_client.delete(f"/api/sales/{sale['_id']}")
        assert r.status_code == 200
        held = db["distributor_stock"].find_one({"distributor_id": distributor["_id"]})
        assert held["quantity"] == 20
        assert db["products"].find_one({"_id": product["_id"]})["total_stock"] == 100
        assert db["sales"].count_documents({}) == 0
        assert _ledger(distributor["_id"]) == []

    def test_delete_confirmed_reverses_ledger(self, sale, admin_client, admin, distributor):
        admin_client.put(f"/api/sales/{sale['_id']}/confirm-payment")
        admin_client.delete(f"/api/sales/{sale['_id']}")

        dist_entries = _ledger(distributor["_id"])
        assert [(e["type"], e["amount"]) for e in dist_entries] == [("sale", 80.0), ("adjustment", -80.0)]
        assert dist_entries[-1]["balance_after"] == 0.0
        assert _ledger(admin["_id"])[-1]["balance_after"] == 0.0

        stats = db["distributor_stats"].find_one({"distributor_id": distributor["_id"]})
        assert stats["total_sales"] == 0
        assert stats["total_revenue"] == 0.0

    def test_second_delete_restores_nothing(self, sale, admin_client, distributor):
        admin_client.put(f"/api/sales/{sale['_id']}/confirm-payment")
        assert admin_client.delete(f"/api/sales/{sale['_id']}").status_code == 200
        assert admin_client.delete(f"/api/sales/{sale['_id']}").status_code == 404

        held = db["distributor_stock"].find_one({"distributor_id": distributor["_id"]})
        assert held["quantity"] == 20
        assert [e["amount"] for e in _ledger(distributor["_id"])] == [80.0, -80.0]

    def test_concurrent_deletes_restore_stock_once(self, sale, admin, distributor):
        barrier = threading.Barrier(2, timeout=5)
        outcomes = []

        def delete():
            barrier.wait()
            try:
                sales_routes.delete_sale(admin, sale["_id"])
                outcomes.append("deleted")
            except BusinessRuleError as e:
                outcomes.append(e.status)

        threads = [threading.Thread(target=delete) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes, key=str) == [404, "deleted"]
        held = db["distributor_stock"].find_one({"distributor_id": distributor["_id"]})
        assert held["quantity"] == 20


class TestListing:
    def test_admin_list_has_totals(self, sale, admin_client):
        body = admin_client.get("/api/sales").get_json()
        assert body["pagination"]["total"] == 1
        assert body["totals"]["revenue"] == 400.0
        assert body["sales"][0]["product_name"] == "Perfume Rosa"
        assert body["combined_totals"]["count"] == 1

    def test_special_sales_only_join_unfiltered_totals(self, sale, admin_client):
        r = admin_client.post("/api/special-sales", json={
            "product": {"name": "Gift box"}, "quantity": 1, "special_price": 250, "cost": 100,
            "distribution": [{"name": "Carlos", "amount": 50}],
        })
        assert r.status_code == 201

        body = admin_client.get("/api/sales").get_json()
        assert body["combined_totals"]["count"] == 2
        assert body["combined_totals"]["revenue"] == 650.0

        body = admin_client.get("/api/sales?payment_status=pending").get_json()
        assert body["special_sales_totals"] is None
        assert body["combined_totals"] == {"count": 1, "units": 2, "revenue": 400.0, "total_profit": 200.0}

    def test_bad_status_filter(self, admin_client, admin):
        assert admin_client.get("/api/sales?payment_status=paid").status_code == 400

    def test_distributor_sees_own(self, sale, dist_client):
        body = dist_client.get("/api/sales/distributor/me").get_json()
        assert body["stats"]["count"] == 1

    def test_distributor_cannot_see_others(self, sale, dist2_client, distributor):
        r = dist2_client.get(f"/api/sales/distributor/{distributor['_id']}")
        assert r.status_code == 403
        assert dist2_client.get(f"/api/sales/{sale['_id']}").status_code == 403
