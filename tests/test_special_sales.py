"""Special sales: manual profit distribution and cancellation."""
import pytest

from db import db


@pytest.fixture
def payload(distributor):
    return {
        "product": {"name": "Gift box"},
        "quantity": 2,
        "special_price": 300,
        "cost": 100,
        "event_name": "Mother's day fair",
        "distribution": [
            {"name": "Carlos", "amount": 100},
            {"name": "Ana", "user_id": str(distributor["_id"]), "amount": 150},
        ],
    }


def _balance(uid):
    last = db["profit_history"].find_one({"user_id": uid}, sort=[("date", -1), ("_id", -1)])
    return last["balance_after"] if last else 0.0


class TestCreate:
    def test_remainder_goes_to_admin(self, admin_client, admin, distributor, payload):
        r = admin_client.post("/api/special-sales", json=payload)
        assert r.status_code == 201, r.get_json()
        doc = r.get_json()["special_sale"]
        assert doc["total_profit"] == 400.0
        lines = {d["name"]: d for d in doc["distribution"]}
        assert lines["Admin"]["amount"] == 150.0
        assert lines["Admin"]["user_id"] == str(admin["_id"])
        assert lines["Carlos"]["percentage"] == 25.0
        assert lines["Ana"]["percentage"] == 37.5

        # lines without an account are not booked
        assert _balance(distributor["_id"]) == 150.0
        assert _balance(admin["_id"]) == 150.0
        assert db["profit_history"].count_documents({"type": "special_sale"}) == 2

    def test_existing_admin_line_absorbs_remainder(self, admin_client, admin, payload):
        payload["distribution"] = [{"name": "admin", "amount": 100}, {"name": "Carlos", "amount": 100}]
        doc = admin_client.post("/api/special-sales", json=payload).get_json()["special_sale"]
        assert len(doc["distribution"]) == 2
        assert doc["distribution"][0]["amount"] == 300.0

    def test_distribution_over_total(self, admin_client, admin, payload):
        payload["distribution"] = [{"name": "Carlos", "amount": 400.02}]
        r = admin_client.post("/api/special-sales", json=payload)
        assert r.status_code == 400
        assert r.get_json()["total_profit"] == 400.0

    def test_exact_distribution_adds_no_admin_line(self, admin_client, admin, payload):
        payload["distribution"] = [{"name": "Carlos", "amount": 400}]
        r = admin_client.post("/api/special-sales", json=payload)
        assert r.status_code == 201
        assert [d["name"] for d in r.get_json()["special_sale"]["distribution"]] == ["Carlos"]

    def test_price_below_cost(self, admin_client, admin, payload):
        payload["special_price"] = 50
        assert admin_client.post("/api/special-sales", json=payload).status_code == 400

    def test_empty_distribution(self, admin_client, admin, payload):
        payload["distribution"] = []
        assert admin_client.post("/api/special-sales", json=payload).status_code == 400

    def test_admin_only(self, dist_client, payload):
        assert dist_client.post("/api/special-sales", json=payload).status_code == 403


class TestCancel:
    def test_cancel_reverses_ledger_once(self, admin_client, admin, distributor, payload):
        sid = admin_client.post("/api/special-sales", json=payload).get_json()["special_sale"]["_id"]

        r = admin_client.put(f"/api/special-sales/{sid}/cancel")
        assert r.status_code == 200
        assert _balance(distributor["_id"]) == 0.0
        assert _balance(admin["_id"]) == 0.0

        again = admin_client.put(f"/api/special-sales/{sid}/cancel")
        assert again.status_code == 400

    def test_cancelled_sales_leave_statistics(self, admin_client, admin, payload):
        sid = admin_client.post("/api/special-sales", json=payload).get_json()["special_sale"]["_id"]
        stats = admin_client.get("/api/special-sales/statistics").get_json()["statistics"]
        assert stats["count"] == 1
        assert stats["revenue"] == 600.0
        assert stats["average_profit"] == 400.0

        admin_client.put(f"/api/special-sales/{sid}/cancel")
        stats = admin_client.get("/api/special-sales/statistics").get_json()["statistics"]
        assert stats["count"] == 0

    def test_distribution_by_person(self, admin_client, admin, payload):
        admin_client.post("/api/special-sales", json=payload)
        rows = admin_client.get("/api/special-sales/distribution").get_json()["distribution"]
        assert {r["name"]: r["total"] for r in rows} == {"Carlos": 100.0, "Ana": 150.0, "Admin": 150.0}
