"""Profit history ledger: running balances, reversals and backfill."""
import threading
from datetime import datetime

import pytest
from bson import ObjectId

import profit_ledger
from db import db


def _balances(uid):
    return [e["balance_after"] for e in
            db["profit_history"].find({"user_id": uid}).sort([("date", 1), ("_id", 1)])]


class TestRunningBalance:
    def test_balance_accumulates(self, distributor):
        uid = distributor["_id"]
        profit_ledger.record_entry(uid, "sale", 100, "a", date=datetime(2024, 1, 1))
        profit_ledger.record_entry(uid, "sale", 50.55, "b", date=datetime(2024, 1, 2))
        e = profit_ledger.record_entry(uid, "adjustment", -20, "c", date=datetime(2024, 1, 3))
        assert e["balance_after"] == 130.55
        assert profit_ledger.current_balance(uid) == 130.55

    def test_back_dated_entry_rewrites_later_balances(self, distributor):
        uid = distributor["_id"]
        profit_ledger.record_entry(uid, "sale", 100, "a", date=datetime(2024, 1, 1))
        profit_ledger.record_entry(uid, "sale", 100, "c", date=datetime(2024, 1, 3))
        back = profit_ledger.record_entry(uid, "sale", 10, "b", date=datetime(2024, 1, 2))
        assert back["balance_after"] == 110.0
        assert _balances(uid) == [100.0, 110.0, 210.0]
        # amounts are never touched
        amounts = [e["amount"] for e in db["profit_history"].find({"user_id": uid}).sort("date", 1)]
        assert amounts == [100.0, 10.0, 100.0]

    def test_recalculate_repairs_balances(self, distributor):
        uid = distributor["_id"]
        profit_ledger.record_entry(uid, "sale", 10, "a", date=datetime(2024, 1, 1))
        profit_ledger.record_entry(uid, "sale", 20, "b", date=datetime(2024, 1, 2))
        db["profit_history"].update_many({"user_id": uid}, {"$set": {"balance_after": 0}})
        assert profit_ledger.recalculate_user_balance(uid) == 30.0
        assert _balances(uid) == [10.0, 30.0]

    def test_interleaved_writers_keep_the_running_total(self, distributor, monkeypatch):
        uid = distributor["_id"]
        profit_ledger.record_entry(uid, "sale", 100, "seed", date=datetime(2024, 1, 1))

        # both writers read the latest entry before either inserts
        barrier = threading.Barrier(2, timeout=5)
        real_latest = profit_ledger._latest

        def paused_latest(user_id):
            last = real_latest(user_id)
            barrier.wait()
            return last

        monkeypatch.setattr(profit_ledger, "_latest", paused_latest)
        errors = []

        def write(amount):
            try:
                profit_ledger.record_entry(uid, "sale", amount, f"+{amount}")
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=write, args=(amt,)) for amt in (10, 20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        monkeypatch.undo()

        assert errors == []
        balances = sorted(e["balance_after"] for e in db["profit_history"].find({"user_id": uid}))
        assert balances in ([100.0, 110.0, 130.0], [100.0, 120.0, 130.0])
        assert db["profit_balances"].find_one({"user_id": uid})["balance"] == 130.0

    def test_running_total_seeded_from_older_entries(self, distributor):
        uid = distributor["_id"]
        profit_ledger.record_entry(uid, "sale", 40, "a", date=datetime(2024, 1, 1))
        db["profit_balances"].delete_many({})
        e = profit_ledger.record_entry(uid, "sale", 2, "b", date=datetime(2024, 1, 2))
        assert e["balance_after"] == 42.0

    def test_unknown_type(self, distributor):
        with pytest.raises(ValueError):
            profit_ledger.record_entry(distributor["_id"], "refund", 1, "x")

    def test_balance_of_empty_ledger(self):
        assert profit_ledger.current_balance(ObjectId()) == 0.0


class TestSaleEntries:
    def _sale(self, distributor_id, **over):
        doc = {
            "sale_id": "VTA-2024-0001",
            "distributor_id": distributor_id,
            "product_id": ObjectId(),
            "quantity": 2,
            "sale_price": 200.0,
            "distributor_profit": 80.0,
            "admin_profit": 120.0,
            "distributor_profit_percentage": 20.0,
            "payment_status": "confirmed",
            "sale_date": datetime(2024, 2, 1),
        }
        doc.update(over)
        doc["_id"] = db["sales"].insert_one(doc).inserted_id
        return doc

    def test_reverse_is_idempotent(self, admin, distributor):
        sale = self._sale(distributor["_id"])
        profit_ledger.record_sale_profit(sale)
        first = profit_ledger.reverse_sale_profit(sale)
        second = profit_ledger.reverse_sale_profit(sale)
        assert len(first) == 2
        assert second == []
        assert profit_ledger.current_balance(distributor["_id"]) == 0.0
        assert profit_ledger.current_balance(admin["_id"]) == 0.0

    def test_negative_admin_profit_is_booked(self, admin, distributor):
        sale = self._sale(distributor["_id"], admin_profit=-10.0)
        profit_ledger.record_sale_profit(sale)
        assert profit_ledger.current_balance(admin["_id"]) == -10.0

    def test_backfill_writes_only_missing(self, admin, distributor):
        booked = self._sale(distributor["_id"])
        profit_ledger.record_sale_profit(booked)
        self._sale(distributor["_id"], sale_id="VTA-2024-0002", sale_date=datetime(2024, 2, 2))
        self._sale(distributor["_id"], sale_id="VTA-2024-0003", payment_status="pending")

        assert profit_ledger.backfill_from_sales() == {"sales": 2, "entries": 2}
        assert profit_ledger.backfill_from_sales() == {"sales": 2, "entries": 0}
        assert profit_ledger.current_balance(distributor["_id"]) == 160.0

    def test_totals_by_type(self, admin, distributor):
        profit_ledger.record_sale_profit(self._sale(distributor["_id"]))
        profit_ledger.record_entry(distributor["_id"], "bonus", 1000, "bonus")
        totals = profit_ledger.totals_by_type(distributor["_id"])
        assert totals["sale"] == {"total": 80.0, "count": 1}
        assert totals["bonus"] == {"total": 1000.0, "count": 1}


class TestRoutes:
    def test_manual_adjustment(self, admin_client, distributor):
        r = admin_client.post("/api/profit-history/adjustment", json={
            "user_id": str(distributor["_id"]), "amount": 75.5, "description": "Transport refund",
        })
        assert r.status_code == 201
        assert r.get_json()["entry"]["balance_after"] == 75.5
        assert db["audit_logs"].count_documents({"action": "profit_adjusted", "severity": "warning"}) == 1

    def test_zero_adjustment_rejected(self, admin_client, distributor):
        r = admin_client.post("/api/profit-history/adjustment", json={
            "user_id": str(distributor["_id"]), "amount": 0, "description": "nothing",
        })
        assert r.status_code == 400

    def test_distributor_reads_own_history_only(self, dist_client, distributor, distributor2):
        profit_ledger.record_entry(distributor["_id"], "adjustment", 10, "x")
        body = dist_client.get("/api/profit-history/user/me").get_json()
        assert body["current_balance"] == 10.0
        assert len(body["entries"]) == 1
        r = dist_client.get(f"/api/profit-history/user/{distributor2['_id']}")
        assert r.status_code == 403

    def test_summary_by_month(self, admin_client, distributor):
        profit_ledger.record_entry(distributor["_id"], "sale", 10, "a", date=datetime(2024, 1, 15, 12))
        profit_ledger.record_entry(distributor["_id"], "sale", 5, "b", date=datetime(2024, 2, 15, 12))
        body = admin_client.get("/api/profit-history/summary?group_by=month").get_json()
        assert [p["period"] for p in body["timeline"]] == ["2024-01", "2024-02"]
        assert body["total"] == 15.0

    def test_summary_bad_grouping(self, admin_client):
        assert admin_client.get("/api/profit-history/summary?group_by=year").status_code == 400
