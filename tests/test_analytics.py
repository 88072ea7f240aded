"""Reporting endpoints and expenses."""
from db import db


def _admin_sale(client, product, qty=3, price=150):
    r = client.post("/api/sales/admin", json={"product_id": str(product["_id"]), "quantity": qty, "sale_price": price})
    assert r.status_code == 201, r.get_json()
    return r.get_json()["sale"]


class TestExpenses:
    def test_crud(self, admin_client):
        r = admin_client.post("/api/expenses", json={"type": "transport", "amount": 30, "expense_date": "2024-05-02"})
        assert r.status_code == 201
        eid = r.get_json()["expense"]["_id"]

        r = admin_client.put(f"/api/expenses/{eid}", json={"amount": 45})
        assert r.get_json()["expense"]["amount"] == 45.0

        body = admin_client.get("/api/expenses?start_date=2024-05-01&end_date=2024-05-31").get_json()
        assert body["total_amount"] == 45.0
        assert body["by_type"] == [{"type": "transport", "total": 45.0, "count": 1}]

        assert admin_client.delete(f"/api/expenses/{eid}").status_code == 200
        assert db["expenses"].count_documents({}) == 0

    def test_negative_amount(self, admin_client):
        r = admin_client.post("/api/expenses", json={"type": "rent", "amount": -1})
        assert r.status_code == 400


class TestAnalytics:
    def test_admin_only(self, dist_client):
        assert dist_client.get("/api/analytics/dashboard").status_code == 403

    def test_requires_login(self, client):
        assert client.get("/api/analytics/kpis").status_code == 401

    def test_financial_summary_net_profit(self, admin_client, admin, product):
        _admin_sale(admin_client, product)  # admin profit 150
        admin_client.post("/api/defective-products/admin", json={
            "product_id": str(product["_id"]), "quantity": 2, "reason": "Broken",
        })  # loss 2 x 100
        admin_client.post("/api/expenses", json={"type": "transport", "amount": 30})
        admin_client.post("/api/special-sales", json={
            "product": {"name": "Gift box"}, "quantity": 1, "special_price": 250, "cost": 100,
            "distribution": [{"name": "Carlos", "amount": 50}],
        })  # admin keeps 100

        body = admin_client.get("/api/analytics/financial-summary").get_json()
        assert body["sales"]["admin_profit"] == 150.0
        assert body["special_sales"]["admin_share"] == 100.0
        assert body["defective"] == {"units": 2, "loss": 200.0}
        assert body["expenses"] == 30.0
        assert body["net_profit"] == 20.0

    def test_lowercase_admin_line_counts_toward_net_profit(self, admin_client, admin):
        r = admin_client.post("/api/special-sales", json={
            "product": {"name": "Gift box"}, "quantity": 2, "special_price": 400, "cost": 100,
            "distribution": [{"name": "Laura", "amount": 100}, {"name": "admin", "amount": 50}],
        })
        lines = [(d["name"], d["amount"]) for d in r.get_json()["special_sale"]["distribution"]]
        assert lines == [("Laura", 100.0), ("Admin", 500.0)]

        body = admin_client.get("/api/analytics/financial-summary").get_json()
        assert body["special_sales"]["admin_share"] == 500.0
        assert body["net_profit"] == 500.0
        ledger = db["profit_history"].find_one({"user_id": admin["_id"], "type": "special_sale"})
        assert ledger["amount"] == 500.0

    def test_kpis_count_only_confirmed(self, stocked, admin_client, dist_client, product):
        dist_client.post("/api/sales", json={"product_id": str(product["_id"]), "quantity": 1, "sale_price": 200})
        _admin_sale(admin_client, product, qty=1, price=150)
        k = admin_client.get("/api/analytics/kpis").get_json()["kpis"]
        assert k["today"]["sales"] == 1
        assert k["today"]["revenue"] == 150.0
        assert k["pending_payments"] == 1

    def test_sales_timeline_is_zero_filled(self, admin_client, product):
        _admin_sale(admin_client, product)
        body = admin_client.get("/api/analytics/sales-timeline?days=7").get_json()
        assert len(body["timeline"]) == 7
        assert sum(d["sales"] for d in body["timeline"]) == 1

    def test_profit_by_product(self, admin_client, product):
        _admin_sale(admin_client, product)
        rows = admin_client.get("/api/analytics/profit-by-product").get_json()["products"]
        assert rows[0]["product_name"] == "Perfume Rosa"
        assert rows[0]["admin_profit"] == 150.0

    def test_sales_by_category(self, admin_client, product):
        cid = admin_client.post("/api/categories", json={"name": "Perfumes"}).get_json()["category"]["_id"]
        admin_client.put(f"/api/products/{product['_id']}", json={"category_id": cid})
        _admin_sale(admin_client, product)
        rows = admin_client.get("/api/analytics/sales-by-category").get_json()["categories"]
        assert rows == [{"category_id": cid, "name": "Perfumes", "sales": 1, "units": 3,
                         "revenue": 450.0, "total_profit": 150.0}]

    def test_uncategorised_sales_are_left_out(self, admin_client, product):
        _admin_sale(admin_client, product)
        assert admin_client.get("/api/analytics/sales-by-category").get_json()["categories"] == []

    def test_product_rotation(self, admin_client, product):
        _admin_sale(admin_client, product)  # 3 sold, 97 left
        rows = admin_client.get("/api/analytics/product-rotation?days=7").get_json()["products"]
        assert rows[0]["units_sold"] == 3
        assert rows[0]["current_stock"] == 97
        assert rows[0]["rotation_rate"] == 0.03

    def test_sales_funnel(self, stocked, admin_client, dist_client, product):
        dist_client.post("/api/sales", json={"product_id": str(product["_id"]), "quantity": 1, "sale_price": 200})
        _admin_sale(admin_client, product, qty=1, price=150)
        funnel = admin_client.get("/api/analytics/sales-funnel").get_json()["funnel"]
        assert funnel["pending"] == {"count": 1, "value": 200.0}
        assert funnel["confirmed"] == {"count": 1, "value": 150.0}
        assert funnel["conversion_rate"] == 50.0

    def test_recommendations_for_idle_stock(self, admin_client, product):
        body = admin_client.get("/api/analytics/recommendations").get_json()
        assert body["window"]["horizon_days"] == 90
        rec = body["recommendations"][0]
        assert rec["name"] == "Perfume Rosa"
        assert rec["primary"]["action"] == "pause_purchases"
        assert rec["metrics"]["recent_units"] == 0

    def test_recommendations_use_recent_sales(self, admin_client, product):
        _admin_sale(admin_client, product, qty=3, price=150)
        rec = admin_client.get("/api/analytics/recommendations?recent_days=30").get_json()["recommendations"][0]
        assert rec["metrics"]["recent_units"] == 3
        assert rec["metrics"]["recent_revenue"] == 450.0
        assert rec["stock"]["warehouse_stock"] == 97

    def test_dashboard(self, admin_client, product):
        _admin_sale(admin_client, product)
        body = admin_client.get("/api/analytics/dashboard").get_json()
        assert body["month"]["sales"] == 1
        assert body["top_products"][0]["name"] == "Perfume Rosa"
        assert body["pending_payments"] == 0
