"""Categories, products and the per-distributor priced catalog."""
from db import db
from routes.catalog import slugify


def test_slugify():
    assert slugify("  Perfumes & Lociones ") == "perfumes-lociones"
    assert slugify("Cuidado Facial Niños") == "cuidado-facial-ninos"


class TestCategories:
    def test_create_and_duplicate(self, admin_client):
        r = admin_client.post("/api/categories", json={"name": "Perfumes"})
        assert r.status_code == 201
        assert r.get_json()["category"]["slug"] == "perfumes"
        dup = admin_client.post("/api/categories", json={"name": "perfumes"})
        assert dup.status_code == 409

    def test_cannot_delete_category_in_use(self, admin_client, product):
        cid = admin_client.post("/api/categories", json={"name": "Perfumes"}).get_json()["category"]["_id"]
        admin_client.put(f"/api/products/{product['_id']}", json={"category_id": cid})
        r = admin_client.delete(f"/api/categories/{cid}")
        assert r.status_code == 400
        assert r.get_json()["products"] == 1

    def test_list_is_public_with_counts(self, client, admin_client, product):
        cid = admin_client.post("/api/categories", json={"name": "Perfumes"}).get_json()["category"]["_id"]
        admin_client.put(f"/api/products/{product['_id']}", json={"category_id": cid})
        cats = client.get("/api/categories").get_json()["categories"]
        assert cats[0]["product_count"] == 1


class TestProducts:
    def test_create_defaults(self, admin_client):
        r = admin_client.post("/api/products", json={
            "name": "Crema", "purchase_price": 50, "distributor_price": 70, "warehouse_stock": 12,
        })
        assert r.status_code == 201
        p = r.get_json()["product"]
        assert p["total_stock"] == 12
        assert p["suggested_price"] == 65.0
        assert p["low_stock_alert"] == 10

    def test_filter_by_category_slug(self, client, admin_client, product):
        cid = admin_client.post("/api/categories", json={"name": "Perfumes"}).get_json()["category"]["_id"]
        admin_client.put(f"/api/products/{product['_id']}", json={"category_id": cid})
        body = client.get("/api/products?category=perfumes").get_json()
        assert [p["name"] for p in body["products"]] == ["Perfume Rosa"]

    def test_unknown_category_lists_nothing(self, client, product):
        # the fixture product has no category
        body = client.get("/api/products?category=no-such-category").get_json()
        assert body["products"] == []
        assert body["pagination"]["total"] == 0

    def test_create_requires_prices(self, admin_client):
        r = admin_client.post("/api/products", json={"name": "Crema", "purchase_price": 50})
        assert r.status_code == 400

    def test_warehouse_update_keeps_total_consistent(self, stocked, admin_client, product):
        r = admin_client.put(f"/api/products/{product['_id']}", json={"warehouse_stock": 90})
        p = r.get_json()["product"]
        assert p["warehouse_stock"] == 90
        # 90 in the warehouse + 20 with the distributor
        assert p["total_stock"] == 110

    def test_price_change_is_audited(self, admin_client, product):
        admin_client.put(f"/api/products/{product['_id']}", json={"purchase_price": 110})
        log = db["audit_logs"].find_one({"action": "product_price_changed"})
        assert log["old_values"] == {"purchase_price": 100.0}
        assert log["new_values"] == {"purchase_price": 110.0}
        assert log["severity"] == "warning"

    def test_cannot_delete_held_product(self, stocked, admin_client, product):
        assert admin_client.delete(f"/api/products/{product['_id']}").status_code == 400

    def test_delete_unheld_product(self, admin_client, product):
        assert admin_client.delete(f"/api/products/{product['_id']}").status_code == 200
        assert db["products"].count_documents({}) == 0


class TestDistributorCatalog:
    def test_personalized_price_hides_cost(self, stocked, dist_client):
        body = dist_client.get("/api/products/distributor-catalog").get_json()
        assert body["commission"]["percentage"] == 20.0
        item = body["products"][0]
        assert item["distributor_price"] == 125
        assert item["my_stock"] == 20
        assert "purchase_price" not in item

    def test_admin_gets_403(self, admin_client):
        assert admin_client.get("/api/products/distributor-catalog").status_code == 403
