"""Login, session checks and distributor account management."""
from db import db


class TestAuth:
    def test_login_and_me(self, login, distributor):
        c = login(distributor["email"])
        me = c.get("/api/auth/me").get_json()["user"]
        assert me["email"] == "ana@example.com"
        assert me["role"] == "distributor"
        assert "password" not in me

    def test_wrong_password(self, client, distributor):
        r = client.post("/api/auth/login", json={"email": distributor["email"], "password": "nope"})
        assert r.status_code == 401

    def test_me_requires_login(self, client):
        assert client.get("/api/auth/me").status_code == 401

    def test_logout(self, dist_client):
        assert dist_client.post("/api/auth/logout").status_code == 200
        assert dist_client.get("/api/auth/me").status_code == 401

    def test_inactive_distributor_cannot_login(self, client, distributor):
        db["users"].update_one({"_id": distributor["_id"]}, {"$set": {"active": False}})
        r = client.post("/api/auth/login", json={"email": distributor["email"], "password": "secret123"})
        assert r.status_code == 403

    def test_deactivation_cuts_existing_session(self, dist_client, distributor):
        db["users"].update_one({"_id": distributor["_id"]}, {"$set": {"active": False}})
        assert dist_client.get("/api/auth/me").status_code == 403

    def test_healthz(self, client):
        assert client.get("/healthz").data == b"ok"

    def test_unknown_route_is_json(self, client):
        r = client.get("/api/nowhere")
        assert r.status_code == 404
        assert r.get_json()["success"] is False


class TestDistributors:
    def test_create(self, admin_client):
        r = admin_client.post("/api/distributors", json={
            "name": "Carla", "email": "Carla@Example.com", "password": "secret123", "phone": "300",
        })
        assert r.status_code == 201
        assert r.get_json()["distributor"]["email"] == "carla@example.com"

    def test_duplicate_email(self, admin_client, distributor):
        r = admin_client.post("/api/distributors", json={
            "name": "Ana 2", "email": "ana@example.com", "password": "secret123",
        })
        assert r.status_code == 409

    def test_short_password(self, admin_client):
        r = admin_client.post("/api/distributors", json={"name": "X", "email": "x@example.com", "password": "123"})
        assert r.status_code == 400

    def test_distributor_cannot_create(self, dist_client):
        r = dist_client.post("/api/distributors", json={
            "name": "X", "email": "x@example.com", "password": "secret123",
        })
        assert r.status_code == 403
        assert r.get_json()["message"] == "Access denied: administrators only"

    def test_toggle_active(self, admin_client, distributor):
        r = admin_client.put(f"/api/distributors/{distributor['_id']}/toggle-active")
        assert r.get_json()["active"] is False
        r = admin_client.put(f"/api/distributors/{distributor['_id']}/toggle-active")
        assert r.get_json()["active"] is True

    def test_cannot_delete_with_stock(self, stocked, admin_client, distributor):
        r = admin_client.delete(f"/api/distributors/{distributor['_id']}")
        assert r.status_code == 400

    def test_delete_without_stock(self, admin_client, distributor2):
        assert admin_client.delete(f"/api/distributors/{distributor2['_id']}").status_code == 200
        assert db["users"].count_documents({"_id": distributor2["_id"]}) == 0

    def test_list(self, stocked, admin_client):
        body = admin_client.get("/api/distributors").get_json()
        assert body["pagination"]["total"] == 1
        assert body["distributors"][0]["name"] == "Ana"
