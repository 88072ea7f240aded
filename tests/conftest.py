# tests/conftest.py
"""
Shared fixtures: an in-memory MongoDB (mongomock), the Flask app and test
clients logged in as the seeded admin / distributors.

Run:
    pytest -q
"""
import os

import mongomock
import pymongo
import pytest

# =============================================================================
# IN-MEMORY DATABASE
# =============================================================================

# db.py builds its client at import time; swap the class before anything imports it
pymongo.MongoClient = mongomock.MongoClient
os.environ["PERIOD_SCHEDULER"] = "0"

from db import db, ensure_indexes  # noqa: E402
from auth import create_user  # noqa: E402
from app import app as flask_app  # noqa: E402

PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def clean_db():
    for name in db.list_collection_names():
        db.drop_collection(name)
    ensure_indexes()
    yield


# =============================================================================
# APP FIXTURES
# =============================================================================

@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(app):
    """login(email) -> a test client holding that user's session."""
    def _login(email, password=PASSWORD):
        c = app.test_client()
        r = c.post("/api/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.get_json()
        return c
    return _login


# =============================================================================
# SEED DATA
# =============================================================================

@pytest.fixture
def admin():
    return create_user("Admin", "admin@example.com", PASSWORD, "admin")


@pytest.fixture
def distributor():
    return create_user("Ana", "ana@example.com", PASSWORD, "distributor")


@pytest.fixture
def distributor2():
    return create_user("Bruno", "bruno@example.com", PASSWORD, "distributor")


@pytest.fixture
def product():
    doc = {
        "name": "Perfume Rosa",
        "description": "",
        "purchase_price": 100.0,
        "distributor_price": 150.0,
        "client_price": 200.0,
        "suggested_price": 130.0,
        "category_id": None,
        "warehouse_stock": 100,
        "total_stock": 100,
        "low_stock_alert": 10,
        "featured": False,
    }
    doc["_id"] = db["products"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def admin_client(login, admin):
    return login(admin["email"])


@pytest.fixture
def dist_client(login, distributor):
    return login(distributor["email"])


@pytest.fixture
def dist2_client(login, distributor2):
    return login(distributor2["email"])


@pytest.fixture
def stocked(admin_client, distributor, product):
    """The first distributor holds 20 units of the product."""
    r = admin_client.post("/api/stock/assign", json={
        "distributor_id": str(distributor["_id"]),
        "product_id": str(product["_id"]),
        "quantity": 20,
    })
    assert r.status_code == 200, r.get_json()
    return r.get_json()["stock"]


@pytest.fixture
def no_ranking_minimum():
    """Let any distributor with confirmed sales enter the ranking."""
    import commission
    commission.get_config()
    commission.config_col.update_one({}, {"$set": {"min_admin_profit_for_ranking": 0.0}})
