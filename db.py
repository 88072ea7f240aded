import os

from pymongo import ASCENDING, DESCENDING, MongoClient

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "backoffice")

# tz_aware=False: every datetime in the database is naive UTC
client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=8000)
db = client[MONGO_DB_NAME]


def ensure_indexes():
    """Create the indexes the queries rely on. Safe to run repeatedly."""
    db["users"].create_index([("email", ASCENDING)], unique=True)
    db["users"].create_index([("role", ASCENDING), ("active", ASCENDING)])

    db["categories"].create_index([("slug", ASCENDING)], unique=True)
    db["products"].create_index([("category_id", ASCENDING), ("created_at", DESCENDING)])
    db["products"].create_index([("warehouse_stock", ASCENDING)])

    db["distributor_stock"].create_index(
        [("distributor_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )

    db["sales"].create_index([("sale_id", ASCENDING)], unique=True, sparse=True)
    db["sales"].create_index([("sale_date", DESCENDING)])
    db["sales"].create_index([("distributor_id", ASCENDING), ("sale_date", DESCENDING)])
    db["sales"].create_index([("payment_status", ASCENDING), ("sale_date", DESCENDING)])

    db["profit_history"].create_index([("user_id", ASCENDING), ("date", DESCENDING)])
    db["profit_history"].create_index([("type", ASCENDING), ("date", DESCENDING)])
    db["profit_history"].create_index([("sale_id", ASCENDING), ("user_id", ASCENDING)])
    db["profit_balances"].create_index([("user_id", ASCENDING)], unique=True)

    db["stock_transfers"].create_index([("from_distributor_id", ASCENDING), ("created_at", DESCENDING)])
    db["stock_transfers"].create_index([("to_distributor_id", ASCENDING), ("created_at", DESCENDING)])

    db["audit_logs"].create_index([("created_at", DESCENDING)])
    db["audit_logs"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["audit_logs"].create_index([("entity_type", ASCENDING), ("entity_id", ASCENDING)])

    db["period_winners"].create_index([("start_date", ASCENDING), ("end_date", ASCENDING)], unique=True)
    db["distributor_stats"].create_index([("distributor_id", ASCENDING)], unique=True)
