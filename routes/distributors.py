# routes/distributors.py — admin management of distributor accounts
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List

from flask import Blueprint, jsonify, request
from pymongo.errors import DuplicateKeyError
from werkzeug.security import generate_password_hash

import audit
from auth import ROLE_ADMIN, ROLE_DISTRIBUTOR, create_user, public_user, require_user
from db import db
from helpers import fail, jlog, money, paging_args, pagination, parse_oid, server_error, to_json

distributors_bp = Blueprint("distributors", __name__, url_prefix="/api/distributors")

users_col = db["users"]
dist_stock_col = db["distributor_stock"]
sales_col = db["sales"]
stats_col = db["distributor_stats"]

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD = 6


def _stock_summary(ids: List[Any]) -> Dict[Any, Dict[str, int]]:
    out: Dict[Any, Dict[str, int]] = {}
    for r in dist_stock_col.aggregate([
        {"$match": {"distributor_id": {"$in": ids}}},
        {"$group": {"_id": "$distributor_id", "units": {"$sum": "$quantity"}, "products": {"$sum": 1}}},
    ]):
        out[r["_id"]] = {"units": int(r.get("units") or 0), "products": int(r.get("products") or 0)}
    return out


def _sales_summary(ids: List[Any]) -> Dict[Any, Dict[str, Any]]:
    out: Dict[Any, Dict[str, Any]] = {}
    for r in sales_col.aggregate([
        {"$match": {"distributor_id": {"$in": ids}}},
        {"$group": {
            "_id": "$distributor_id",
            "sales": {"$sum": 1},
            "units": {"$sum": "$quantity"},
            "revenue": {"$sum": {"$multiply": ["$sale_price", "$quantity"]}},
            "distributor_profit": {"$sum": "$distributor_profit"},
            "pending": {"$sum": {"$cond": [{"$eq": ["$payment_status", "pending"]}, 1, 0]}},
        }},
    ]):
        out[r["_id"]] = {
            "sales": int(r.get("sales") or 0),
            "units": int(r.get("units") or 0),
            "revenue": money(r.get("revenue")),
            "distributor_profit": money(r.get("distributor_profit")),
            "pending_sales": int(r.get("pending") or 0),
        }
    return out


def _load(distributor_id):
    did = parse_oid(distributor_id)
    if not did:
        return None
    return users_col.find_one({"_id": did, "role": ROLE_DISTRIBUTOR})


@distributors_bp.route("", methods=["POST"])
def create_distributor():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    name = (payload.get("name") or "").strip()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    if not name or not email or not password:
        return fail("name, email and password are required", 400)
    if not EMAIL_RE.match(email):
        return fail("Invalid email address", 400)
    if len(password) < MIN_PASSWORD:
        return fail(f"Password must be at least {MIN_PASSWORD} characters", 400)
    if users_col.find_one({"email": email}, {"_id": 1}):
        return fail("Email already registered", 409)

    try:
        doc = create_user(
            name, email, password, ROLE_DISTRIBUTOR,
            phone=(payload.get("phone") or "").strip() or None,
            address=(payload.get("address") or "").strip() or None,
        )
    except DuplicateKeyError:
        return fail("Email already registered", 409)

    audit.log(user, "distributor_created", "distributors", f"Created distributor {name}",
              entity_type="user", entity_id=doc["_id"], entity_name=name,
              new_values={"name": name, "email": email})
    jlog("distributor_created", distributor_id=str(doc["_id"]), admin_id=str(user["_id"]))
    return jsonify({"success": True, "distributor": public_user(doc)}), 201


@distributors_bp.route("", methods=["GET"])
def list_distributors():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    q: Dict[str, Any] = {"role": ROLE_DISTRIBUTOR}
    active = request.args.get("active")
    if active in ("true", "1"):
        q["active"] = True
    elif active in ("false", "0"):
        q["active"] = False
    search = (request.args.get("search") or "").strip()
    if search:
        rx = {"$regex": re.escape(search), "$options": "i"}
        q["$or"] = [{"name": rx}, {"email": rx}, {"phone": rx}]

    page, limit, skip = paging_args(default_limit=20, max_limit=200)
    try:
        total = users_col.count_documents(q)
        docs = list(users_col.find(q, {"password": 0}).sort("created_at", -1).skip(skip).limit(limit))
        ids = [d["_id"] for d in docs]
        stock = _stock_summary(ids)
        sales = _sales_summary(ids)
        items = []
        for d in docs:
            item = public_user(d)
            item["created_at"] = to_json(d.get("created_at"))
            item["stock"] = stock.get(d["_id"], {"units": 0, "products": 0})
            item["sales"] = sales.get(d["_id"], {"sales": 0, "units": 0, "revenue": 0.0,
                                                 "distributor_profit": 0.0, "pending_sales": 0})
            items.append(item)
        return jsonify({"success": True, "distributors": items, "pagination": pagination(page, limit, total)})
    except Exception as e:
        return server_error("distributors_list_error", e)


@distributors_bp.route("/<distributor_id>", methods=["GET"])
def get_distributor(distributor_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    d = _load(distributor_id)
    if not d:
        return fail("Distributor not found", 404)

    stock = []
    for s in dist_stock_col.aggregate([
        {"$match": {"distributor_id": d["_id"]}},
        {"$lookup": {"from": "products", "localField": "product_id", "foreignField": "_id", "as": "product"}},
        {"$unwind": "$product"},
        {"$sort": {"product.name": 1}},
    ]):
        stock.append({
            "product_id": str(s["product_id"]),
            "product_name": s["product"].get("name"),
            "quantity": int(s.get("quantity") or 0),
            "low_stock_alert": int(s.get("low_stock_alert") or 0),
        })
    recent = list(sales_col.find({"distributor_id": d["_id"]}).sort("sale_date", -1).limit(10))
    stats = stats_col.find_one({"distributor_id": d["_id"]})

    out = public_user(d)
    out["assigned_products"] = [str(p) for p in d.get("assigned_products") or []]
    return jsonify({
        "success": True,
        "distributor": out,
        "stock": stock,
        "recent_sales": to_json(recent),
        "sales_summary": _sales_summary([d["_id"]]).get(d["_id"], {}),
        "stats": to_json(stats) if stats else None,
    })


@distributors_bp.route("/<distributor_id>", methods=["PUT"])
def update_distributor(distributor_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    d = _load(distributor_id)
    if not d:
        return fail("Distributor not found", 404)
    payload = request.get_json(silent=True) or {}

    upd: Dict[str, Any] = {}
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            return fail("name cannot be empty", 400)
        upd["name"] = name
    if "email" in payload:
        email = (payload.get("email") or "").strip().lower()
        if not EMAIL_RE.match(email):
            return fail("Invalid email address", 400)
        if users_col.find_one({"email": email, "_id": {"$ne": d["_id"]}}, {"_id": 1}):
            return fail("Email already registered", 409)
        upd["email"] = email
    for f in ("phone", "address"):
        if f in payload:
            upd[f] = (payload.get(f) or "").strip() or None
    if "active" in payload:
        upd["active"] = bool(payload["active"])
    if payload.get("password"):
        if len(payload["password"]) < MIN_PASSWORD:
            return fail(f"Password must be at least {MIN_PASSWORD} characters", 400)
        upd["password"] = generate_password_hash(payload["password"])
    if not upd:
        return fail("Nothing to update", 400)

    upd["updated_at"] = datetime.utcnow()
    users_col.update_one({"_id": d["_id"]}, {"$set": upd})
    changed = [k for k in upd if k not in ("updated_at", "password")]
    audit.log(user, "distributor_updated", "distributors", f"Updated distributor {d.get('name')}",
              entity_type="user", entity_id=d["_id"], entity_name=upd.get("name", d.get("name")),
              old_values={k: d.get(k) for k in changed},
              new_values={k: upd[k] for k in changed},
              metadata={"password_changed": "password" in upd})
    return jsonify({"success": True, "distributor": public_user(users_col.find_one({"_id": d["_id"]}))})


@distributors_bp.route("/<distributor_id>/toggle-active", methods=["PUT", "POST"])
def toggle_active(distributor_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    d = _load(distributor_id)
    if not d:
        return fail("Distributor not found", 404)
    new_state = not d.get("active", True)
    users_col.update_one({"_id": d["_id"]}, {"$set": {"active": new_state, "updated_at": datetime.utcnow()}})
    audit.log(user, "distributor_activated" if new_state else "distributor_deactivated", "distributors",
              f"{'Activated' if new_state else 'Deactivated'} distributor {d.get('name')}",
              entity_type="user", entity_id=d["_id"], entity_name=d.get("name"),
              old_values={"active": not new_state}, new_values={"active": new_state},
              severity="info" if new_state else "warning")
    return jsonify({"success": True, "active": new_state})


@distributors_bp.route("/<distributor_id>", methods=["DELETE"])
def delete_distributor(distributor_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    d = _load(distributor_id)
    if not d:
        return fail("Distributor not found", 404)
    held = dist_stock_col.count_documents({"distributor_id": d["_id"], "quantity": {"$gt": 0}})
    if held:
        return fail("Distributor still holds stock; withdraw it first", 400, products=held)

    users_col.delete_one({"_id": d["_id"]})
    dist_stock_col.delete_many({"distributor_id": d["_id"]})
    stats_col.delete_one({"distributor_id": d["_id"]})
    audit.log(user, "distributor_deleted", "distributors", f"Deleted distributor {d.get('name')}",
              entity_type="user", entity_id=d["_id"], entity_name=d.get("name"),
              old_values={"email": d.get("email")}, severity="warning")
    return jsonify({"success": True, "message": "Distributor deleted"})
