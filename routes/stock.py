# routes/stock.py — warehouse <-> distributor stock movements
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request
from pymongo import ReturnDocument

import audit
from auth import ROLE_ADMIN, ROLE_DISTRIBUTOR, require_user
from db import db
from helpers import (
    BusinessRuleError, build_date_filter, fail, jlog, paging_args, pagination, parse_oid,
    parse_positive_qty, rule_error_response, server_error, to_json,
)

stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")

users_col = db["users"]
products_col = db["products"]
dist_stock_col = db["distributor_stock"]
transfers_col = db["stock_transfers"]

DEFAULT_DISTRIBUTOR_ALERT = 5


# ---------------------------
# Stock primitives (shared with sales / defective products)
# ---------------------------

def take_from_distributor(distributor_id, product_id, qty: int) -> Optional[Dict[str, Any]]:
    """Conditional decrement; returns the record after the update, or None when it holds less than qty."""
    return dist_stock_col.find_one_and_update(
        {"distributor_id": distributor_id, "product_id": product_id, "quantity": {"$gte": qty}},
        {"$inc": {"quantity": -qty}, "$set": {"updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def give_to_distributor(distributor_id, product_id, qty: int) -> Dict[str, Any]:
    now = datetime.utcnow()
    rec = dist_stock_col.find_one_and_update(
        {"distributor_id": distributor_id, "product_id": product_id},
        {
            "$inc": {"quantity": qty},
            "$set": {"updated_at": now},
            "$setOnInsert": {"low_stock_alert": DEFAULT_DISTRIBUTOR_ALERT, "created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    users_col.update_one({"_id": distributor_id}, {"$addToSet": {"assigned_products": product_id}})
    return rec


def take_from_warehouse(product_id, qty: int, also_total: bool = False) -> Optional[Dict[str, Any]]:
    inc = {"warehouse_stock": -qty}
    if also_total:
        inc["total_stock"] = -qty
    return products_col.find_one_and_update(
        {"_id": product_id, "warehouse_stock": {"$gte": qty}},
        {"$inc": inc, "$set": {"updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def give_to_warehouse(product_id, qty: int, also_total: bool = False):
    inc = {"warehouse_stock": qty}
    if also_total:
        inc["total_stock"] = qty
    products_col.update_one({"_id": product_id}, {"$inc": inc, "$set": {"updated_at": datetime.utcnow()}})


def _distributor(distributor_id, require_active: bool = True) -> Dict[str, Any]:
    did = parse_oid(distributor_id)
    d = users_col.find_one({"_id": did, "role": ROLE_DISTRIBUTOR}) if did else None
    if not d:
        raise BusinessRuleError("Distributor not found", 404)
    if require_active and not d.get("active", True):
        raise BusinessRuleError("Distributor is inactive", 400)
    return d


def _product(product_id) -> Dict[str, Any]:
    pid = parse_oid(product_id)
    p = products_col.find_one({"_id": pid}) if pid else None
    if not p:
        raise BusinessRuleError("Product not found", 404)
    return p


def _qty(raw) -> int:
    qty = parse_positive_qty(raw)
    if qty is None:
        raise BusinessRuleError("quantity must be a whole number greater than 0")
    return qty


# ---------------------------
# Operations
# ---------------------------

def assign_stock(admin, distributor_id, product_id, quantity) -> Dict[str, Any]:
    qty = _qty(quantity)
    d = _distributor(distributor_id)
    p = _product(product_id)
    if not take_from_warehouse(p["_id"], qty):
        raise BusinessRuleError("Insufficient warehouse stock", 400,
                                available=int(p.get("warehouse_stock") or 0), requested=qty)
    rec = give_to_distributor(d["_id"], p["_id"], qty)
    audit.log(admin, "stock_assigned", "stock", f"Assigned {qty} x {p.get('name')} to {d.get('name')}",
              entity_type="distributor_stock", entity_id=rec["_id"], entity_name=p.get("name"),
              new_values={"quantity": rec["quantity"]},
              metadata={"distributor_id": d["_id"], "product_id": p["_id"], "quantity": qty})
    return rec


def withdraw_stock(admin, distributor_id, product_id, quantity) -> Dict[str, Any]:
    qty = _qty(quantity)
    d = _distributor(distributor_id, require_active=False)
    p = _product(product_id)
    rec = take_from_distributor(d["_id"], p["_id"], qty)
    if not rec:
        held = dist_stock_col.find_one({"distributor_id": d["_id"], "product_id": p["_id"]}) or {}
        raise BusinessRuleError("Distributor does not hold enough stock", 400,
                                available=int(held.get("quantity") or 0), requested=qty)
    give_to_warehouse(p["_id"], qty)
    audit.log(admin, "stock_withdrawn", "stock", f"Withdrew {qty} x {p.get('name')} from {d.get('name')}",
              entity_type="distributor_stock", entity_id=rec["_id"], entity_name=p.get("name"),
              old_values={"quantity": rec["quantity"] + qty}, new_values={"quantity": rec["quantity"]},
              metadata={"distributor_id": d["_id"], "product_id": p["_id"], "quantity": qty})
    return rec


def transfer_stock(caller, to_distributor_id, product_id, quantity, notes: str = "") -> Dict[str, Any]:
    if not caller or caller.get("role") != ROLE_DISTRIBUTOR:
        raise BusinessRuleError("Only distributors can transfer stock: origin is not a distributor", 403)
    if not to_distributor_id or not product_id or quantity in (None, ""):
        raise BusinessRuleError("to_distributor_id, product_id and quantity are required")
    qty = _qty(quantity)

    to_id = parse_oid(to_distributor_id)
    if to_id == caller["_id"]:
        raise BusinessRuleError("Cannot transfer stock to yourself")
    dest = users_col.find_one({"_id": to_id}) if to_id else None
    if not dest or dest.get("role") != ROLE_DISTRIBUTOR:
        raise BusinessRuleError("Destination is not a distributor")
    if not dest.get("active", True):
        raise BusinessRuleError("Destination distributor is inactive")

    p = _product(product_id)

    src = take_from_distributor(caller["_id"], p["_id"], qty)
    if not src:
        held = dist_stock_col.find_one({"distributor_id": caller["_id"], "product_id": p["_id"]}) or {}
        raise BusinessRuleError("Insufficient stock", 400,
                                available=int(held.get("quantity") or 0), requested=qty)
    dst = give_to_distributor(dest["_id"], p["_id"], qty)

    now = datetime.utcnow()
    record = {
        "from_distributor_id": caller["_id"],
        "to_distributor_id": dest["_id"],
        "product_id": p["_id"],
        "quantity": qty,
        "from_stock_before": src["quantity"] + qty,
        "from_stock_after": src["quantity"],
        "to_stock_before": dst["quantity"] - qty,
        "to_stock_after": dst["quantity"],
        "status": "completed",
        "notes": (notes or "").strip(),
        "created_at": now,
    }
    record["_id"] = transfers_col.insert_one(record).inserted_id

    audit.log(caller, "stock_transferred", "stock",
              f"Transferred {qty} x {p.get('name')} from {caller.get('name')} to {dest.get('name')}",
              entity_type="stock_transfer", entity_id=record["_id"], entity_name=p.get("name"),
              metadata={"to_distributor_id": dest["_id"], "product_id": p["_id"], "quantity": qty})
    jlog("stock_transferred", from_id=str(caller["_id"]), to_id=str(dest["_id"]),
         product_id=str(p["_id"]), qty=qty)
    return record


# ---------------------------
# Routes
# ---------------------------

@stock_bp.route("/assign", methods=["POST"])
def assign():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    try:
        rec = assign_stock(user, payload.get("distributor_id"), payload.get("product_id"), payload.get("quantity"))
        return jsonify({"success": True, "stock": to_json(rec)})
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("stock_assign_error", e)


@stock_bp.route("/withdraw", methods=["POST"])
def withdraw():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    try:
        rec = withdraw_stock(user, payload.get("distributor_id"), payload.get("product_id"), payload.get("quantity"))
        return jsonify({"success": True, "stock": to_json(rec)})
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("stock_withdraw_error", e)


@stock_bp.route("/transfer", methods=["POST"])
def transfer():
    user, err = require_user()
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    try:
        record = transfer_stock(
            user,
            payload.get("to_distributor_id"),
            payload.get("product_id"),
            payload.get("quantity"),
            payload.get("notes") or "",
        )
        return jsonify({"success": True, "message": "Transfer completed", "transfer": to_json(record)}), 201
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("stock_transfer_error", e)


def _stock_rows(match: Dict[str, Any]):
    rows = []
    for s in dist_stock_col.aggregate([
        {"$match": match},
        {"$lookup": {"from": "products", "localField": "product_id", "foreignField": "_id", "as": "product"}},
        {"$unwind": "$product"},
        {"$lookup": {"from": "users", "localField": "distributor_id", "foreignField": "_id", "as": "distributor"}},
        {"$unwind": "$distributor"},
        {"$sort": {"product.name": 1}},
    ]):
        qty = int(s.get("quantity") or 0)
        alert = int(s.get("low_stock_alert") or 0)
        rows.append({
            "_id": str(s["_id"]),
            "distributor_id": str(s["distributor_id"]),
            "distributor_name": s["distributor"].get("name"),
            "product_id": str(s["product_id"]),
            "product_name": s["product"].get("name"),
            "quantity": qty,
            "low_stock_alert": alert,
            "is_low_stock": qty <= alert,
        })
    return rows


@stock_bp.route("/distributor/<distributor_id>", methods=["GET"])
def distributor_stock(distributor_id):
    user, err = require_user()
    if err:
        return err
    if distributor_id == "me":
        if user.get("role") != ROLE_DISTRIBUTOR:
            return fail("Only distributors have their own stock", 400)
        did = user["_id"]
    else:
        did = parse_oid(distributor_id)
        if not did:
            return fail("Invalid distributor id", 400)
        if user.get("role") != ROLE_ADMIN and did != user["_id"]:
            return fail("You can only see your own stock", 403)
    rows = _stock_rows({"distributor_id": did})
    return jsonify({
        "success": True,
        "stock": rows,
        "total_units": sum(r["quantity"] for r in rows),
        "low_stock_count": sum(1 for r in rows if r["is_low_stock"]),
    })


@stock_bp.route("", methods=["GET"])
def all_stock():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    match: Dict[str, Any] = {}
    pid = parse_oid(request.args.get("product_id")) if request.args.get("product_id") else None
    if pid:
        match["product_id"] = pid
    if request.args.get("only_positive") in ("1", "true"):
        match["quantity"] = {"$gt": 0}
    return jsonify({"success": True, "stock": _stock_rows(match)})


@stock_bp.route("/alerts", methods=["GET"])
def stock_alerts():
    user, err = require_user()
    if err:
        return err
    is_admin = user.get("role") == ROLE_ADMIN

    warehouse = []
    if is_admin:
        for p in products_col.find({}, {"name": 1, "warehouse_stock": 1, "low_stock_alert": 1}).sort("warehouse_stock", 1):
            stock = int(p.get("warehouse_stock") or 0)
            alert = int(p.get("low_stock_alert") or 0)
            if stock <= alert:
                warehouse.append({"product_id": str(p["_id"]), "product_name": p.get("name"),
                                  "warehouse_stock": stock, "low_stock_alert": alert})

    match = {} if is_admin else {"distributor_id": user["_id"]}
    distributors = [r for r in _stock_rows(match) if r["is_low_stock"]]
    return jsonify({
        "success": True,
        "warehouse_alerts": warehouse,
        "distributor_alerts": distributors,
        "total_alerts": len(warehouse) + len(distributors),
    })


@stock_bp.route("/transfers", methods=["GET"])
def transfer_history():
    user, err = require_user()
    if err:
        return err
    q: Dict[str, Any] = build_date_filter("created_at", request.args.get("start_date"), request.args.get("end_date"))

    if user.get("role") == ROLE_DISTRIBUTOR:
        q["$or"] = [{"from_distributor_id": user["_id"]}, {"to_distributor_id": user["_id"]}]
    else:
        did = parse_oid(request.args.get("distributor_id")) if request.args.get("distributor_id") else None
        if did:
            q["$or"] = [{"from_distributor_id": did}, {"to_distributor_id": did}]
    pid = parse_oid(request.args.get("product_id")) if request.args.get("product_id") else None
    if pid:
        q["product_id"] = pid

    page, limit, skip = paging_args(default_limit=50)
    try:
        total = transfers_col.count_documents(q)
        docs = list(transfers_col.find(q).sort("created_at", -1).skip(skip).limit(limit))
        names = {u["_id"]: u.get("name") for u in users_col.find(
            {"_id": {"$in": list({d["from_distributor_id"] for d in docs} | {d["to_distributor_id"] for d in docs})}},
            {"name": 1},
        )}
        products = {p["_id"]: p.get("name") for p in products_col.find(
            {"_id": {"$in": list({d["product_id"] for d in docs})}}, {"name": 1},
        )}
        items = []
        for d in docs:
            item = to_json(d)
            item["from_distributor_name"] = names.get(d["from_distributor_id"])
            item["to_distributor_name"] = names.get(d["to_distributor_id"])
            item["product_name"] = products.get(d["product_id"])
            items.append(item)
        return jsonify({"success": True, "transfers": items, "pagination": pagination(page, limit, total)})
    except Exception as e:
        return server_error("transfer_history_error", e)
