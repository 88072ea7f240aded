# routes/sales.py — sale registration, payment confirmation and sale listings
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from flask import Blueprint, jsonify, request
from pymongo import ReturnDocument

import audit
import commission
import profit_ledger
from auth import ROLE_ADMIN, ROLE_DISTRIBUTOR, require_user
from db import db
from helpers import (
    BusinessRuleError, build_date_filter, fail, jlog, money, paging_args, pagination,
    parse_oid, parse_positive_qty, rule_error_response, server_error, to_float_safe, to_json,
)
from routes.gamification import apply_sale_to_stats
from routes.stock import give_to_distributor, give_to_warehouse, take_from_distributor, take_from_warehouse

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

sales_col = db["sales"]
products_col = db["products"]
users_col = db["users"]
dist_stock_col = db["distributor_stock"]
special_col = db["special_sales"]
counters_col = db["counters"]

PENDING = "pending"
CONFIRMED = "confirmed"
ALLOWED_STATUSES = {PENDING, CONFIRMED}
ALLOWED_SORTS = {
    "newest": [("sale_date", -1), ("_id", -1)],
    "oldest": [("sale_date", 1), ("_id", 1)],
    "amount_desc": [("sale_price", -1), ("sale_date", -1)],
    "amount_asc": [("sale_price", 1), ("sale_date", -1)],
    "profit_desc": [("total_profit", -1), ("sale_date", -1)],
}


# ---------------------------
# Helpers
# ---------------------------

def next_sale_code(now: datetime | None = None) -> str:
    """VTA-<year>-<seq>; the per-year sequence comes from an atomic counter."""
    year = (now or datetime.utcnow()).year
    c = counters_col.find_one_and_update(
        {"_id": f"sale-{year}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"VTA-{year}-{int(c['seq']):04d}"


def _sale_price(raw) -> float:
    try:
        price = float(raw)
    except (TypeError, ValueError):
        raise BusinessRuleError("sale_price is required and must be a number")
    if price <= 0:
        raise BusinessRuleError("sale_price must be greater than 0")
    return money(price)


def _qty(raw) -> int:
    qty = parse_positive_qty(raw)
    if qty is None:
        raise BusinessRuleError("quantity must be a whole number greater than 0")
    return qty


def _totals(match: Dict[str, Any]) -> Dict[str, Any]:
    rows = list(sales_col.aggregate([
        {"$match": match},
        {"$group": {
            "_id": None,
            "count": {"$sum": 1},
            "units": {"$sum": "$quantity"},
            "revenue": {"$sum": {"$multiply": ["$sale_price", "$quantity"]}},
            "admin_profit": {"$sum": "$admin_profit"},
            "distributor_profit": {"$sum": "$distributor_profit"},
            "total_profit": {"$sum": "$total_profit"},
        }},
    ]))
    r = rows[0] if rows else {}
    return {
        "count": int(r.get("count") or 0),
        "units": int(r.get("units") or 0),
        "revenue": money(r.get("revenue")),
        "admin_profit": money(r.get("admin_profit")),
        "distributor_profit": money(r.get("distributor_profit")),
        "total_profit": money(r.get("total_profit")),
    }


def _special_totals(date_filter: Dict[str, Any]) -> Dict[str, Any]:
    rows = list(special_col.aggregate([
        {"$match": {"status": "active", **date_filter}},
        {"$group": {
            "_id": None,
            "count": {"$sum": 1},
            "units": {"$sum": "$quantity"},
            "revenue": {"$sum": {"$multiply": ["$special_price", "$quantity"]}},
            "total_profit": {"$sum": "$total_profit"},
        }},
    ]))
    r = rows[0] if rows else {}
    return {
        "count": int(r.get("count") or 0),
        "units": int(r.get("units") or 0),
        "revenue": money(r.get("revenue")),
        "total_profit": money(r.get("total_profit")),
    }


def _decorate(docs):
    pids = list({d["product_id"] for d in docs})
    dids = list({d["distributor_id"] for d in docs if d.get("distributor_id")})
    products = {p["_id"]: p.get("name") for p in products_col.find({"_id": {"$in": pids}}, {"name": 1})}
    names = {u["_id"]: u.get("name") for u in users_col.find({"_id": {"$in": dids}}, {"name": 1})}
    out = []
    for d in docs:
        item = to_json(d)
        item["product_name"] = products.get(d["product_id"])
        item["distributor_name"] = names.get(d.get("distributor_id")) if d.get("distributor_id") else None
        item["revenue"] = money(to_float_safe(d.get("sale_price")) * int(d.get("quantity") or 0))
        out.append(item)
    return out


# ---------------------------
# Operations
# ---------------------------

def register_sale(distributor: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    pid = parse_oid(payload.get("product_id"))
    if not pid:
        raise BusinessRuleError("product_id is required")
    qty = _qty(payload.get("quantity"))
    sale_price = _sale_price(payload.get("sale_price"))

    held = dist_stock_col.find_one({"distributor_id": distributor["_id"], "product_id": pid})
    if not held:
        raise BusinessRuleError("This product is not assigned to you")
    if int(held.get("quantity") or 0) < qty:
        raise BusinessRuleError(f"Insufficient stock. Available: {int(held.get('quantity') or 0)}",
                                available=int(held.get("quantity") or 0))

    product = products_col.find_one({"_id": pid})
    if not product:
        raise BusinessRuleError("Product not found", 404)
    if not product.get("purchase_price") or not product.get("distributor_price"):
        raise BusinessRuleError("The product does not have all required prices configured")

    pct, bonus, position = commission.commission_for(distributor["_id"])

    rec = take_from_distributor(distributor["_id"], pid, qty)
    if not rec:
        raise BusinessRuleError("Insufficient stock")
    products_col.update_one({"_id": pid}, {"$inc": {"total_stock": -qty}})

    now = datetime.utcnow()
    split = commission.compute_split(sale_price, product["purchase_price"], qty, pct, True)
    doc = {
        "sale_id": next_sale_code(now),
        "distributor_id": distributor["_id"],
        "product_id": pid,
        "quantity": qty,
        "purchase_price": money(product["purchase_price"]),
        "sale_price": sale_price,
        **split,
        "distributor_profit_percentage": pct,
        "commission_bonus": bonus,
        "ranking_position": position,
        "notes": (payload.get("notes") or "").strip(),
        "sale_date": now,
        "payment_status": PENDING,
        "payment_confirmed_at": None,
        "payment_confirmed_by": None,
        "created_at": now,
    }
    doc["_id"] = sales_col.insert_one(doc).inserted_id

    audit.log(distributor, "sale_registered", "sales",
              f"Registered sale {doc['sale_id']}: {qty} x {product.get('name')}",
              entity_type="sale", entity_id=doc["_id"], entity_name=doc["sale_id"],
              new_values={"quantity": qty, "sale_price": sale_price, "commission": pct})
    jlog("sale_registered", sale_id=doc["sale_id"], distributor_id=str(distributor["_id"]),
         qty=qty, pct=pct, remaining=rec["quantity"])
    doc["remaining_stock"] = rec["quantity"]
    return doc


def register_admin_sale(admin: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    pid = parse_oid(payload.get("product_id"))
    if not pid:
        raise BusinessRuleError("product_id is required")
    qty = _qty(payload.get("quantity"))
    sale_price = _sale_price(payload.get("sale_price"))

    product = products_col.find_one({"_id": pid})
    if not product:
        raise BusinessRuleError("Product not found", 404)
    if product.get("purchase_price") is None:
        raise BusinessRuleError("The product has no purchase price configured")
    available = min(int(product.get("total_stock") or 0), int(product.get("warehouse_stock") or 0))
    if available < qty:
        raise BusinessRuleError(f"Insufficient stock. Available: {available}", available=available)
    if not take_from_warehouse(pid, qty, also_total=True):
        raise BusinessRuleError("Insufficient stock")

    now = datetime.utcnow()
    split = commission.compute_split(sale_price, product["purchase_price"], qty, 0, False)
    doc = {
        "sale_id": next_sale_code(now),
        "distributor_id": None,
        "product_id": pid,
        "quantity": qty,
        "purchase_price": money(product["purchase_price"]),
        "sale_price": sale_price,
        **split,
        "distributor_profit_percentage": 0,
        "commission_bonus": 0,
        "ranking_position": None,
        "notes": (payload.get("notes") or "").strip(),
        "sale_date": now,
        "payment_status": CONFIRMED,
        "payment_confirmed_at": now,
        "payment_confirmed_by": admin["_id"],
        "created_at": now,
    }
    doc["_id"] = sales_col.insert_one(doc).inserted_id
    profit_ledger.record_sale_profit(doc)

    audit.log(admin, "admin_sale_registered", "sales",
              f"Registered direct sale {doc['sale_id']}: {qty} x {product.get('name')}",
              entity_type="sale", entity_id=doc["_id"], entity_name=doc["sale_id"],
              new_values={"quantity": qty, "sale_price": sale_price, "admin_profit": split["admin_profit"]})
    jlog("admin_sale_registered", sale_id=doc["sale_id"], qty=qty)
    return doc


def confirm_payment(admin: Dict[str, Any], sale_oid) -> Dict[str, Any]:
    sid = parse_oid(sale_oid)
    if not sid:
        raise BusinessRuleError("Invalid sale id")
    now = datetime.utcnow()
    sale = sales_col.find_one_and_update(
        {"_id": sid, "payment_status": PENDING},
        {"$set": {"payment_status": CONFIRMED, "payment_confirmed_at": now, "payment_confirmed_by": admin["_id"]}},
        return_document=ReturnDocument.AFTER,
    )
    if not sale:
        if sales_col.find_one({"_id": sid}, {"_id": 1}):
            raise BusinessRuleError("Payment already confirmed")
        raise BusinessRuleError("Sale not found", 404)

    profit_ledger.record_sale_profit(sale)
    apply_sale_to_stats(sale)

    audit.log(admin, "payment_confirmed", "sales", f"Confirmed payment of sale {sale.get('sale_id')}",
              entity_type="sale", entity_id=sale["_id"], entity_name=sale.get("sale_id"),
              old_values={"payment_status": PENDING}, new_values={"payment_status": CONFIRMED})
    return sale


def delete_sale(admin: Dict[str, Any], sale_oid) -> Dict[str, Any]:
    sid = parse_oid(sale_oid)
    # claim the sale first: only the request that removes it restores stock and ledger
    sale = sales_col.find_one_and_delete({"_id": sid}) if sid else None
    if not sale:
        raise BusinessRuleError("Sale not found", 404)

    qty = int(sale.get("quantity") or 0)
    if sale.get("distributor_id"):
        give_to_distributor(sale["distributor_id"], sale["product_id"], qty)
        products_col.update_one({"_id": sale["product_id"]}, {"$inc": {"total_stock": qty}})
    else:
        give_to_warehouse(sale["product_id"], qty, also_total=True)

    reversed_entries = []
    if sale.get("payment_status") == CONFIRMED:
        reversed_entries = profit_ledger.reverse_sale_profit(sale)
        apply_sale_to_stats(sale, sign=-1)

    audit.log(admin, "sale_deleted", "sales", f"Deleted sale {sale.get('sale_id')}",
              entity_type="sale", entity_id=sale["_id"], entity_name=sale.get("sale_id"),
              old_values={"quantity": qty, "sale_price": sale.get("sale_price"),
                          "payment_status": sale.get("payment_status")},
              metadata={"ledger_reversals": len(reversed_entries)}, severity="warning")
    return sale


# ---------------------------
# Routes
# ---------------------------

@sales_bp.route("", methods=["POST"])
def create_sale():
    user, err = require_user(ROLE_DISTRIBUTOR)
    if err:
        return err
    try:
        doc = register_sale(user, request.get_json(silent=True) or {})
        return jsonify({
            "success": True,
            "message": "Sale registered",
            "sale": to_json(doc),
            "remaining_stock": doc["remaining_stock"],
            "commission_bonus": f"+{doc['commission_bonus']:g}%" if doc["commission_bonus"] > 0 else None,
        }), 201
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("sale_register_error", e)


@sales_bp.route("/admin", methods=["POST"])
def create_admin_sale():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    try:
        doc = register_admin_sale(user, request.get_json(silent=True) or {})
        return jsonify({"success": True, "message": "Sale registered", "sale": to_json(doc)}), 201
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("admin_sale_register_error", e)


@sales_bp.route("/<sale_id>/confirm-payment", methods=["PUT", "POST"])
def confirm_payment_route(sale_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    try:
        sale = confirm_payment(user, sale_id)
        return jsonify({"success": True, "message": "Payment confirmed", "sale": to_json(sale)})
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("confirm_payment_error", e)


@sales_bp.route("/<sale_id>", methods=["DELETE"])
def delete_sale_route(sale_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    try:
        delete_sale(user, sale_id)
        return jsonify({"success": True, "message": "Sale deleted, stock restored"})
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("sale_delete_error", e)


@sales_bp.route("", methods=["GET"])
def list_sales():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err

    date_filter = build_date_filter("sale_date", request.args.get("start_date"), request.args.get("end_date"))
    q: Dict[str, Any] = dict(date_filter)

    dist = request.args.get("distributor_id")
    if dist == "admin":
        q["distributor_id"] = None
    elif dist:
        did = parse_oid(dist)
        if not did:
            return fail("Invalid distributor id", 400)
        q["distributor_id"] = did
    if request.args.get("product_id"):
        pid = parse_oid(request.args.get("product_id"))
        if not pid:
            return fail("Invalid product id", 400)
        q["product_id"] = pid
    status = (request.args.get("payment_status") or "").strip().lower()
    if status:
        if status not in ALLOWED_STATUSES:
            return fail("payment_status must be pending or confirmed", 400)
        q["payment_status"] = status

    sort = ALLOWED_SORTS.get(request.args.get("sort") or "newest", ALLOWED_SORTS["newest"])
    page, limit, skip = paging_args(default_limit=50)
    try:
        total = sales_col.count_documents(q)
        docs = list(sales_col.find(q).sort(sort).skip(skip).limit(limit))
        totals = _totals(q)
        # special sales have no distributor, product ref or payment status to filter on
        if any(k in q for k in ("distributor_id", "product_id", "payment_status")):
            special = None
        else:
            special = _special_totals(date_filter)
        combined = {
            "count": totals["count"],
            "units": totals["units"],
            "revenue": totals["revenue"],
            "total_profit": totals["total_profit"],
        } if special is None else {
            "count": totals["count"] + special["count"],
            "units": totals["units"] + special["units"],
            "revenue": money(totals["revenue"] + special["revenue"]),
            "total_profit": money(totals["total_profit"] + special["total_profit"]),
        }
        return jsonify({
            "success": True,
            "sales": _decorate(docs),
            "pagination": pagination(page, limit, total),
            "totals": totals,
            "special_sales_totals": special,
            "combined_totals": combined,
        })
    except Exception as e:
        return server_error("sales_list_error", e)


@sales_bp.route("/distributor/<distributor_id>", methods=["GET"])
def distributor_sales(distributor_id):
    user, err = require_user()
    if err:
        return err
    did = user["_id"] if distributor_id == "me" else parse_oid(distributor_id)
    if not did:
        return fail("Invalid distributor id", 400)
    if user.get("role") != ROLE_ADMIN and did != user["_id"]:
        return fail("You cannot see other distributors' sales", 403)

    q: Dict[str, Any] = {"distributor_id": did,
                         **build_date_filter("sale_date", request.args.get("start_date"), request.args.get("end_date"))}
    if request.args.get("product_id"):
        pid = parse_oid(request.args.get("product_id"))
        if pid:
            q["product_id"] = pid
    status = (request.args.get("payment_status") or "").strip().lower()
    if status in ALLOWED_STATUSES:
        q["payment_status"] = status

    page, limit, skip = paging_args(default_limit=50)
    total = sales_col.count_documents(q)
    docs = list(sales_col.find(q).sort(ALLOWED_SORTS["newest"]).skip(skip).limit(limit))
    return jsonify({
        "success": True,
        "sales": _decorate(docs),
        "stats": _totals(q),
        "pagination": pagination(page, limit, total),
    })


@sales_bp.route("/<sale_id>", methods=["GET"])
def get_sale(sale_id):
    user, err = require_user()
    if err:
        return err
    sid = parse_oid(sale_id)
    sale = sales_col.find_one({"_id": sid}) if sid else sales_col.find_one({"sale_id": sale_id})
    if not sale:
        return fail("Sale not found", 404)
    if user.get("role") != ROLE_ADMIN and sale.get("distributor_id") != user["_id"]:
        return fail("You cannot see this sale", 403)
    return jsonify({"success": True, "sale": _decorate([sale])[0]})


@sales_bp.route("/report/products", methods=["GET"])
def report_by_product():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    match = {"payment_status": CONFIRMED,
             **build_date_filter("sale_date", request.args.get("start_date"), request.args.get("end_date"))}
    rows = []
    for r in sales_col.aggregate([
        {"$match": match},
        {"$group": {
            "_id": "$product_id",
            "sales": {"$sum": 1},
            "units": {"$sum": "$quantity"},
            "revenue": {"$sum": {"$multiply": ["$sale_price", "$quantity"]}},
            "admin_profit": {"$sum": "$admin_profit"},
            "distributor_profit": {"$sum": "$distributor_profit"},
        }},
        {"$lookup": {"from": "products", "localField": "_id", "foreignField": "_id", "as": "product"}},
        {"$sort": {"revenue": -1}},
    ]):
        product = (r.get("product") or [{}])[0]
        rows.append({
            "product_id": str(r["_id"]),
            "product_name": product.get("name"),
            "sales": int(r["sales"]),
            "units": int(r["units"]),
            "revenue": money(r["revenue"]),
            "admin_profit": money(r["admin_profit"]),
            "distributor_profit": money(r["distributor_profit"]),
        })
    return jsonify({"success": True, "report": rows})


@sales_bp.route("/report/distributors", methods=["GET"])
def report_by_distributor():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    match = {"payment_status": CONFIRMED, "distributor_id": {"$ne": None},
             **build_date_filter("sale_date", request.args.get("start_date"), request.args.get("end_date"))}
    rows = []
    for r in sales_col.aggregate([
        {"$match": match},
        {"$group": {
            "_id": "$distributor_id",
            "sales": {"$sum": 1},
            "units": {"$sum": "$quantity"},
            "revenue": {"$sum": {"$multiply": ["$sale_price", "$quantity"]}},
            "admin_profit": {"$sum": "$admin_profit"},
            "distributor_profit": {"$sum": "$distributor_profit"},
        }},
        {"$lookup": {"from": "users", "localField": "_id", "foreignField": "_id", "as": "distributor"}},
        {"$sort": {"revenue": -1}},
    ]):
        d = (r.get("distributor") or [{}])[0]
        rows.append({
            "distributor_id": str(r["_id"]),
            "distributor_name": d.get("name"),
            "sales": int(r["sales"]),
            "units": int(r["units"]),
            "revenue": money(r["revenue"]),
            "admin_profit": money(r["admin_profit"]),
            "distributor_profit": money(r["distributor_profit"]),
        })
    return jsonify({"success": True, "report": rows})
