# routes/special_sales.py — off-catalog sales with a hand-made profit distribution
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from flask import Blueprint, jsonify, request

import audit
import profit_ledger
from auth import ROLE_ADMIN, require_user
from db import db
from helpers import (
    BusinessRuleError, build_date_filter, fail, money, paging_args, pagination, parse_datetime,
    parse_oid, parse_positive_qty, rule_error_response, server_error, to_float_safe, to_json,
)

special_sales_bp = Blueprint("special_sales", __name__, url_prefix="/api/special-sales")

special_col = db["special_sales"]
products_col = db["products"]
users_col = db["users"]

TOLERANCE = 0.01
ACTIVE = "active"
CANCELLED = "cancelled"
ADMIN_LINE = "Admin"


def _number(payload, field) -> float:
    raw = payload.get(field)
    try:
        val = float(raw)
    except (TypeError, ValueError):
        raise BusinessRuleError(f"{field} is required and must be a number")
    if val < 0:
        raise BusinessRuleError(f"{field} cannot be negative")
    return val


def build_distribution(lines, total_profit: float) -> List[Dict[str, Any]]:
    """
    Validate the manual split. Whatever the lines leave of the total profit
    goes to an `Admin` line booked to the business owner.
    """
    if not isinstance(lines, list) or not lines:
        raise BusinessRuleError("The distribution needs at least one person")

    admin = profit_ledger.admin_user()
    out = []
    for line in lines:
        name = str((line or {}).get("name") or "").strip()
        if not name:
            raise BusinessRuleError("Every distribution line needs a name")
        amount = to_float_safe(line.get("amount"), -1)
        if amount < 0:
            raise BusinessRuleError("Every distribution line needs an amount >= 0")
        if name.lower() == ADMIN_LINE.lower():
            name = ADMIN_LINE
        uid = None
        if line.get("user_id"):
            uid = parse_oid(line["user_id"])
            if not uid or not users_col.find_one({"_id": uid}, {"_id": 1}):
                raise BusinessRuleError(f"User of line '{name}' not found", 404)
        elif name == ADMIN_LINE and admin:
            uid = admin["_id"]
        out.append({"name": name, "amount": money(amount), "user_id": uid,
                    "notes": (line.get("notes") or "").strip()})

    distributed = sum(d["amount"] for d in out)
    if distributed > total_profit + TOLERANCE:
        raise BusinessRuleError(
            f"Distribution total ({distributed:.2f}) exceeds the total profit ({total_profit:.2f})",
            distribution_sum=money(distributed), total_profit=money(total_profit),
        )

    remaining = money(total_profit - distributed)
    if abs(remaining) > TOLERANCE:
        existing = next((d for d in out if d["name"] == ADMIN_LINE), None)
        if existing:
            existing["amount"] = money(existing["amount"] + remaining)
            note = f"includes remainder {remaining:.2f}"
            existing["notes"] = f"{existing['notes']} ({note})" if existing["notes"] else note.capitalize()
        else:
            out.append({"name": ADMIN_LINE, "amount": remaining, "user_id": admin["_id"] if admin else None,
                        "notes": "Remaining profit assigned automatically"})

    for d in out:
        d["percentage"] = round(d["amount"] / total_profit * 100, 2) if total_profit > 0 else 0.0
    return out


def create_special_sale(user, payload: Dict[str, Any]) -> Dict[str, Any]:
    product = payload.get("product") or {}
    name = str(product.get("name") or "").strip()
    pid = None
    if product.get("product_id"):
        pid = parse_oid(product["product_id"])
        p = products_col.find_one({"_id": pid}) if pid else None
        if not p:
            raise BusinessRuleError("Product not found", 404)
        name = name or p.get("name", "")
    if not name:
        raise BusinessRuleError("Product name is required")

    qty = parse_positive_qty(payload.get("quantity", 1))
    if qty is None:
        raise BusinessRuleError("quantity must be at least 1")
    special_price = _number(payload, "special_price")
    cost = _number(payload, "cost")
    total_profit = money((special_price - cost) * qty)
    if total_profit < 0:
        raise BusinessRuleError("special_price cannot be below cost")

    distribution = build_distribution(payload.get("distribution"), total_profit)

    sale_date = datetime.utcnow()
    if payload.get("sale_date"):
        sale_date = parse_datetime(payload["sale_date"])
        if sale_date is None:
            raise BusinessRuleError("Invalid sale_date")

    now = datetime.utcnow()
    doc = {
        "product": {"name": name, "product_id": pid},
        "quantity": qty,
        "special_price": money(special_price),
        "cost": money(cost),
        "total_profit": total_profit,
        "distribution": distribution,
        "observations": (payload.get("observations") or "").strip()[:1000],
        "event_name": (payload.get("event_name") or "").strip()[:200] or None,
        "sale_date": sale_date,
        "status": ACTIVE,
        "created_by": user["_id"],
        "created_at": now,
        "updated_at": now,
    }
    doc["_id"] = special_col.insert_one(doc).inserted_id
    profit_ledger.record_special_sale_profit(doc)

    audit.log(user, "special_sale_created", "special_sales",
              f"Special sale {qty} x {name} at {special_price:,.2f}",
              entity_type="special_sale", entity_id=doc["_id"], entity_name=name,
              new_values={"total_profit": total_profit, "lines": len(distribution)})
    return doc


# ---------------------------
# Routes
# ---------------------------

@special_sales_bp.route("", methods=["POST"])
def create():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    try:
        doc = create_special_sale(user, request.get_json(silent=True) or {})
        return jsonify({"success": True, "message": "Special sale created", "special_sale": to_json(doc)}), 201
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("special_sale_create_error", e)


@special_sales_bp.route("", methods=["GET"])
def list_special_sales():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    q: Dict[str, Any] = build_date_filter("sale_date", request.args.get("start_date"), request.args.get("end_date"))
    status = request.args.get("status")
    if status in (ACTIVE, CANCELLED):
        q["status"] = status
    if request.args.get("event_name"):
        q["event_name"] = request.args.get("event_name")
    if request.args.get("person"):
        q["distribution.name"] = request.args.get("person")

    page, limit, skip = paging_args(default_limit=20, max_limit=200)
    total = special_col.count_documents(q)
    docs = list(special_col.find(q).sort("sale_date", -1).skip(skip).limit(limit))
    return jsonify({"success": True, "special_sales": to_json(docs), "pagination": pagination(page, limit, total)})


@special_sales_bp.route("/statistics", methods=["GET"])
def statistics():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    match = {"status": ACTIVE,
             **build_date_filter("sale_date", request.args.get("start_date"), request.args.get("end_date"))}
    rows = list(special_col.aggregate([
        {"$match": match},
        {"$group": {
            "_id": None,
            "count": {"$sum": 1},
            "units": {"$sum": "$quantity"},
            "revenue": {"$sum": {"$multiply": ["$special_price", "$quantity"]}},
            "cost": {"$sum": {"$multiply": ["$cost", "$quantity"]}},
            "total_profit": {"$sum": "$total_profit"},
        }},
    ]))
    r = rows[0] if rows else {}
    count = int(r.get("count") or 0)
    return jsonify({"success": True, "statistics": {
        "count": count,
        "units": int(r.get("units") or 0),
        "revenue": money(r.get("revenue")),
        "cost": money(r.get("cost")),
        "total_profit": money(r.get("total_profit")),
        "average_profit": money(to_float_safe(r.get("total_profit")) / count) if count else 0.0,
    }})


@special_sales_bp.route("/distribution", methods=["GET"])
def distribution_by_person():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    match = {"status": ACTIVE,
             **build_date_filter("sale_date", request.args.get("start_date"), request.args.get("end_date"))}
    rows = []
    for r in special_col.aggregate([
        {"$match": match},
        {"$unwind": "$distribution"},
        {"$group": {
            "_id": "$distribution.name",
            "total": {"$sum": "$distribution.amount"},
            "sales": {"$sum": 1},
        }},
        {"$sort": {"total": -1}},
    ]):
        rows.append({"name": r["_id"], "total": money(r["total"]), "sales": int(r["sales"])})
    return jsonify({"success": True, "distribution": rows})


@special_sales_bp.route("/<special_id>", methods=["GET"])
def get_special_sale(special_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    sid = parse_oid(special_id)
    doc = special_col.find_one({"_id": sid}) if sid else None
    if not doc:
        return fail("Special sale not found", 404)
    return jsonify({"success": True, "special_sale": to_json(doc)})


@special_sales_bp.route("/<special_id>/cancel", methods=["PUT", "POST"])
def cancel_special_sale(special_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    sid = parse_oid(special_id)
    doc = special_col.find_one({"_id": sid}) if sid else None
    if not doc:
        return fail("Special sale not found", 404)
    if doc.get("status") == CANCELLED:
        return fail("Special sale is already cancelled", 400)

    special_col.update_one({"_id": sid}, {"$set": {"status": CANCELLED, "cancelled_at": datetime.utcnow(),
                                                    "cancelled_by": user["_id"], "updated_at": datetime.utcnow()}})
    reversals = profit_ledger.reverse_special_sale_profit(doc)
    audit.log(user, "special_sale_cancelled", "special_sales",
              f"Cancelled special sale of {doc['product'].get('name')}",
              entity_type="special_sale", entity_id=sid, entity_name=doc["product"].get("name"),
              old_values={"status": doc.get("status")}, new_values={"status": CANCELLED},
              metadata={"ledger_reversals": len(reversals)}, severity="warning")
    return jsonify({"success": True, "message": "Special sale cancelled"})
