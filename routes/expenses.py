# routes/expenses.py — operating expenses (feed the net profit figure)
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from flask import Blueprint, jsonify, request

import audit
from auth import ROLE_ADMIN, require_user
from db import db
from helpers import (
    build_date_filter, fail, money, paging_args, pagination, parse_datetime, parse_oid, to_json,
)

expenses_bp = Blueprint("expenses", __name__, url_prefix="/api/expenses")

expenses_col = db["expenses"]


def _fields(payload: Dict[str, Any], creating: bool):
    out: Dict[str, Any] = {}
    if creating or "type" in payload:
        etype = (payload.get("type") or "").strip()
        if not etype:
            return None, "type is required"
        out["type"] = etype
    if creating or "amount" in payload:
        try:
            amount = float(payload.get("amount"))
        except (TypeError, ValueError):
            return None, "amount is required and must be a number"
        if amount < 0:
            return None, "amount must be >= 0"
        out["amount"] = money(amount)
    if "description" in payload:
        out["description"] = (payload.get("description") or "").strip()
    if payload.get("expense_date"):
        d = parse_datetime(payload["expense_date"])
        if d is None:
            return None, "Invalid expense_date"
        out["expense_date"] = d
    elif creating:
        out["expense_date"] = datetime.utcnow()
    return out, None


def total_expenses(date_filter: Dict[str, Any]) -> float:
    rows = list(expenses_col.aggregate([
        {"$match": date_filter},
        {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
    ]))
    return money(rows[0]["total"]) if rows else 0.0


@expenses_bp.route("", methods=["GET"])
def list_expenses():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    q = build_date_filter("expense_date", request.args.get("start_date"), request.args.get("end_date"))
    if request.args.get("type"):
        q["type"] = request.args.get("type")
    page, limit, skip = paging_args(default_limit=50)
    total = expenses_col.count_documents(q)
    docs = list(expenses_col.find(q).sort("expense_date", -1).skip(skip).limit(limit))
    by_type = [{"type": r["_id"], "total": money(r["total"]), "count": r["count"]}
               for r in expenses_col.aggregate([
                   {"$match": q},
                   {"$group": {"_id": "$type", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
                   {"$sort": {"total": -1}},
               ])]
    return jsonify({
        "success": True,
        "expenses": to_json(docs),
        "total_amount": total_expenses(q),
        "by_type": by_type,
        "pagination": pagination(page, limit, total),
    })


@expenses_bp.route("", methods=["POST"])
def create_expense():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    fields, problem = _fields(request.get_json(silent=True) or {}, creating=True)
    if problem:
        return fail(problem, 400)
    now = datetime.utcnow()
    doc = {"description": "", **fields, "created_by": user["_id"], "created_at": now, "updated_at": now}
    doc["_id"] = expenses_col.insert_one(doc).inserted_id
    audit.log(user, "expense_created", "expenses", f"Recorded expense {doc['type']} of {doc['amount']:,.2f}",
              entity_type="expense", entity_id=doc["_id"], new_values={"type": doc["type"], "amount": doc["amount"]})
    return jsonify({"success": True, "expense": to_json(doc)}), 201


@expenses_bp.route("/<expense_id>", methods=["PUT"])
def update_expense(expense_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    eid = parse_oid(expense_id)
    old = expenses_col.find_one({"_id": eid}) if eid else None
    if not old:
        return fail("Expense not found", 404)
    fields, problem = _fields(request.get_json(silent=True) or {}, creating=False)
    if problem:
        return fail(problem, 400)
    if not fields:
        return fail("Nothing to update", 400)
    expenses_col.update_one({"_id": eid}, {"$set": {**fields, "updated_at": datetime.utcnow()}})
    audit.log(user, "expense_updated", "expenses", f"Updated expense {old.get('type')}",
              entity_type="expense", entity_id=eid,
              old_values={k: old.get(k) for k in fields}, new_values=fields)
    return jsonify({"success": True, "expense": to_json(expenses_col.find_one({"_id": eid}))})


@expenses_bp.route("/<expense_id>", methods=["DELETE"])
def delete_expense(expense_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    eid = parse_oid(expense_id)
    old = expenses_col.find_one({"_id": eid}) if eid else None
    if not old:
        return fail("Expense not found", 404)
    expenses_col.delete_one({"_id": eid})
    audit.log(user, "expense_deleted", "expenses", f"Deleted expense {old.get('type')}",
              entity_type="expense", entity_id=eid,
              old_values={"type": old.get("type"), "amount": old.get("amount")}, severity="warning")
    return jsonify({"success": True, "message": "Expense deleted"})
