# routes/profit_history.py — profit ledger reads, manual adjustments and backfill
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict

from flask import Blueprint, jsonify, request

import audit
import profit_ledger
from auth import ROLE_ADMIN, require_user
from db import db
from helpers import (
    build_date_filter, fail, local_midnight_utc, money, paging_args, pagination, parse_datetime,
    parse_oid, server_error, to_float_safe, to_json, to_local,
)

profit_history_bp = Blueprint("profit_history", __name__, url_prefix="/api/profit-history")

ledger_col = profit_ledger.ledger_col
users_col = db["users"]

GROUPINGS = ("day", "week", "month")


def _target_user(user, raw_id):
    """Resolve `me` / an id, allowing distributors only their own ledger."""
    uid = user["_id"] if raw_id == "me" else parse_oid(raw_id)
    if not uid:
        return None, fail("Invalid user id", 400)
    if user.get("role") != ROLE_ADMIN and uid != user["_id"]:
        return None, fail("You can only see your own profit history", 403)
    return uid, None


def _bucket(dt: datetime, group_by: str) -> str:
    local = to_local(dt)
    if group_by == "month":
        return local.strftime("%Y-%m")
    if group_by == "week":
        d = local.date()
        start = d - timedelta(days=(d.weekday() + 1) % 7)
        return start.isoformat()
    return local.strftime("%Y-%m-%d")


@profit_history_bp.route("/user/<user_id>", methods=["GET"])
def user_history(user_id):
    user, err = require_user()
    if err:
        return err
    uid, err = _target_user(user, user_id)
    if err:
        return err

    date_filter = build_date_filter("date", request.args.get("start_date"), request.args.get("end_date"))
    q: Dict[str, Any] = {"user_id": uid, **date_filter}
    etype = request.args.get("type")
    if etype:
        if etype not in profit_ledger.ENTRY_TYPES:
            return fail(f"type must be one of {', '.join(profit_ledger.ENTRY_TYPES)}", 400)
        q["type"] = etype

    page, limit, skip = paging_args(default_limit=50)
    try:
        total = ledger_col.count_documents(q)
        docs = list(ledger_col.find(q).sort([("date", -1), ("_id", -1)]).skip(skip).limit(limit))
        by_type = profit_ledger.totals_by_type(uid, date_filter)
        return jsonify({
            "success": True,
            "entries": to_json(docs),
            "totals": {
                "by_type": by_type,
                "total": money(sum(v["total"] for v in by_type.values())),
            },
            "current_balance": profit_ledger.current_balance(uid),
            "pagination": pagination(page, limit, total),
        })
    except Exception as e:
        return server_error("profit_history_error", e)


@profit_history_bp.route("/balance/<user_id>", methods=["GET"])
def balance(user_id):
    user, err = require_user()
    if err:
        return err
    uid, err = _target_user(user, user_id)
    if err:
        return err
    by_type = profit_ledger.totals_by_type(uid)
    last = ledger_col.find_one({"user_id": uid}, sort=[("date", -1), ("_id", -1)])
    return jsonify({
        "success": True,
        "user_id": str(uid),
        "balance": profit_ledger.current_balance(uid),
        "by_type": by_type,
        "entries": sum(v["count"] for v in by_type.values()),
        "last_entry_date": to_json(last["date"]) if last else None,
    })


@profit_history_bp.route("/summary", methods=["GET"])
def summary():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    group_by = request.args.get("group_by", "day")
    if group_by not in GROUPINGS:
        return fail("group_by must be day, week or month", 400)
    date_filter = build_date_filter("date", request.args.get("start_date"), request.args.get("end_date"))
    match: Dict[str, Any] = dict(date_filter)
    if request.args.get("user_id"):
        match["user_id"] = parse_oid(request.args.get("user_id"))

    try:
        timeline: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        for e in ledger_col.find(match, {"date": 1, "type": 1, "amount": 1}):
            b = timeline[_bucket(e["date"], group_by)]
            b[e["type"]] += to_float_safe(e.get("amount"))
            b["total"] += to_float_safe(e.get("amount"))
        series = [{"period": k, **{t: money(v) for t, v in vals.items()}} for k, vals in sorted(timeline.items())]

        top = []
        for r in ledger_col.aggregate([
            {"$match": match},
            {"$group": {"_id": "$user_id", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
            {"$sort": {"total": -1}},
            {"$limit": 10},
            {"$lookup": {"from": "users", "localField": "_id", "foreignField": "_id", "as": "user"}},
        ]):
            u = (r.get("user") or [{}])[0]
            top.append({"user_id": str(r["_id"]), "name": u.get("name"), "role": u.get("role"),
                        "total": money(r["total"]), "count": int(r["count"])})

        by_type = profit_ledger.totals_by_type(date_filter=match)
        return jsonify({
            "success": True,
            "group_by": group_by,
            "timeline": series,
            "by_type": by_type,
            "top_users": top,
            "total": money(sum(v["total"] for v in by_type.values())),
        })
    except Exception as e:
        return server_error("profit_summary_error", e)


@profit_history_bp.route("/adjustment", methods=["POST"])
def manual_adjustment():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    uid = parse_oid(payload.get("user_id"))
    target = users_col.find_one({"_id": uid}, {"name": 1}) if uid else None
    if not target:
        return fail("User not found", 404)
    try:
        amount = float(payload.get("amount"))
    except (TypeError, ValueError):
        return fail("amount is required and must be a number", 400)
    if money(amount) == 0:
        return fail("amount cannot be zero", 400)
    description = (payload.get("description") or "").strip()
    if not description:
        return fail("description is required", 400)
    when = None
    if payload.get("date"):
        when = parse_datetime(payload["date"])
        if when is None:
            return fail("Invalid date", 400)

    entry = profit_ledger.record_entry(
        uid, "adjustment", amount, description,
        metadata={"manual": True, "created_by": str(user["_id"])}, date=when,
    )
    audit.log(user, "profit_adjusted", "profit_history",
              f"Manual adjustment of {money(amount):,.2f} for {target.get('name')}",
              entity_type="user", entity_id=uid, entity_name=target.get("name"),
              new_values={"amount": money(amount), "balance_after": entry["balance_after"]}, severity="warning")
    return jsonify({"success": True, "entry": to_json(entry)}), 201


@profit_history_bp.route("/comparative", methods=["GET"])
def comparative():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    today = to_local(datetime.utcnow()).date()
    this_start_d = today.replace(day=1)
    prev_start_d = (this_start_d - timedelta(days=1)).replace(day=1)
    next_start_d = (this_start_d + timedelta(days=32)).replace(day=1)
    this_start, prev_start, next_start = (local_midnight_utc(d) for d in (this_start_d, prev_start_d, next_start_d))

    current = profit_ledger.totals_by_type(date_filter={"date": {"$gte": this_start, "$lt": next_start}})
    previous = profit_ledger.totals_by_type(date_filter={"date": {"$gte": prev_start, "$lt": this_start}})
    cur_total = money(sum(v["total"] for v in current.values()))
    prev_total = money(sum(v["total"] for v in previous.values()))

    by_type = {}
    for t in profit_ledger.ENTRY_TYPES:
        c = current.get(t, {}).get("total", 0.0)
        p = previous.get(t, {}).get("total", 0.0)
        by_type[t] = {"current": c, "previous": p, "difference": money(c - p),
                      "growth": money((c - p) / abs(p) * 100) if p else None}
    return jsonify({
        "success": True,
        "current_month": {"start": to_json(this_start), "total": cur_total},
        "previous_month": {"start": to_json(prev_start), "total": prev_total},
        "difference": money(cur_total - prev_total),
        "growth": money((cur_total - prev_total) / abs(prev_total) * 100) if prev_total else None,
        "by_type": by_type,
    })


@profit_history_bp.route("/backfill", methods=["POST"])
def backfill():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    try:
        result = profit_ledger.backfill_from_sales()
        audit.log(user, "profit_history_backfilled", "profit_history",
                  f"Backfilled {result['entries']} ledger entries from {result['sales']} sales",
                  metadata=result)
        return jsonify({"success": True, **result})
    except Exception as e:
        return server_error("profit_backfill_error", e)


@profit_history_bp.route("/recalculate-balance/<user_id>", methods=["POST"])
def recalculate_balance(user_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    uid = parse_oid(user_id)
    if not uid:
        return fail("Invalid user id", 400)
    return jsonify({"success": True, "balance": profit_ledger.recalculate_user_balance(uid)})
