# routes/audit_logs.py — read side of the audit trail
from __future__ import annotations

import re
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict

from flask import Blueprint, jsonify, request

import audit
from auth import ROLE_ADMIN, require_user
from helpers import (
    build_date_filter, fail, local_day_key, local_midnight_utc, paging_args, pagination,
    parse_datetime, parse_int, parse_oid, to_json, to_local,
)

audit_logs_bp = Blueprint("audit_logs", __name__, url_prefix="/api/audit")

audit_col = audit.audit_col


@audit_logs_bp.route("/logs", methods=["GET"])
def list_logs():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    q: Dict[str, Any] = build_date_filter("created_at", request.args.get("start_date"), request.args.get("end_date"))
    for field in ("action", "module", "severity", "entity_type", "entity_id"):
        val = (request.args.get(field) or "").strip()
        if val:
            q[field] = val
    if request.args.get("user_id"):
        q["user_id"] = parse_oid(request.args.get("user_id"))
    search = (request.args.get("search") or "").strip()
    if search:
        rx = {"$regex": re.escape(search), "$options": "i"}
        q["$or"] = [{"description": rx}, {"user_name": rx}, {"user_email": rx}, {"entity_name": rx}]

    page, limit, skip = paging_args(default_limit=50)
    total = audit_col.count_documents(q)
    docs = list(audit_col.find(q).sort([("created_at", -1), ("_id", -1)]).skip(skip).limit(limit))
    return jsonify({"success": True, "logs": to_json(docs), "pagination": pagination(page, limit, total)})


@audit_logs_bp.route("/logs/<log_id>", methods=["GET"])
def get_log(log_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    lid = parse_oid(log_id)
    doc = audit_col.find_one({"_id": lid}) if lid else None
    if not doc:
        return fail("Audit log not found", 404)
    return jsonify({"success": True, "log": to_json(doc)})


@audit_logs_bp.route("/daily-summary", methods=["GET"])
def daily_summary():
    """One local day of activity (today by default)."""
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    day = parse_datetime(request.args.get("date")) if request.args.get("date") else None
    d = to_local(day or datetime.utcnow()).date()
    start = local_midnight_utc(d)
    end = local_midnight_utc(d + timedelta(days=1))
    q = {"created_at": {"$gte": start, "$lt": end}}

    by_action: Dict[str, int] = defaultdict(int)
    by_module: Dict[str, int] = defaultdict(int)
    by_severity: Dict[str, int] = defaultdict(int)
    users: Dict[str, Dict[str, Any]] = {}
    total = 0
    for log in audit_col.find(q, {"action": 1, "module": 1, "severity": 1, "user_id": 1, "user_name": 1}):
        total += 1
        by_action[log.get("action")] += 1
        by_module[log.get("module")] += 1
        by_severity[log.get("severity")] += 1
        if log.get("user_id"):
            key = str(log["user_id"])
            users.setdefault(key, {"user_id": key, "name": log.get("user_name"), "actions": 0})
            users[key]["actions"] += 1

    return jsonify({
        "success": True,
        "date": d.isoformat(),
        "total": total,
        "by_action": dict(by_action),
        "by_module": dict(by_module),
        "by_severity": dict(by_severity),
        "users": sorted(users.values(), key=lambda u: -u["actions"]),
    })


@audit_logs_bp.route("/user/<user_id>", methods=["GET"])
def user_activity(user_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    uid = parse_oid(user_id)
    if not uid:
        return fail("Invalid user id", 400)
    q = {"user_id": uid,
         **build_date_filter("created_at", request.args.get("start_date"), request.args.get("end_date"))}
    page, limit, skip = paging_args(default_limit=50)
    total = audit_col.count_documents(q)
    docs = list(audit_col.find(q).sort("created_at", -1).skip(skip).limit(limit))
    actions = {r["_id"]: r["n"] for r in audit_col.aggregate([
        {"$match": q},
        {"$group": {"_id": "$action", "n": {"$sum": 1}}},
    ])}
    return jsonify({"success": True, "logs": to_json(docs), "by_action": actions,
                    "pagination": pagination(page, limit, total)})


@audit_logs_bp.route("/entity/<entity_type>/<entity_id>", methods=["GET"])
def entity_history(entity_type, entity_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    docs = list(audit_col.find({"entity_type": entity_type, "entity_id": entity_id}).sort("created_at", 1))
    return jsonify({"success": True, "history": to_json(docs)})


@audit_logs_bp.route("/stats", methods=["GET"])
def stats():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    days = parse_int(request.args.get("days"), 30, lo=1, hi=365)
    since = datetime.utcnow() - timedelta(days=days)
    q = {"created_at": {"$gte": since}}

    per_day: Dict[str, int] = defaultdict(int)
    for log in audit_col.find(q, {"created_at": 1}):
        per_day[local_day_key(log["created_at"])] += 1

    def _count_by(field, limit=None):
        pipeline = [
            {"$match": q},
            {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ]
        if limit:
            pipeline.append({"$limit": limit})
        return [{field: r["_id"], "count": r["count"]} for r in audit_col.aggregate(pipeline)]

    return jsonify({
        "success": True,
        "days": days,
        "total": audit_col.count_documents(q),
        "per_day": [{"date": k, "count": v} for k, v in sorted(per_day.items())],
        "by_action": _count_by("action", 20),
        "by_module": _count_by("module"),
        "by_severity": _count_by("severity"),
        "top_users": _count_by("user_email", 10),
    })


@audit_logs_bp.route("/cleanup", methods=["DELETE", "POST"])
def cleanup():
    """Delete logs older than N days; error and critical records are kept."""
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    days = parse_int(payload.get("days", request.args.get("days")), 90, lo=1)
    cutoff = datetime.utcnow() - timedelta(days=days)
    res = audit_col.delete_many({"created_at": {"$lt": cutoff}, "severity": {"$nin": list(audit.KEEP_ON_CLEANUP)}})
    audit.log(user, "audit_cleanup", "audit", f"Deleted {res.deleted_count} audit logs older than {days} days",
              metadata={"days": days, "deleted": res.deleted_count}, severity="warning")
    return jsonify({"success": True, "deleted": res.deleted_count, "days": days})
