# routes/gamification.py — ranking, period evaluation, winners and commission recalculation
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from flask import Blueprint, jsonify, request
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import audit
import commission
import profit_ledger
from auth import ROLE_ADMIN, ROLE_DISTRIBUTOR, require_user
from db import db
from helpers import (
    BusinessRuleError, build_date_filter, fail, jlog, money, paging_args, pagination,
    parse_oid, rule_error_response, server_error, to_float_safe, to_json,
)

gamification_bp = Blueprint("gamification", __name__, url_prefix="/api/gamification")

users_col = db["users"]
sales_col = db["sales"]
stats_col = db["distributor_stats"]
winners_col = db["period_winners"]
config_col = commission.config_col

STATS_COUNTERS = ("total_points", "total_sales", "total_units", "total_revenue", "total_profit")
STATS_DEFAULTS = {
    "total_bonus_earned": 0.0,
    "pending_bonus": 0.0,
    "paid_bonus": 0.0,
    "period_wins": 0,
    "top_three_finishes": 0,
    "achievements": [],
}


# ---------------------------
# Distributor stats
# ---------------------------

def _stats_on_insert(skip=()) -> Dict[str, Any]:
    """Fresh stats fields, minus those the same update already touches."""
    out = {k: (list(v) if isinstance(v, list) else v) for k, v in STATS_DEFAULTS.items()}
    out.update({k: 0 for k in STATS_COUNTERS})
    out["current_level"] = "beginner"
    out["created_at"] = datetime.utcnow()
    return {k: v for k, v in out.items() if k not in skip}


def apply_sale_to_stats(sale: Dict[str, Any], config: Dict[str, Any] | None = None, sign: int = 1):
    """Add (sign=1) or remove (sign=-1) a confirmed distributor sale from the distributor's stats."""
    did = sale.get("distributor_id")
    if not did:
        return None
    config = config or commission.get_config()
    qty = int(sale.get("quantity") or 0)
    revenue = to_float_safe(sale.get("sale_price")) * qty
    points = to_float_safe(config.get("points_per_sale")) + revenue * to_float_safe(config.get("points_per_peso"))

    inc = {
        "total_points": money(sign * points),
        "total_sales": sign,
        "total_units": sign * qty,
        "total_revenue": money(sign * revenue),
        "total_profit": money(sign * to_float_safe(sale.get("distributor_profit"))),
    }
    stats = stats_col.find_one_and_update(
        {"distributor_id": did},
        {
            "$inc": inc,
            "$set": {"updated_at": datetime.utcnow()},
            "$setOnInsert": _stats_on_insert(skip=tuple(inc)),
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )

    old_level = stats.get("current_level") or "beginner"
    new_level = commission.level_for(to_float_safe(stats.get("total_revenue")), config.get("sales_targets")) or "beginner"
    if new_level != old_level:
        mods: Dict[str, Any] = {"$set": {"current_level": new_level}}
        target = next((t for t in config.get("sales_targets") or [] if t.get("level") == new_level), None)
        if sign > 0 and target:
            mods["$push"] = {"achievements": {
                "type": "sales_target",
                "name": f"Level {new_level}",
                "description": f"Reached {target.get('min_amount'):,.0f} in total sales",
                "badge": target.get("badge", ""),
                "earned_at": datetime.utcnow(),
                "value": target.get("bonus", 0),
            }}
        stats_col.update_one({"_id": stats["_id"]}, mods)
        stats["current_level"] = new_level
    return stats


# ---------------------------
# Period evaluation
# ---------------------------

def _names(ids: List[Any]) -> Dict[Any, Dict[str, Any]]:
    return {u["_id"]: u for u in users_col.find({"_id": {"$in": ids}}, {"name": 1, "email": 1})}


def evaluate_period(start: datetime, end: datetime, actor=None, notes: str = "") -> Dict[str, Any]:
    if end <= start:
        raise BusinessRuleError("end_date must be after start_date")
    if winners_col.find_one({"start_date": start, "end_date": end}, {"_id": 1}):
        raise BusinessRuleError("This period has already been evaluated", 409)

    config = commission.get_config()
    ranking = commission.ranking_for_period(start, end, to_float_safe(config.get("min_admin_profit_for_ranking")))
    top = ranking[:3]
    if not top:
        raise BusinessRuleError("No qualifying sales in this period")

    users = _names([r["distributor_id"] for r in top])
    performers = []
    for r in top:
        u = users.get(r["distributor_id"], {})
        performers.append({
            "distributor_id": r["distributor_id"],
            "name": u.get("name"),
            "position": r["position"],
            "total_revenue": r["revenue"],
            "admin_profit": r["admin_profit"],
            "sales_count": r["sales_count"],
            "bonus": commission.cash_bonus_for_position(config, r["position"]),
            "commission_bonus": commission.bonus_for_position(config, r["position"]),
        })
    winner = performers[0]
    winner_user = users.get(winner["distributor_id"], {})

    now = datetime.utcnow()
    doc = {
        "period_type": config.get("evaluation_period"),
        "start_date": start,
        "end_date": end,
        "winner_id": winner["distributor_id"],
        "winner_name": winner_user.get("name"),
        "winner_email": winner_user.get("email"),
        "total_revenue": winner["total_revenue"],
        "admin_profit": winner["admin_profit"],
        "sales_count": winner["sales_count"],
        "bonus_amount": winner["bonus"],
        "bonus_paid": False,
        "bonus_paid_at": None,
        "top_performers": performers,
        "notes": (notes or "").strip(),
        "evaluated_by": actor.get("_id") if actor else None,
        "created_at": now,
    }
    try:
        doc["_id"] = winners_col.insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise BusinessRuleError("This period has already been evaluated", 409)

    for p in performers:
        inc: Dict[str, Any] = {
            "total_bonus_earned": p["bonus"],
            "pending_bonus": p["bonus"],
            "top_three_finishes": 1,
        }
        mods: Dict[str, Any] = {"$set": {"updated_at": now}}
        if p["position"] == 1:
            inc["period_wins"] = 1
            mods["$push"] = {"achievements": {
                "type": "top_performer",
                "name": "Period winner",
                "description": f"First place from {start.date().isoformat()} to {end.date().isoformat()}",
                "badge": "🏆",
                "earned_at": now,
                "value": p["bonus"],
            }}
        mods["$inc"] = inc
        mods["$setOnInsert"] = _stats_on_insert(skip=tuple(inc) + tuple(mods.get("$push", {})))
        stats_col.update_one({"distributor_id": p["distributor_id"]}, mods, upsert=True)

    config_col.update_one({"_id": config["_id"]}, {"$set": {"last_evaluation_date": now}})
    audit.log(actor, "period_evaluated", "gamification",
              f"Evaluated period {start.isoformat()} - {end.isoformat()}: winner {winner_user.get('name')}",
              entity_type="period_winner", entity_id=doc["_id"], entity_name=winner_user.get("name"),
              metadata={"start_date": start, "end_date": end, "positions": len(performers)})
    jlog("period_evaluated", winner_id=str(winner["distributor_id"]), start=start, end=end)
    return doc


def check_period(actor=None) -> Dict[str, Any]:
    """Evaluate the period that ended most recently when nobody has yet."""
    config = commission.get_config()
    start, end = commission.previous_period_bounds(config)
    if winners_col.find_one({"start_date": start, "end_date": end}, {"_id": 1}):
        return {"evaluated": False, "reason": "already_evaluated", "start_date": start, "end_date": end}
    try:
        doc = evaluate_period(start, end, actor, notes="automatic evaluation")
    except BusinessRuleError as e:
        return {"evaluated": False, "reason": e.message, "start_date": start, "end_date": end}
    return {"evaluated": True, "winner": doc, "start_date": start, "end_date": end}


# ---------------------------
# Commission recalculation
# ---------------------------

def recalculate_commissions(start: datetime | None, end: datetime | None, dry_run: bool = True, actor=None) -> Dict[str, Any]:
    """
    Re-derive every distributor sale's commission from the ranking of the sale's own period.
    Confirmed sales that change get ledger adjustments for the difference.
    """
    config = commission.get_config()
    min_profit = to_float_safe(config.get("min_admin_profit_for_ranking"))
    q: Dict[str, Any] = {"distributor_id": {"$ne": None}}
    if start or end:
        q["sale_date"] = {}
        if start:
            q["sale_date"]["$gte"] = start
        if end:
            q["sale_date"]["$lt"] = end

    rankings: Dict[Tuple[datetime, datetime], List[Dict[str, Any]]] = {}
    checked = 0
    changes = []
    for sale in sales_col.find(q).sort([("sale_date", 1), ("_id", 1)]):
        checked += 1
        bounds = commission.config_period_bounds(config, sale["sale_date"])
        if bounds not in rankings:
            rankings[bounds] = commission.ranking_for_period(bounds[0], bounds[1], min_profit)
        position = commission.position_in(rankings[bounds], sale["distributor_id"])
        bonus = commission.bonus_for_position(config, position) if config.get("active", True) else 0.0
        pct = commission.BASE_COMMISSION_PERCENT + bonus
        split = commission.compute_split(sale.get("sale_price"), sale.get("purchase_price"),
                                         int(sale.get("quantity") or 0), pct, True)

        if (to_float_safe(sale.get("distributor_profit_percentage")) == pct
                and money(sale.get("distributor_profit")) == split["distributor_profit"]
                and money(sale.get("admin_profit")) == split["admin_profit"]):
            continue

        change = {
            "sale_id": sale.get("sale_id"),
            "_id": sale["_id"],
            "distributor_id": sale["distributor_id"],
            "position": position,
            "old_percentage": sale.get("distributor_profit_percentage"),
            "new_percentage": pct,
            "old_distributor_profit": money(sale.get("distributor_profit")),
            "new_distributor_profit": split["distributor_profit"],
            "old_admin_profit": money(sale.get("admin_profit")),
            "new_admin_profit": split["admin_profit"],
        }
        changes.append(change)
        if dry_run:
            continue

        sales_col.update_one({"_id": sale["_id"]}, {"$set": {
            **split,
            "distributor_profit_percentage": pct,
            "commission_bonus": bonus,
            "updated_at": datetime.utcnow(),
        }})
        if sale.get("payment_status") == "confirmed":
            code = sale.get("sale_id") or str(sale["_id"])
            meta = {"reason": "commission_recalculated", "old_percentage": change["old_percentage"],
                    "new_percentage": pct}
            diff_dist = money(split["distributor_profit"] - change["old_distributor_profit"])
            if diff_dist:
                profit_ledger.record_entry(sale["distributor_id"], "adjustment", diff_dist,
                                           f"Commission recalculation for sale {code}",
                                           sale_id=sale["_id"], product_id=sale.get("product_id"), metadata=meta)
            admin = profit_ledger.admin_user()
            diff_admin = money(split["admin_profit"] - change["old_admin_profit"])
            if admin and diff_admin:
                profit_ledger.record_entry(admin["_id"], "adjustment", diff_admin,
                                           f"Commission recalculation for sale {code}",
                                           sale_id=sale["_id"], product_id=sale.get("product_id"), metadata=meta)

    if not dry_run and changes:
        audit.log(actor, "commissions_recalculated", "gamification",
                  f"Recalculated commission on {len(changes)} sale(s)",
                  metadata={"start_date": start, "end_date": end, "changed": len(changes)}, severity="warning")
    jlog("commissions_recalculated", checked=checked, changed=len(changes), dry_run=dry_run)
    return {"dry_run": dry_run, "checked": checked, "changed": len(changes), "changes": changes}


# ---------------------------
# Routes
# ---------------------------

def _window_from_args(src) -> Optional[Tuple[datetime, datetime]]:
    f = build_date_filter("w", src.get("start_date"), src.get("end_date")).get("w")
    if not f or "$gte" not in f or "$lt" not in f:
        return None
    return f["$gte"], f["$lt"]


@gamification_bp.route("/config", methods=["GET"])
def get_config():
    user, err = require_user()
    if err:
        return err
    return jsonify({"success": True, "config": to_json(commission.get_config()),
                    "base_commission": commission.BASE_COMMISSION_PERCENT})


@gamification_bp.route("/config", methods=["PUT"])
def update_config():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    current = commission.get_config()
    try:
        updates = commission.validate_config_update(payload, current)
    except BusinessRuleError as e:
        return rule_error_response(e)
    if not updates:
        return fail("Nothing to update", 400)

    updates["updated_at"] = datetime.utcnow()
    config_col.update_one({"_id": current["_id"]}, {"$set": updates})
    audit.log(user, "gamification_config_updated", "gamification", "Updated gamification settings",
              entity_type="gamification_config", entity_id=current["_id"],
              old_values={k: current.get(k) for k in updates if k != "updated_at"},
              new_values={k: v for k, v in updates.items() if k != "updated_at"},
              severity="warning")
    return jsonify({"success": True, "config": to_json(commission.get_config())})


@gamification_bp.route("/ranking", methods=["GET"])
def ranking():
    user, err = require_user()
    if err:
        return err
    try:
        config = commission.get_config()
        window = _window_from_args(request.args)
        start, end = window or commission.config_period_bounds(config)
        min_profit = to_float_safe(config.get("min_admin_profit_for_ranking"))

        rows = commission.revenue_rows(start, end)
        ranked = commission.rank_rows(rows, min_profit)
        ranked_ids = {r["distributor_id"] for r in ranked}
        others = sorted((r for r in rows if r["distributor_id"] not in ranked_ids),
                        key=lambda r: -r["admin_profit"])

        ids = [r["distributor_id"] for r in rows]
        users = _names(ids)
        stats = {s["distributor_id"]: s for s in stats_col.find({"distributor_id": {"$in": ids}})}

        def _row(r, position=None):
            s = stats.get(r["distributor_id"], {})
            bonus = commission.bonus_for_position(config, position) if config.get("active", True) else 0.0
            return {
                **to_json(r),
                "name": users.get(r["distributor_id"], {}).get("name"),
                "position": position,
                "commission_bonus": bonus,
                "commission_percentage": commission.BASE_COMMISSION_PERCENT + bonus,
                "points": money(s.get("total_points")),
                "level": s.get("current_level", "beginner"),
                "period_wins": int(s.get("period_wins") or 0),
                "missing_admin_profit": money(max(0.0, min_profit - r["admin_profit"])),
            }

        return jsonify({
            "success": True,
            "period": {
                "type": config.get("evaluation_period") if not window else "custom",
                "start_date": to_json(start),
                "end_date": to_json(end),
            },
            "min_admin_profit_for_ranking": min_profit,
            "ranking": [_row(r, r["position"]) for r in ranked],
            "not_qualified": [_row(r) for r in others],
        })
    except Exception as e:
        return server_error("ranking_error", e)


@gamification_bp.route("/commission/<distributor_id>", methods=["GET"])
def distributor_commission(distributor_id):
    user, err = require_user()
    if err:
        return err
    did = user["_id"] if distributor_id == "me" else parse_oid(distributor_id)
    if not did:
        return fail("Invalid distributor id", 400)
    if user.get("role") != ROLE_ADMIN and did != user["_id"]:
        return fail("You can only see your own commission", 403)
    if not users_col.find_one({"_id": did, "role": ROLE_DISTRIBUTOR}, {"_id": 1}):
        return fail("Distributor not found", 404)
    pct, bonus, position = commission.commission_for(did)
    return jsonify({
        "success": True,
        "distributor_id": str(did),
        "base_percentage": commission.BASE_COMMISSION_PERCENT,
        "bonus": bonus,
        "percentage": pct,
        "position": position,
    })


@gamification_bp.route("/evaluate", methods=["POST"])
def evaluate():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    window = _window_from_args(payload)
    if not window:
        return fail("start_date and end_date are required", 400)
    try:
        doc = evaluate_period(window[0], window[1], user, payload.get("notes") or "")
        return jsonify({"success": True, "message": "Period evaluated", "winner": to_json(doc)}), 201
    except BusinessRuleError as e:
        return rule_error_response(e)
    except Exception as e:
        return server_error("evaluate_period_error", e)


@gamification_bp.route("/check-period", methods=["POST"])
def check_period_route():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    try:
        return jsonify({"success": True, **to_json(check_period(user))})
    except Exception as e:
        return server_error("check_period_error", e)


@gamification_bp.route("/winners", methods=["GET"])
def winners():
    user, err = require_user()
    if err:
        return err
    q: Dict[str, Any] = {}
    if user.get("role") == ROLE_DISTRIBUTOR:
        q["top_performers.distributor_id"] = user["_id"]
    page, limit, skip = paging_args(default_limit=20, max_limit=100)
    total = winners_col.count_documents(q)
    docs = list(winners_col.find(q).sort("end_date", -1).skip(skip).limit(limit))
    return jsonify({"success": True, "winners": to_json(docs), "pagination": pagination(page, limit, total)})


@gamification_bp.route("/winners/<winner_id>/pay", methods=["PUT", "POST"])
def pay_bonus(winner_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    wid = parse_oid(winner_id)
    if not wid:
        return fail("Invalid winner id", 400)
    now = datetime.utcnow()
    doc = winners_col.find_one_and_update(
        {"_id": wid, "bonus_paid": False},
        {"$set": {"bonus_paid": True, "bonus_paid_at": now, "bonus_paid_by": user["_id"]}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        if winners_col.find_one({"_id": wid}, {"_id": 1}):
            return fail("Bonus already paid", 400)
        return fail("Winner record not found", 404)

    amount = money(doc.get("bonus_amount"))
    stats_col.update_one(
        {"distributor_id": doc["winner_id"]},
        {"$inc": {"pending_bonus": -amount, "paid_bonus": amount}, "$set": {"last_bonus_date": now}},
    )
    if amount > 0:
        profit_ledger.record_entry(
            doc["winner_id"], "bonus", amount,
            f"Period bonus {doc['start_date'].date().isoformat()} - {doc['end_date'].date().isoformat()}",
            metadata={"period_winner_id": doc["_id"], "position": 1},
            date=now,
        )
    audit.log(user, "bonus_paid", "gamification", f"Paid period bonus of {amount:,.2f} to {doc.get('winner_name')}",
              entity_type="period_winner", entity_id=doc["_id"], entity_name=doc.get("winner_name"),
              new_values={"bonus_paid": True, "amount": amount})
    return jsonify({"success": True, "message": "Bonus marked as paid", "winner": to_json(doc)})


@gamification_bp.route("/stats/<distributor_id>", methods=["GET"])
def distributor_stats(distributor_id):
    user, err = require_user()
    if err:
        return err
    did = user["_id"] if distributor_id == "me" else parse_oid(distributor_id)
    if not did:
        return fail("Invalid distributor id", 400)
    if user.get("role") != ROLE_ADMIN and did != user["_id"]:
        return fail("You can only see your own stats", 403)
    stats = stats_col.find_one({"distributor_id": did})
    if not stats:
        stats = {"distributor_id": did, **_stats_on_insert()}
    config = commission.get_config()
    targets = sorted(config.get("sales_targets") or [], key=lambda t: to_float_safe(t.get("min_amount")))
    revenue = to_float_safe(stats.get("total_revenue"))
    next_target = next((t for t in targets if to_float_safe(t.get("min_amount")) > revenue), None)
    pct, bonus, position = commission.commission_for(did, config=config)
    return jsonify({
        "success": True,
        "stats": to_json(stats),
        "next_level": to_json(next_target),
        "missing_for_next_level": money(to_float_safe(next_target.get("min_amount")) - revenue) if next_target else 0.0,
        "current_position": position,
        "commission_percentage": pct,
    })


@gamification_bp.route("/achievements", methods=["GET"])
def achievements():
    user, err = require_user()
    if err:
        return err
    config = commission.get_config()
    catalog = [
        {"type": "sales_target", "levels": config.get("sales_targets") or []},
        {"type": "top_performer", "description": "Finish first in an evaluation period", "badge": "🏆"},
    ]
    mine = []
    if user.get("role") == ROLE_DISTRIBUTOR:
        stats = stats_col.find_one({"distributor_id": user["_id"]}) or {}
        mine = stats.get("achievements") or []
    return jsonify({"success": True, "achievements": to_json(catalog), "earned": to_json(mine)})


@gamification_bp.route("/recalculate", methods=["POST"])
def recalculate():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    f = build_date_filter("w", payload.get("start_date"), payload.get("end_date")).get("w") or {}
    dry_run = payload.get("dry_run", True) not in (False, "false", "0", 0)
    try:
        result = recalculate_commissions(f.get("$gte"), f.get("$lt"), dry_run=dry_run, actor=user)
        return jsonify({"success": True, **to_json(result)})
    except Exception as e:
        return server_error("recalculate_error", e)
