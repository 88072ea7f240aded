# routes/analytics.py — read-only reporting over confirmed sales
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Tuple

from flask import Blueprint, jsonify, request

import business_assistant
import commission
import profit_ledger
from auth import ROLE_ADMIN, require_user
from db import db
from helpers import (
    build_date_filter, local_day_key, local_midnight_utc, money, parse_int, server_error,
    to_float_safe, to_local,
)
from routes.expenses import total_expenses

analytics_bp = Blueprint("analytics", __name__, url_prefix="/api/analytics")

sales_col = db["sales"]
products_col = db["products"]
dist_stock_col = db["distributor_stock"]
special_col = db["special_sales"]
defective_col = db["defective_products"]
users_col = db["users"]

CONFIRMED = {"payment_status": "confirmed"}

SALE_SUMS = {
    "sales": {"$sum": 1},
    "units": {"$sum": "$quantity"},
    "revenue": {"$sum": {"$multiply": ["$sale_price", "$quantity"]}},
    "cost": {"$sum": {"$multiply": ["$purchase_price", "$quantity"]}},
    "admin_profit": {"$sum": "$admin_profit"},
    "distributor_profit": {"$sum": "$distributor_profit"},
    "total_profit": {"$sum": "$total_profit"},
}


def _clean(r: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "sales": int(r.get("sales") or 0),
        "units": int(r.get("units") or 0),
        "revenue": money(r.get("revenue")),
        "cost": money(r.get("cost")),
        "admin_profit": money(r.get("admin_profit")),
        "distributor_profit": money(r.get("distributor_profit")),
        "total_profit": money(r.get("total_profit")),
    }


def sale_totals(match: Dict[str, Any]) -> Dict[str, Any]:
    rows = list(sales_col.aggregate([
        {"$match": {**CONFIRMED, **match}},
        {"$group": {"_id": None, **SALE_SUMS}},
    ]))
    return _clean(rows[0] if rows else {})


def _grouped(key: str, match: Dict[str, Any], limit: int | None = None) -> List[Dict[str, Any]]:
    pipeline = [
        {"$match": {**CONFIRMED, **match}},
        {"$group": {"_id": f"${key}", **SALE_SUMS}},
        {"$sort": {"total_profit": -1}},
    ]
    if limit:
        pipeline.append({"$limit": limit})
    return [{"_id": r["_id"], **_clean(r)} for r in sales_col.aggregate(pipeline)]


def _growth(cur: float, prev: float):
    if not prev:
        return None
    return money((cur - prev) / abs(prev) * 100)


def _month_bounds(offset: int = 0) -> Tuple[datetime, datetime]:
    """Local calendar month; offset=-1 is the previous one."""
    first = to_local(datetime.utcnow()).date().replace(day=1)
    for _ in range(-offset):
        first = (first - timedelta(days=1)).replace(day=1)
    nxt = (first + timedelta(days=32)).replace(day=1)
    return local_midnight_utc(first), local_midnight_utc(nxt)


def _window() -> Dict[str, Any]:
    return build_date_filter("sale_date", request.args.get("start_date"), request.args.get("end_date"))


def _names(col, ids) -> Dict[Any, str]:
    return {d["_id"]: d.get("name") for d in col.find({"_id": {"$in": [i for i in ids if i]}}, {"name": 1})}


@analytics_bp.before_request
def _admin_only():
    _, err = require_user(ROLE_ADMIN)
    return err


@analytics_bp.route("/monthly-profit", methods=["GET"])
def monthly_profit():
    cs, ce = _month_bounds(0)
    ps, pe = _month_bounds(-1)
    cur = sale_totals({"sale_date": {"$gte": cs, "$lt": ce}})
    prev = sale_totals({"sale_date": {"$gte": ps, "$lt": pe}})
    return jsonify({
        "success": True,
        "current_month": cur,
        "previous_month": prev,
        "growth": {
            "total_profit": _growth(cur["total_profit"], prev["total_profit"]),
            "admin_profit": _growth(cur["admin_profit"], prev["admin_profit"]),
            "revenue": _growth(cur["revenue"], prev["revenue"]),
        },
    })


@analytics_bp.route("/profit-by-product", methods=["GET"])
def profit_by_product():
    rows = _grouped("product_id", _window())
    names = _names(products_col, [r["_id"] for r in rows])
    out = []
    for r in rows:
        pid = r.pop("_id")
        out.append({"product_id": str(pid), "product_name": names.get(pid), **r})
    return jsonify({"success": True, "products": out})


@analytics_bp.route("/profit-by-distributor", methods=["GET"])
def profit_by_distributor():
    rows = _grouped("distributor_id", {**_window(), "distributor_id": {"$ne": None}})
    names = _names(users_col, [r["_id"] for r in rows])
    out = []
    for r in rows:
        did = r.pop("_id")
        out.append({"distributor_id": str(did), "distributor_name": names.get(did), **r})
    return jsonify({"success": True, "distributors": out})


@analytics_bp.route("/averages", methods=["GET"])
def averages():
    match = _window()
    totals = sale_totals(match)
    first = sales_col.find_one({**CONFIRMED, **match}, sort=[("sale_date", 1)])
    if not first:
        return jsonify({"success": True, "averages": None, "totals": totals})
    start = match.get("sale_date", {}).get("$gte", first["sale_date"])
    end = min(match.get("sale_date", {}).get("$lt", datetime.utcnow()), datetime.utcnow())
    days = max(1.0, (end - start).total_seconds() / 86400)
    profit = totals["total_profit"]
    return jsonify({
        "success": True,
        "days": round(days, 2),
        "totals": totals,
        "averages": {
            "profit_per_day": money(profit / days),
            "profit_per_week": money(profit / days * 7),
            "profit_per_month": money(profit / days * 30),
            "sales_per_day": round(totals["sales"] / days, 2),
            "profit_per_sale": money(profit / totals["sales"]) if totals["sales"] else 0.0,
        },
    })


@analytics_bp.route("/sales-timeline", methods=["GET"])
def sales_timeline():
    """Confirmed sales per local day, zero-filled."""
    match = _window()
    if not match:
        days = parse_int(request.args.get("days"), 30, lo=1, hi=366)
        today = to_local(datetime.utcnow()).date()
        match = {"sale_date": {"$gte": local_midnight_utc(today - timedelta(days=days - 1)),
                               "$lt": local_midnight_utc(today + timedelta(days=1))}}
    buckets: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for s in sales_col.find({**CONFIRMED, **match},
                            {"sale_date": 1, "quantity": 1, "sale_price": 1, "total_profit": 1, "admin_profit": 1}):
        b = buckets[local_day_key(s["sale_date"])]
        qty = int(s.get("quantity") or 0)
        b["sales"] += 1
        b["units"] += qty
        b["revenue"] += to_float_safe(s.get("sale_price")) * qty
        b["total_profit"] += to_float_safe(s.get("total_profit"))
        b["admin_profit"] += to_float_safe(s.get("admin_profit"))

    rng = match.get("sale_date", {})
    series = []
    if "$gte" in rng and "$lt" in rng:
        d = to_local(rng["$gte"]).date()
        last = to_local(rng["$lt"] - timedelta(microseconds=1)).date()
        while d <= last:
            key = d.isoformat()
            b = buckets.get(key, {})
            series.append({"date": key, "sales": int(b.get("sales", 0)), "units": int(b.get("units", 0)),
                           "revenue": money(b.get("revenue")), "total_profit": money(b.get("total_profit")),
                           "admin_profit": money(b.get("admin_profit"))})
            d += timedelta(days=1)
    else:
        for key in sorted(buckets):
            b = buckets[key]
            series.append({"date": key, "sales": int(b["sales"]), "units": int(b["units"]),
                           "revenue": money(b["revenue"]), "total_profit": money(b["total_profit"]),
                           "admin_profit": money(b["admin_profit"])})
    return jsonify({"success": True, "timeline": series})


@analytics_bp.route("/financial-summary", methods=["GET"])
def financial_summary():
    try:
        match = _window()
        totals = sale_totals(match)

        # the admin share is whatever the ledger books to the business owner
        owner = profit_ledger.admin_user()
        is_admin_line = ({"$eq": ["$distribution.user_id", owner["_id"]]} if owner
                         else {"$eq": ["$distribution.name", "Admin"]})
        special_rows = list(special_col.aggregate([
            {"$match": {"status": "active", **match}},
            {"$unwind": "$distribution"},
            {"$group": {
                "_id": None,
                "total": {"$sum": "$distribution.amount"},
                "admin": {"$sum": {"$cond": [is_admin_line, "$distribution.amount", 0]}},
            }},
        ]))
        special = special_rows[0] if special_rows else {}

        def_match = build_date_filter("report_date", request.args.get("start_date"), request.args.get("end_date"))
        def_rows = list(defective_col.aggregate([
            {"$match": {"status": "confirmed", **def_match}},
            {"$lookup": {"from": "products", "localField": "product_id", "foreignField": "_id", "as": "product"}},
            {"$unwind": "$product"},
            {"$group": {
                "_id": None,
                "units": {"$sum": "$quantity"},
                "loss": {"$sum": {"$multiply": ["$quantity", "$product.purchase_price"]}},
            }},
        ]))
        defective = def_rows[0] if def_rows else {}

        expenses = total_expenses(build_date_filter("expense_date", request.args.get("start_date"),
                                                    request.args.get("end_date")))
        special_admin = money(special.get("admin"))
        defective_loss = money(defective.get("loss"))
        net = money(totals["admin_profit"] + special_admin - defective_loss - expenses)
        return jsonify({
            "success": True,
            "sales": totals,
            "special_sales": {"distributed_profit": money(special.get("total")), "admin_share": special_admin},
            "defective": {"units": int(defective.get("units") or 0), "loss": defective_loss},
            "expenses": expenses,
            "net_profit": net,
            "profit_margin": money(totals["total_profit"] / totals["revenue"] * 100) if totals["revenue"] else 0.0,
        })
    except Exception as e:
        return server_error("financial_summary_error", e)


@analytics_bp.route("/kpis", methods=["GET"])
def kpis():
    now = datetime.utcnow()
    today = to_local(now).date()
    windows = {
        "today": (today, today + timedelta(days=1)),
        "this_week": commission.period_bounds("weekly", now),
        "this_month": _month_bounds(0),
    }
    out = {}
    for name, (s, e) in windows.items():
        if name == "today":
            s, e = local_midnight_utc(s), local_midnight_utc(e)
        t = sale_totals({"sale_date": {"$gte": s, "$lt": e}})
        t["average_ticket"] = money(t["revenue"] / t["sales"]) if t["sales"] else 0.0
        out[name] = t
    out["pending_payments"] = sales_col.count_documents({"payment_status": "pending"})
    return jsonify({"success": True, "kpis": out})


@analytics_bp.route("/distributor-rankings", methods=["GET"])
def distributor_rankings():
    rows = {r["_id"]: r for r in _grouped("distributor_id", {**_window(), "distributor_id": {"$ne": None}})}
    held = {r["_id"]: int(r["units"] or 0) for r in dist_stock_col.aggregate([
        {"$group": {"_id": "$distributor_id", "units": {"$sum": "$quantity"}}},
    ])}
    out = []
    for d in users_col.find({"role": "distributor"}, {"name": 1, "email": 1, "active": 1}):
        r = rows.get(d["_id"], _clean({}))
        stock = held.get(d["_id"], 0)
        sold = r["units"]
        out.append({
            "distributor_id": str(d["_id"]),
            "name": d.get("name"),
            "active": d.get("active", True),
            **{k: v for k, v in r.items() if k != "_id"},
            "current_stock": stock,
            "conversion_rate": round(sold / (sold + stock) * 100, 2) if (sold + stock) else 0.0,
            "average_ticket": money(r["revenue"] / r["sales"]) if r["sales"] else 0.0,
        })
    out.sort(key=lambda x: (-x["revenue"], x["name"] or ""))
    for i, r in enumerate(out, start=1):
        r["rank"] = i
    return jsonify({"success": True, "rankings": out})


@analytics_bp.route("/sales-by-category", methods=["GET"])
def sales_by_category():
    """Confirmed units and revenue per category; uncategorised products are left out."""
    by_product = {r["_id"]: r for r in _grouped("product_id", _window())}
    cat_of = {p["_id"]: p.get("category_id")
              for p in products_col.find({"_id": {"$in": list(by_product)}}, {"category_id": 1})}
    totals: Dict[Any, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for pid, r in by_product.items():
        cid = cat_of.get(pid)
        if not cid:
            continue
        t = totals[cid]
        t["sales"] += r["sales"]
        t["units"] += r["units"]
        t["revenue"] += r["revenue"]
        t["total_profit"] += r["total_profit"]
    names = _names(db["categories"], list(totals))
    out = [{"category_id": str(cid), "name": names.get(cid), "sales": int(t["sales"]), "units": int(t["units"]),
            "revenue": money(t["revenue"]), "total_profit": money(t["total_profit"])}
           for cid, t in totals.items() if cid in names]
    out.sort(key=lambda x: -x["revenue"])
    return jsonify({"success": True, "categories": out})


@analytics_bp.route("/product-rotation", methods=["GET"])
def product_rotation():
    """units sold / (units sold + units still in stock) over the last N days."""
    days = parse_int(request.args.get("days"), 30, lo=1, hi=366)
    since = datetime.utcnow() - timedelta(days=days)
    rows = _grouped("product_id", {"sale_date": {"$gte": since}})
    products = {p["_id"]: p for p in products_col.find({"_id": {"$in": [r["_id"] for r in rows]}},
                                                       {"name": 1, "total_stock": 1})}
    out = []
    for r in rows:
        p = products.get(r["_id"])
        if not p:
            continue
        sold = r["units"]
        stock = int(p.get("total_stock") or 0)
        out.append({
            "product_id": str(r["_id"]),
            "name": p.get("name"),
            "units_sold": sold,
            "sales": r["sales"],
            "current_stock": stock,
            "rotation_rate": round(sold / (sold + stock), 4) if (sold + stock) else 0.0,
        })
    out.sort(key=lambda x: -x["rotation_rate"])
    return jsonify({"success": True, "days": days, "products": out})


@analytics_bp.route("/sales-funnel", methods=["GET"])
def sales_funnel():
    stages = {"pending": {"count": 0, "value": 0.0}, "confirmed": {"count": 0, "value": 0.0}}
    for r in sales_col.aggregate([
        {"$match": _window()},
        {"$group": {
            "_id": "$payment_status",
            "count": {"$sum": 1},
            "value": {"$sum": {"$multiply": ["$sale_price", "$quantity"]}},
        }},
    ]):
        if r["_id"] in stages:
            stages[r["_id"]] = {"count": int(r["count"]), "value": money(r["value"])}
    total = stages["pending"]["count"] + stages["confirmed"]["count"]
    return jsonify({
        "success": True,
        "funnel": {
            **stages,
            "conversion_rate": round(stages["confirmed"]["count"] / total * 100, 2) if total else 0.0,
        },
    })


@analytics_bp.route("/recommendations", methods=["GET"])
def recommendations():
    """Per-product restock / pricing advice from recent confirmed sales."""
    try:
        recent_days = parse_int(request.args.get("recent_days"), 30, lo=1, hi=365)
        horizon_days = parse_int(request.args.get("horizon_days"), 90, lo=1, hi=730)
        now = datetime.utcnow()
        recent_start = now - timedelta(days=recent_days)
        prev_start = now - timedelta(days=recent_days * 2)

        window = _window()
        explicit = bool(window)
        if not explicit:
            window = {"sale_date": {"$gte": now - timedelta(days=horizon_days), "$lte": now}}

        stats: Dict[Any, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        for s in sales_col.find({**CONFIRMED, **window},
                                {"product_id": 1, "sale_date": 1, "quantity": 1, "sale_price": 1, "total_profit": 1}):
            qty = int(s.get("quantity") or 0)
            st = stats[s["product_id"]]
            if s["sale_date"] >= recent_start:
                st["recent_units"] += qty
                st["recent_revenue"] += to_float_safe(s.get("sale_price")) * qty
                st["recent_profit"] += to_float_safe(s.get("total_profit"))
            elif s["sale_date"] >= prev_start:
                st["prev_units"] += qty

        rows = []
        for p in products_col.find({}, {"name": 1, "category_id": 1, "warehouse_stock": 1,
                                        "total_stock": 1, "low_stock_alert": 1}):
            rows.append({
                "product_id": p["_id"],
                "name": p.get("name"),
                "category_id": p.get("category_id"),
                "warehouse_stock": int(p.get("warehouse_stock") or 0),
                "total_stock": int(p.get("total_stock") or 0),
                "low_stock_alert": int(p.get("low_stock_alert") or 0),
                **stats.get(p["_id"], {}),
            })

        averages = business_assistant.category_average_prices(rows)
        out = []
        for r in rows:
            advice = business_assistant.recommend(r, averages.get(business_assistant.category_key(r), 0.0),
                                                  recent_days)
            out.append({
                "product_id": str(r["product_id"]),
                "name": r["name"],
                "category_id": str(r["category_id"]) if r.get("category_id") else None,
                "stock": {"warehouse_stock": r["warehouse_stock"], "total_stock": r["total_stock"],
                          "low_stock_alert": r["low_stock_alert"]},
                **advice,
            })
        out.sort(key=lambda x: -(x["primary"] or {}).get("confidence", 0))
        return jsonify({
            "success": True,
            "generated_at": now.isoformat(timespec="seconds"),
            "window": {"recent_days": recent_days, "horizon_days": None if explicit else horizon_days,
                       "start_date": request.args.get("start_date"), "end_date": request.args.get("end_date")},
            "recommendations": out,
        })
    except Exception as e:
        return server_error("recommendations_error", e)


@analytics_bp.route("/low-stock", methods=["GET"])
def low_stock():
    items = []
    for p in products_col.find({}, {"name": 1, "warehouse_stock": 1, "total_stock": 1, "low_stock_alert": 1}):
        stock = int(p.get("warehouse_stock") or 0)
        alert = int(p.get("low_stock_alert") or 0)
        if stock <= alert:
            items.append({"product_id": str(p["_id"]), "name": p.get("name"), "warehouse_stock": stock,
                          "total_stock": int(p.get("total_stock") or 0), "low_stock_alert": alert,
                          "out_of_stock": stock == 0})
    items.sort(key=lambda x: x["warehouse_stock"])
    return jsonify({"success": True, "products": items, "count": len(items)})


@analytics_bp.route("/dashboard", methods=["GET"])
def dashboard():
    try:
        s, e = _month_bounds(0)
        match = {"sale_date": {"$gte": s, "$lt": e}}
        products = _grouped("product_id", match, limit=5)
        dists = _grouped("distributor_id", {**match, "distributor_id": {"$ne": None}}, limit=5)
        pnames = _names(products_col, [r["_id"] for r in products])
        dnames = _names(users_col, [r["_id"] for r in dists])
        low = sum(1 for p in products_col.find({}, {"warehouse_stock": 1, "low_stock_alert": 1})
                  if int(p.get("warehouse_stock") or 0) <= int(p.get("low_stock_alert") or 0))
        return jsonify({
            "success": True,
            "month": sale_totals(match),
            "top_products": [{"product_id": str(r["_id"]), "name": pnames.get(r["_id"]),
                              **{k: v for k, v in r.items() if k != "_id"}} for r in products],
            "top_distributors": [{"distributor_id": str(r["_id"]), "name": dnames.get(r["_id"]),
                                  **{k: v for k, v in r.items() if k != "_id"}} for r in dists],
            "pending_payments": sales_col.count_documents({"payment_status": "pending"}),
            "active_distributors": users_col.count_documents({"role": "distributor", "active": True}),
            "low_stock_products": low,
        })
    except Exception as e:
        return server_error("dashboard_error", e)
