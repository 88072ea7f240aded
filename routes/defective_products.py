# routes/defective_products.py — defective unit reports and their review
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from flask import Blueprint, jsonify, request
from pymongo import ReturnDocument

import audit
from auth import ROLE_ADMIN, ROLE_DISTRIBUTOR, require_user
from db import db
from helpers import (
    build_date_filter, fail, paging_args, pagination, parse_oid, parse_positive_qty,
    server_error, to_json,
)
from routes.stock import give_to_distributor, take_from_distributor, take_from_warehouse

defective_bp = Blueprint("defective_products", __name__, url_prefix="/api/defective-products")

defective_col = db["defective_products"]
products_col = db["products"]
dist_stock_col = db["distributor_stock"]

PENDING = "pending"
CONFIRMED = "confirmed"
REJECTED = "rejected"


def _report_input(payload):
    pid = parse_oid(payload.get("product_id"))
    qty = parse_positive_qty(payload.get("quantity"))
    reason = (payload.get("reason") or "").strip()
    if not pid:
        return None, fail("product_id is required", 400)
    if qty is None:
        return None, fail("quantity must be a whole number greater than 0", 400)
    if not reason:
        return None, fail("reason is required", 400)
    product = products_col.find_one({"_id": pid}, {"name": 1})
    if not product:
        return None, fail("Product not found", 404)
    return (product, qty, reason), None


@defective_bp.route("", methods=["POST"])
def report_defective():
    """Distributor report: units leave the distributor's stock and wait for review."""
    user, err = require_user(ROLE_DISTRIBUTOR)
    if err:
        return err
    parsed, err = _report_input(request.get_json(silent=True) or {})
    if err:
        return err
    product, qty, reason = parsed

    rec = take_from_distributor(user["_id"], product["_id"], qty)
    if not rec:
        held = dist_stock_col.find_one({"distributor_id": user["_id"], "product_id": product["_id"]}) or {}
        return fail(f"Insufficient stock. Available: {int(held.get('quantity') or 0)}", 400)
    products_col.update_one({"_id": product["_id"]}, {"$inc": {"total_stock": -qty}})

    now = datetime.utcnow()
    doc = {
        "distributor_id": user["_id"],
        "product_id": product["_id"],
        "quantity": qty,
        "reason": reason,
        "status": PENDING,
        "report_date": now,
        "confirmed_at": None,
        "confirmed_by": None,
        "admin_notes": None,
        "created_at": now,
    }
    doc["_id"] = defective_col.insert_one(doc).inserted_id
    audit.log(user, "defective_reported", "defective_products",
              f"Reported {qty} defective x {product.get('name')}",
              entity_type="defective_product", entity_id=doc["_id"], entity_name=product.get("name"),
              new_values={"quantity": qty, "reason": reason})
    return jsonify({"success": True, "message": "Defective product reported",
                    "report": to_json(doc), "remaining_stock": rec["quantity"]}), 201


@defective_bp.route("/admin", methods=["POST"])
def report_defective_admin():
    """Warehouse report by the admin: confirmed on the spot."""
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    parsed, err = _report_input(request.get_json(silent=True) or {})
    if err:
        return err
    product, qty, reason = parsed

    if not take_from_warehouse(product["_id"], qty, also_total=True):
        return fail("Insufficient warehouse stock", 400)

    now = datetime.utcnow()
    doc = {
        "distributor_id": None,
        "product_id": product["_id"],
        "quantity": qty,
        "reason": reason,
        "status": CONFIRMED,
        "report_date": now,
        "confirmed_at": now,
        "confirmed_by": user["_id"],
        "admin_notes": (request.get_json(silent=True) or {}).get("admin_notes"),
        "created_at": now,
    }
    doc["_id"] = defective_col.insert_one(doc).inserted_id
    audit.log(user, "defective_reported", "defective_products",
              f"Removed {qty} defective x {product.get('name')} from the warehouse",
              entity_type="defective_product", entity_id=doc["_id"], entity_name=product.get("name"),
              new_values={"quantity": qty, "reason": reason}, severity="warning")
    return jsonify({"success": True, "message": "Defective product registered", "report": to_json(doc)}), 201


@defective_bp.route("", methods=["GET"])
def list_reports():
    user, err = require_user()
    if err:
        return err
    q: Dict[str, Any] = build_date_filter("report_date", request.args.get("start_date"), request.args.get("end_date"))
    if user.get("role") == ROLE_DISTRIBUTOR:
        q["distributor_id"] = user["_id"]
    elif request.args.get("distributor_id"):
        q["distributor_id"] = parse_oid(request.args.get("distributor_id"))
    status = request.args.get("status")
    if status in (PENDING, CONFIRMED, REJECTED):
        q["status"] = status

    page, limit, skip = paging_args(default_limit=50)
    total = defective_col.count_documents(q)
    docs = list(defective_col.find(q).sort("report_date", -1).skip(skip).limit(limit))
    names = {p["_id"]: p.get("name") for p in products_col.find(
        {"_id": {"$in": list({d["product_id"] for d in docs})}}, {"name": 1})}
    items = []
    for d in docs:
        item = to_json(d)
        item["product_name"] = names.get(d["product_id"])
        items.append(item)
    return jsonify({"success": True, "reports": items, "pagination": pagination(page, limit, total)})


def _review(report_id, new_status: str):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    rid = parse_oid(report_id)
    if not rid:
        return fail("Invalid report id", 400)
    notes = ((request.get_json(silent=True) or {}).get("admin_notes") or "").strip() or None
    try:
        doc = defective_col.find_one_and_update(
            {"_id": rid, "status": PENDING},
            {"$set": {"status": new_status, "confirmed_at": datetime.utcnow(),
                      "confirmed_by": user["_id"], "admin_notes": notes}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            existing = defective_col.find_one({"_id": rid}, {"status": 1})
            if not existing:
                return fail("Report not found", 404)
            return fail(f"Report is already {existing.get('status')}", 400)

        if new_status == REJECTED and doc.get("distributor_id"):
            # the units were fine: back to the distributor
            give_to_distributor(doc["distributor_id"], doc["product_id"], int(doc["quantity"]))
            products_col.update_one({"_id": doc["product_id"]}, {"$inc": {"total_stock": int(doc["quantity"])}})

        audit.log(user, f"defective_{new_status}", "defective_products",
                  f"{'Confirmed' if new_status == CONFIRMED else 'Rejected'} defective report",
                  entity_type="defective_product", entity_id=rid,
                  old_values={"status": PENDING}, new_values={"status": new_status},
                  metadata={"quantity": doc.get("quantity")})
        return jsonify({"success": True, "report": to_json(doc)})
    except Exception as e:
        return server_error("defective_review_error", e)


@defective_bp.route("/<report_id>/confirm", methods=["PUT", "POST"])
def confirm_report(report_id):
    return _review(report_id, CONFIRMED)


@defective_bp.route("/<report_id>/reject", methods=["PUT", "POST"])
def reject_report(report_id):
    return _review(report_id, REJECTED)
