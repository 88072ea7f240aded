# routes/catalog.py — categories, products and the per-distributor priced catalog
from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, Tuple

from flask import Blueprint, jsonify, request
from pymongo.errors import DuplicateKeyError

import audit
import commission
from auth import ROLE_ADMIN, ROLE_DISTRIBUTOR, require_user
from db import db
from helpers import (
    BusinessRuleError, fail, jlog, money, paging_args, pagination, parse_oid,
    rule_error_response, server_error, to_json,
)

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api")

categories_col = db["categories"]
products_col = db["products"]
dist_stock_col = db["distributor_stock"]

PRICE_FIELDS = ("purchase_price", "distributor_price", "client_price", "suggested_price")
DEFAULT_PRODUCT_ALERT = 10


# ---------------------------
# Helpers
# ---------------------------

def slugify(name: str) -> str:
    s = unicodedata.normalize("NFKD", name or "")
    s = "".join(ch for ch in s if not unicodedata.combining(ch)).lower().strip()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    return s.strip("-")


def _price(payload: Dict[str, Any], field: str, required: bool):
    raw = payload.get(field)
    if raw is None or raw == "":
        if required:
            raise BusinessRuleError(f"{field} is required")
        return None
    try:
        val = float(raw)
    except (TypeError, ValueError):
        raise BusinessRuleError(f"{field} must be a number")
    if val < 0:
        raise BusinessRuleError(f"{field} cannot be negative")
    return money(val)


def _whole(payload: Dict[str, Any], field: str, default: int | None = None):
    raw = payload.get(field, default)
    if raw is None or raw == "":
        return default
    try:
        f = float(raw)
    except (TypeError, ValueError):
        raise BusinessRuleError(f"{field} must be a whole number")
    if f < 0 or not f.is_integer():
        raise BusinessRuleError(f"{field} must be a whole number >= 0")
    return int(f)


def _product_fields(payload: Dict[str, Any], creating: bool) -> Dict[str, Any]:
    out: Dict[str, Any] = {}

    if creating or "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            raise BusinessRuleError("name is required")
        out["name"] = name
    if "description" in payload:
        out["description"] = (payload.get("description") or "").strip()

    for field in ("purchase_price", "distributor_price"):
        if creating or field in payload:
            out[field] = _price(payload, field, required=True)
    for field in ("client_price", "suggested_price"):
        if field in payload:
            out[field] = _price(payload, field, required=False)
    if creating and out.get("suggested_price") is None:
        out["suggested_price"] = money(out["purchase_price"] * 1.3)

    if creating or "category_id" in payload:
        raw = payload.get("category_id")
        if raw:
            cid = parse_oid(raw)
            if not cid or not categories_col.find_one({"_id": cid}, {"_id": 1}):
                raise BusinessRuleError("Category not found", 404)
            out["category_id"] = cid
        else:
            out["category_id"] = None

    if creating:
        out["warehouse_stock"] = _whole(payload, "warehouse_stock", _whole(payload, "total_stock", 0))
    elif "warehouse_stock" in payload:
        out["warehouse_stock"] = _whole(payload, "warehouse_stock")

    if creating or "low_stock_alert" in payload:
        out["low_stock_alert"] = _whole(payload, "low_stock_alert", DEFAULT_PRODUCT_ALERT)
    if creating or "featured" in payload:
        out["featured"] = bool(payload.get("featured", False))
    return out


def _price_changes(old: Dict[str, Any], new: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    before, after = {}, {}
    for f in PRICE_FIELDS:
        if f in new and new[f] != old.get(f):
            before[f] = old.get(f)
            after[f] = new[f]
    return before, after


def _with_category(p: Dict[str, Any]) -> Dict[str, Any]:
    out = to_json(p)
    cat = categories_col.find_one({"_id": p.get("category_id")}) if p.get("category_id") else None
    out["category"] = {"_id": str(cat["_id"]), "name": cat.get("name"), "slug": cat.get("slug")} if cat else None
    return out


# ---------------------------
# Categories
# ---------------------------

@catalog_bp.route("/categories", methods=["GET"])
def list_categories():
    cats = list(categories_col.find({}).sort("name", 1))
    counts = {r["_id"]: r["n"] for r in products_col.aggregate([
        {"$group": {"_id": "$category_id", "n": {"$sum": 1}}},
    ])}
    items = []
    for c in cats:
        item = to_json(c)
        item["product_count"] = counts.get(c["_id"], 0)
        items.append(item)
    return jsonify({"success": True, "categories": items})


@catalog_bp.route("/categories", methods=["POST"])
def create_category():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    name = (payload.get("name") or "").strip()
    if not name:
        return fail("name is required", 400)
    now = datetime.utcnow()
    doc = {
        "name": name,
        "slug": slugify(name),
        "description": (payload.get("description") or "").strip(),
        "created_at": now,
        "updated_at": now,
    }
    try:
        doc["_id"] = categories_col.insert_one(doc).inserted_id
    except DuplicateKeyError:
        return fail("A category with that name already exists", 409)
    audit.log(user, "category_created", "categories", f"Created category {name}",
              entity_type="category", entity_id=doc["_id"], entity_name=name, new_values={"name": name})
    return jsonify({"success": True, "category": to_json(doc)}), 201


@catalog_bp.route("/categories/<category_id>", methods=["PUT"])
def update_category(category_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    cid = parse_oid(category_id)
    old = categories_col.find_one({"_id": cid}) if cid else None
    if not old:
        return fail("Category not found", 404)
    payload = request.get_json(silent=True) or {}
    upd: Dict[str, Any] = {"updated_at": datetime.utcnow()}
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            return fail("name cannot be empty", 400)
        upd["name"] = name
        upd["slug"] = slugify(name)
    if "description" in payload:
        upd["description"] = (payload.get("description") or "").strip()
    try:
        categories_col.update_one({"_id": cid}, {"$set": upd})
    except DuplicateKeyError:
        return fail("A category with that name already exists", 409)
    audit.log(user, "category_updated", "categories", f"Updated category {old.get('name')}",
              entity_type="category", entity_id=cid, entity_name=upd.get("name", old.get("name")),
              old_values={"name": old.get("name"), "description": old.get("description")},
              new_values={k: v for k, v in upd.items() if k != "updated_at"})
    return jsonify({"success": True, "category": to_json(categories_col.find_one({"_id": cid}))})


@catalog_bp.route("/categories/<category_id>", methods=["DELETE"])
def delete_category(category_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    cid = parse_oid(category_id)
    cat = categories_col.find_one({"_id": cid}) if cid else None
    if not cat:
        return fail("Category not found", 404)
    in_use = products_col.count_documents({"category_id": cid})
    if in_use:
        return fail(f"Category is used by {in_use} product(s)", 400, products=in_use)
    categories_col.delete_one({"_id": cid})
    audit.log(user, "category_deleted", "categories", f"Deleted category {cat.get('name')}",
              entity_type="category", entity_id=cid, entity_name=cat.get("name"), severity="warning")
    return jsonify({"success": True, "message": "Category deleted"})


# ---------------------------
# Products
# ---------------------------

@catalog_bp.route("/products", methods=["GET"])
def list_products():
    q: Dict[str, Any] = {}
    cat = request.args.get("category")
    if cat:
        cid = parse_oid(cat)
        if not cid:
            slug_doc = categories_col.find_one({"slug": cat})
            cid = slug_doc["_id"] if slug_doc else None
        if cid is None:
            page, limit, _ = paging_args(default_limit=50)
            return jsonify({"success": True, "products": [], "pagination": pagination(page, limit, 0)})
        q["category_id"] = cid
    search = (request.args.get("search") or "").strip()
    if search:
        q["$or"] = [
            {"name": {"$regex": re.escape(search), "$options": "i"}},
            {"description": {"$regex": re.escape(search), "$options": "i"}},
        ]
    if request.args.get("featured") in ("1", "true"):
        q["featured"] = True

    page, limit, skip = paging_args(default_limit=50)
    total = products_col.count_documents(q)
    docs = list(products_col.find(q).sort("created_at", -1).skip(skip).limit(limit))
    return jsonify({
        "success": True,
        "products": [_with_category(p) for p in docs],
        "pagination": pagination(page, limit, total),
    })


@catalog_bp.route("/products/<product_id>", methods=["GET"])
def get_product(product_id):
    pid = parse_oid(product_id)
    p = products_col.find_one({"_id": pid}) if pid else None
    if not p:
        return fail("Product not found", 404)
    return jsonify({"success": True, "product": _with_category(p)})


@catalog_bp.route("/products", methods=["POST"])
def create_product():
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    try:
        fields = _product_fields(payload, creating=True)
    except BusinessRuleError as e:
        return rule_error_response(e)

    now = datetime.utcnow()
    doc = {**fields, "total_stock": fields["warehouse_stock"], "created_at": now, "updated_at": now}
    doc["_id"] = products_col.insert_one(doc).inserted_id
    audit.log(user, "product_created", "products", f"Created product {doc['name']}",
              entity_type="product", entity_id=doc["_id"], entity_name=doc["name"],
              new_values={f: doc.get(f) for f in PRICE_FIELDS + ("warehouse_stock",)})
    jlog("product_created", product_id=str(doc["_id"]), admin_id=str(user["_id"]))
    return jsonify({"success": True, "product": _with_category(doc)}), 201


@catalog_bp.route("/products/<product_id>", methods=["PUT"])
def update_product(product_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    pid = parse_oid(product_id)
    old = products_col.find_one({"_id": pid}) if pid else None
    if not old:
        return fail("Product not found", 404)
    payload = request.get_json(silent=True) or {}
    try:
        upd = _product_fields(payload, creating=False)
    except BusinessRuleError as e:
        return rule_error_response(e)

    mods: Dict[str, Any] = {"$set": {**upd, "updated_at": datetime.utcnow()}}
    if "warehouse_stock" in upd:
        # total stock = warehouse + what distributors hold
        delta = upd["warehouse_stock"] - int(old.get("warehouse_stock") or 0)
        mods["$inc"] = {"total_stock": delta}
    products_col.update_one({"_id": pid}, mods)
    new = products_col.find_one({"_id": pid})

    before, after = _price_changes(old, upd)
    if after:
        audit.log(user, "product_price_changed", "products", f"Changed prices of {new.get('name')}",
                  entity_type="product", entity_id=pid, entity_name=new.get("name"),
                  old_values=before, new_values=after, severity="warning")
    else:
        audit.log(user, "product_updated", "products", f"Updated product {new.get('name')}",
                  entity_type="product", entity_id=pid, entity_name=new.get("name"),
                  old_values={k: old.get(k) for k in upd}, new_values=upd)
    return jsonify({"success": True, "product": _with_category(new)})


@catalog_bp.route("/products/<product_id>", methods=["DELETE"])
def delete_product(product_id):
    user, err = require_user(ROLE_ADMIN)
    if err:
        return err
    pid = parse_oid(product_id)
    p = products_col.find_one({"_id": pid}) if pid else None
    if not p:
        return fail("Product not found", 404)
    held = dist_stock_col.count_documents({"product_id": pid, "quantity": {"$gt": 0}})
    if held:
        return fail("Product is still held by distributors; withdraw their stock first", 400,
                    distributors=held)
    products_col.delete_one({"_id": pid})
    dist_stock_col.delete_many({"product_id": pid})
    db["users"].update_many({"assigned_products": pid}, {"$pull": {"assigned_products": pid}})
    audit.log(user, "product_deleted", "products", f"Deleted product {p.get('name')}",
              entity_type="product", entity_id=pid, entity_name=p.get("name"), severity="warning")
    return jsonify({"success": True, "message": "Product deleted"})


@catalog_bp.route("/products/distributor-catalog", methods=["GET"])
def distributor_catalog():
    """Every product with the price this distributor sells at given its current commission."""
    user, err = require_user(ROLE_DISTRIBUTOR)
    if err:
        return err
    try:
        pct, bonus, position = commission.commission_for(user["_id"])
        held = {s["product_id"]: int(s.get("quantity") or 0)
                for s in dist_stock_col.find({"distributor_id": user["_id"]})}
        items = []
        for p in products_col.find({}).sort("name", 1):
            item = _with_category(p)
            item["distributor_price"] = commission.personalized_price(p.get("purchase_price"), pct)
            item["my_stock"] = held.get(p["_id"], 0)
            item.pop("purchase_price", None)
            items.append(item)
        return jsonify({
            "success": True,
            "commission": {"percentage": pct, "bonus": bonus, "position": position},
            "products": items,
        })
    except Exception as e:
        return server_error("distributor_catalog_error", e)
