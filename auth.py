from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

import audit
from db import db
from helpers import fail, jlog, parse_oid

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")

users_col = db["users"]

ROLE_ADMIN = "admin"
ROLE_DISTRIBUTOR = "distributor"
ROLES = {ROLE_ADMIN, ROLE_DISTRIBUTOR}


# ---------------------------
# Helpers
# ---------------------------

def public_user(u: Dict[str, Any] | None) -> Dict[str, Any] | None:
    if not u:
        return None
    return {
        "_id": str(u["_id"]),
        "name": u.get("name", ""),
        "email": u.get("email", ""),
        "role": u.get("role"),
        "phone": u.get("phone"),
        "address": u.get("address"),
        "active": bool(u.get("active", True)),
    }


def current_user() -> Optional[Dict[str, Any]]:
    """The logged-in user document, loaded once per request."""
    if "current_user" in g:
        return g.current_user
    user = None
    uid = parse_oid(session.get("user_id"))
    if uid:
        user = users_col.find_one({"_id": uid}, {"password": 0})
    g.current_user = user
    return user


def require_user(*roles: str) -> Tuple[Optional[Dict[str, Any]], Any]:
    """
    Returns (user, None) when the caller is logged in with one of `roles`
    (any role when none given), else (None, error_response).
    """
    user = current_user()
    if not user:
        return None, fail("Unauthorized", 401)
    if user.get("role") == ROLE_DISTRIBUTOR and not user.get("active", True):
        return None, fail("Account is inactive", 403)
    if roles and user.get("role") not in roles:
        if roles == (ROLE_ADMIN,):
            return None, fail("Access denied: administrators only", 403)
        if roles == (ROLE_DISTRIBUTOR,):
            return None, fail("Access denied: distributors only", 403)
        return None, fail("Access denied", 403)
    return user, None


def create_user(name: str, email: str, password: str, role: str, **fields) -> Dict[str, Any]:
    now = datetime.utcnow()
    doc = {
        "name": name.strip(),
        "email": email.strip().lower(),
        "password": generate_password_hash(password),
        "role": role,
        "active": True,
        "assigned_products": [],
        "created_at": now,
        "updated_at": now,
        **fields,
    }
    res = users_col.insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


# ---------------------------
# Routes
# ---------------------------

@auth_bp.route("/login", methods=["POST"])
def login():
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    if not email or not password:
        return fail("Email and password are required", 400)

    user = users_col.find_one({"email": email})
    if (not user) or (not check_password_hash(user.get("password", ""), password)):
        audit.log_auth(None, "login", success=False, email=email)
        return fail("Invalid email or password", 401)

    if user.get("role") == ROLE_DISTRIBUTOR and not user.get("active", True):
        audit.log_auth(user, "login", success=False, email=email)
        return fail("Account is inactive", 403)

    session.clear()
    session["user_id"] = str(user["_id"])
    session["role"] = user.get("role")
    session.permanent = True
    g.pop("current_user", None)

    audit.log_auth(user, "login", success=True)
    jlog("login", user_id=str(user["_id"]), role=user.get("role"))
    return jsonify({"success": True, "user": public_user(user)})


@auth_bp.route("/logout", methods=["POST"])
def logout():
    user = current_user()
    if user:
        audit.log_auth(user, "logout", success=True)
    session.clear()
    return jsonify({"success": True, "message": "Logged out"})


@auth_bp.route("/me", methods=["GET"])
def me():
    user, err = require_user()
    if err:
        return err
    return jsonify({"success": True, "user": public_user(user)})
