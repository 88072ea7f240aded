"""
Audit trail of administrative actions.

log() is a side channel: a failed write is reported with jlog and swallowed
so the business operation that triggered it still succeeds.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from flask import has_request_context, request

from db import db
from helpers import jlog, to_json

audit_col = db["audit_logs"]

SEVERITIES = ("info", "warning", "error", "critical")
KEEP_ON_CLEANUP = ("error", "critical")


def _client_ip() -> Optional[str]:
    xff = request.headers.get("X-Forwarded-For", "")
    if xff:
        return xff.split(",")[0].strip()
    return request.remote_addr


def log(
    user: Optional[Dict[str, Any]],
    action: str,
    module: str,
    description: str,
    *,
    entity_type: str | None = None,
    entity_id=None,
    entity_name: str | None = None,
    old_values: Dict[str, Any] | None = None,
    new_values: Dict[str, Any] | None = None,
    metadata: Dict[str, Any] | None = None,
    severity: str = "info",
):
    if severity not in SEVERITIES:
        severity = "info"
    doc = {
        "user_id": user.get("_id") if user else None,
        "user_email": (user or {}).get("email"),
        "user_name": (user or {}).get("name"),
        "user_role": (user or {}).get("role"),
        "action": action,
        "module": module,
        "description": description,
        "entity_type": entity_type,
        "entity_id": str(entity_id) if entity_id is not None else None,
        "entity_name": entity_name,
        "old_values": to_json(old_values) if old_values else None,
        "new_values": to_json(new_values) if new_values else None,
        "metadata": to_json(metadata or {}),
        "severity": severity,
        "ip_address": None,
        "user_agent": None,
        "created_at": datetime.utcnow(),
    }
    if has_request_context():
        doc["ip_address"] = _client_ip()
        doc["user_agent"] = request.headers.get("User-Agent")
        doc["metadata"].setdefault("method", request.method)
        doc["metadata"].setdefault("path", request.path)

    try:
        audit_col.insert_one(doc)
    except Exception as e:
        jlog("audit_write_failed", action=action, error=str(e))


def log_auth(user, action: str, success: bool, email: str | None = None):
    if success:
        name = (user or {}).get("name", "")
        log(user, action, "auth", f"{name} {'logged in' if action == 'login' else 'logged out'}",
            entity_type="user", entity_id=(user or {}).get("_id"), entity_name=name)
        return
    log(user, "login_failed", "auth", f"Failed login attempt for {email or 'unknown'}",
        metadata={"email": email}, severity="warning")
