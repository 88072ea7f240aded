from __future__ import annotations

import json
import math
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from bson import ObjectId
from flask import jsonify, request

BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "America/Bogota")
BUSINESS_TZ = ZoneInfo(BUSINESS_TIMEZONE)


class BusinessRuleError(Exception):
    """A request that breaks a business rule. Carries the HTTP status to answer with."""

    def __init__(self, message: str, status: int = 400, **extra):
        super().__init__(message)
        self.message = message
        self.status = status
        self.extra = extra


# ===== Tiny JSON logger =======================================================
def jlog(event: str, **kv):
    rec = {"evt": event, "ts": datetime.utcnow().isoformat(timespec="seconds"), **kv}
    try:
        print(json.dumps(rec, ensure_ascii=False, separators=(",", ":"), default=str), flush=True)
    except Exception:
        print(f"[LOG_FALLBACK] {event} {kv}", flush=True)


# ===== Responses ==============================================================
def fail(message: str, status: int = 400, **extra):
    return jsonify({"success": False, "message": message, **extra}), status


def rule_error_response(err: BusinessRuleError):
    return fail(err.message, err.status, **to_json(err.extra))


def server_error(event: str, exc: Exception, message: str = "Server error"):
    jlog(event, error=str(exc), path=request.path if request else None)
    return fail(message, 500)


def to_json(value: Any) -> Any:
    """Make Mongo documents JSON friendly: ObjectId -> str, datetime -> ISO string (UTC)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.replace(tzinfo=None).isoformat() + "Z" if value.tzinfo is None else value.isoformat()
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    return value


# ===== Coercion ===============================================================
def _now() -> datetime:
    return datetime.utcnow()


def to_float_safe(v, default: float = 0.0) -> float:
    try:
        if v is None:
            return float(default)
        return float(v)
    except Exception:
        return float(default)


def money(x: Any) -> float:
    return round(to_float_safe(x), 2)


def parse_oid(raw) -> Optional[ObjectId]:
    if isinstance(raw, ObjectId):
        return raw
    try:
        return ObjectId(str(raw))
    except Exception:
        return None


def parse_int(raw, default: int, lo: int | None = None, hi: int | None = None) -> int:
    try:
        n = int(raw)
    except (TypeError, ValueError):
        n = default
    if lo is not None:
        n = max(lo, n)
    if hi is not None:
        n = min(hi, n)
    return n


def parse_positive_qty(raw) -> Optional[int]:
    """Whole quantity > 0, else None. Accepts 3, "3", 3.0 but not 2.5."""
    try:
        f = float(raw)
    except (TypeError, ValueError):
        return None
    if f <= 0 or not f.is_integer():
        return None
    return int(f)


def paging_args(default_limit: int = 50, max_limit: int = 500) -> Tuple[int, int, int]:
    page = parse_int(request.args.get("page"), 1, lo=1)
    limit = parse_int(request.args.get("limit"), default_limit, lo=1, hi=max_limit)
    return page, limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    pages = max(1, math.ceil(total / limit)) if limit else 1
    return {"page": page, "limit": limit, "total": total, "pages": pages, "has_more": page < pages}


# ===== Local time =============================================================
def to_local(dt: datetime) -> datetime:
    """Naive UTC -> aware local business time."""
    return dt.replace(tzinfo=timezone.utc).astimezone(BUSINESS_TZ)


def local_to_utc(dt_local: datetime) -> datetime:
    """Aware (or naive-local) business time -> naive UTC."""
    if dt_local.tzinfo is None:
        dt_local = dt_local.replace(tzinfo=BUSINESS_TZ)
    return dt_local.astimezone(timezone.utc).replace(tzinfo=None)


def local_midnight_utc(d: date) -> datetime:
    return local_to_utc(datetime(d.year, d.month, d.day, tzinfo=BUSINESS_TZ))


def local_day_key(dt: datetime) -> str:
    return to_local(dt).strftime("%Y-%m-%d")


def parse_datetime(raw) -> Optional[datetime]:
    """
    'YYYY-MM-DD' -> local midnight in naive UTC.
    Full ISO timestamps are honoured as given (naive means UTC).
    """
    if not raw:
        return None
    s = str(raw).strip()
    try:
        if len(s) == 10:
            return local_midnight_utc(datetime.strptime(s, "%Y-%m-%d").date())
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def build_date_filter(field: str, start_raw, end_raw) -> Dict[str, Any]:
    """
    Mongo filter on `field` with inclusive start (>=) and exclusive end.
    A date-only end means "through that local day" (< next local midnight).
    """
    start_dt = parse_datetime(start_raw)
    end_dt = parse_datetime(end_raw)

    # If both provided and out of order, swap
    if start_dt and end_dt and start_dt > end_dt:
        start_dt, end_dt = end_dt, start_dt
        start_raw, end_raw = end_raw, start_raw

    if end_dt is not None and len(str(end_raw).strip()) == 10:
        end_dt = end_dt + timedelta(days=1)

    filt: Dict[str, Any] = {}
    if start_dt and end_dt:
        filt[field] = {"$gte": start_dt, "$lt": end_dt}
    elif start_dt:
        filt[field] = {"$gte": start_dt}
    elif end_dt:
        filt[field] = {"$lt": end_dt}
    return filt
