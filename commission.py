"""
Commission / ranking engine.

Distributors are ranked by confirmed revenue (sale_price x quantity) inside
the current evaluation period. Only distributors whose sales produced at
least `min_admin_profit_for_ranking` of admin profit qualify; the top three
qualified distributors get bonus percentage points on top of the base
commission.
"""
from __future__ import annotations

import math
import os
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument

from db import db
from helpers import (
    BusinessRuleError, local_midnight_utc, money, parse_datetime, parse_oid,
    to_float_safe, to_local,
)

config_col = db["gamification_config"]
sales_col = db["sales"]

BASE_COMMISSION_PERCENT = float(os.getenv("BASE_COMMISSION_PERCENT", "20"))

PERIODS = ("daily", "weekly", "biweekly", "monthly", "custom")
BIWEEKLY_DAYS = 15
# Windows of biweekly/custom periods line up on this local date when no
# current_period_start has been configured (a Sunday).
DEFAULT_ANCHOR = date(2024, 1, 7)

DEFAULT_SALES_TARGETS = [
    {"level": "bronze", "min_amount": 10000, "bonus": 0, "badge": "🥉"},
    {"level": "silver", "min_amount": 25000, "bonus": 0, "badge": "🥈"},
    {"level": "gold", "min_amount": 50000, "bonus": 0, "badge": "🥇"},
    {"level": "platinum", "min_amount": 100000, "bonus": 0, "badge": "💎"},
]

DEFAULT_CONFIG = {
    "evaluation_period": "monthly",
    "custom_period_days": 30,
    "current_period_start": None,
    "top1_commission_bonus": 5.0,
    "top2_commission_bonus": 3.0,
    "top3_commission_bonus": 1.0,
    "min_admin_profit_for_ranking": 100000.0,
    "top_performer_bonus": 1000.0,
    "second_place_bonus": 500.0,
    "third_place_bonus": 250.0,
    "sales_targets": DEFAULT_SALES_TARGETS,
    "points_per_sale": 1.0,
    "points_per_peso": 0.1,
    "active": True,
    "last_evaluation_date": None,
}

BONUS_FIELDS = ("top1_commission_bonus", "top2_commission_bonus", "top3_commission_bonus")
CASH_BONUS_FIELDS = ("top_performer_bonus", "second_place_bonus", "third_place_bonus")


# ---------------------------
# Pure logic
# ---------------------------

def period_bounds(
    period: str,
    at: datetime | None = None,
    anchor: datetime | None = None,
    custom_days: int | None = None,
) -> Tuple[datetime, datetime]:
    """
    [start, end) of the evaluation window containing `at`, as naive UTC.
    Boundaries are local midnights of the business timezone.
    """
    at = at or datetime.utcnow()
    today = to_local(at).date()

    if period == "daily":
        start_d = today
        end_d = today + timedelta(days=1)
    elif period == "weekly":
        # Python weekday(): Monday=0 .. Sunday=6; weeks start on Sunday
        start_d = today - timedelta(days=(today.weekday() + 1) % 7)
        end_d = start_d + timedelta(days=7)
    elif period == "monthly":
        start_d = today.replace(day=1)
        end_d = (start_d + timedelta(days=32)).replace(day=1)
    elif period in ("biweekly", "custom"):
        length = BIWEEKLY_DAYS if period == "biweekly" else max(1, int(custom_days or 30))
        anchor_d = to_local(anchor).date() if anchor else DEFAULT_ANCHOR
        offset = (today - anchor_d).days // length
        start_d = anchor_d + timedelta(days=offset * length)
        end_d = start_d + timedelta(days=length)
    else:
        raise ValueError(f"unknown evaluation period: {period}")

    return local_midnight_utc(start_d), local_midnight_utc(end_d)


def config_period_bounds(config: Dict[str, Any], at: datetime | None = None) -> Tuple[datetime, datetime]:
    return period_bounds(
        config.get("evaluation_period") or "monthly",
        at,
        anchor=config.get("current_period_start"),
        custom_days=config.get("custom_period_days"),
    )


def previous_period_bounds(config: Dict[str, Any], at: datetime | None = None) -> Tuple[datetime, datetime]:
    start, _ = config_period_bounds(config, at)
    return config_period_bounds(config, start - timedelta(microseconds=1))


def compute_split(
    sale_price,
    purchase_price,
    quantity: int,
    pct: float = BASE_COMMISSION_PERCENT,
    with_distributor: bool = True,
) -> Dict[str, float]:
    sale_price = to_float_safe(sale_price)
    purchase_price = to_float_safe(purchase_price)

    if with_distributor:
        distributor_price = sale_price * (100 - pct) / 100
        distributor_profit = (sale_price - distributor_price) * quantity
        admin_profit = (distributor_price - purchase_price) * quantity
    else:
        distributor_price = 0.0
        distributor_profit = 0.0
        admin_profit = (sale_price - purchase_price) * quantity

    return {
        "distributor_price": money(distributor_price),
        "distributor_profit": money(distributor_profit),
        "admin_profit": money(admin_profit),
        "total_profit": money(admin_profit + distributor_profit),
    }


def personalized_price(purchase_price, pct: float) -> int:
    """Price at which a distributor earning `pct` percent keeps the purchase price whole."""
    raw = to_float_safe(purchase_price) / (1 - pct / 100)
    return int(math.floor(raw + 0.5))


def rank_rows(rows: List[Dict[str, Any]], min_admin_profit: float) -> List[Dict[str, Any]]:
    """Qualified rows ordered by revenue, with 1-based `position`."""
    qualified = [dict(r) for r in rows if to_float_safe(r.get("admin_profit")) >= min_admin_profit]
    qualified.sort(key=lambda r: (
        -to_float_safe(r.get("revenue")),
        -to_float_safe(r.get("admin_profit")),
        str(r.get("distributor_id")),
    ))
    for i, r in enumerate(qualified, start=1):
        r["position"] = i
    return qualified


def bonus_for_position(config: Dict[str, Any], position: Optional[int]) -> float:
    if position in (1, 2, 3):
        return to_float_safe(config.get(BONUS_FIELDS[position - 1]))
    return 0.0


def cash_bonus_for_position(config: Dict[str, Any], position: Optional[int]) -> float:
    if position in (1, 2, 3):
        return to_float_safe(config.get(CASH_BONUS_FIELDS[position - 1]))
    return 0.0


def level_for(total_sales: float, targets: List[Dict[str, Any]] | None) -> Optional[str]:
    level = None
    for t in sorted(targets or [], key=lambda t: to_float_safe(t.get("min_amount"))):
        if total_sales >= to_float_safe(t.get("min_amount")):
            level = t.get("level")
    return level


# ---------------------------
# Config
# ---------------------------

def get_config() -> Dict[str, Any]:
    """The single gamification config document, created with defaults on first read."""
    cfg = config_col.find_one_and_update(
        {},
        {"$setOnInsert": {**DEFAULT_CONFIG, "created_at": datetime.utcnow()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    # documents written by older releases may miss newer fields
    for k, v in DEFAULT_CONFIG.items():
        cfg.setdefault(k, v)
    return cfg


def validate_config_update(payload: Dict[str, Any], current: Dict[str, Any]) -> Dict[str, Any]:
    """Checked `$set` document for a config update. Raises BusinessRuleError."""
    updates: Dict[str, Any] = {}

    if "evaluation_period" in payload:
        period = str(payload["evaluation_period"] or "").strip().lower()
        if period not in PERIODS:
            raise BusinessRuleError(f"evaluation_period must be one of {', '.join(PERIODS)}")
        updates["evaluation_period"] = period

    if "custom_period_days" in payload:
        try:
            days = int(payload["custom_period_days"])
        except (TypeError, ValueError):
            raise BusinessRuleError("custom_period_days must be a whole number")
        if days < 1 or days > 365:
            raise BusinessRuleError("custom_period_days must be between 1 and 365")
        updates["custom_period_days"] = days

    if "current_period_start" in payload:
        raw = payload["current_period_start"]
        start = parse_datetime(raw) if raw else None
        if raw and start is None:
            raise BusinessRuleError("current_period_start must be a date (YYYY-MM-DD)")
        updates["current_period_start"] = start

    numeric = BONUS_FIELDS + CASH_BONUS_FIELDS + (
        "min_admin_profit_for_ranking", "points_per_sale", "points_per_peso",
    )
    for field in numeric:
        if field not in payload:
            continue
        try:
            val = float(payload[field])
        except (TypeError, ValueError):
            raise BusinessRuleError(f"{field} must be a number")
        if val < 0:
            raise BusinessRuleError(f"{field} cannot be negative")
        updates[field] = val

    for field in BONUS_FIELDS:
        bonus = updates.get(field, to_float_safe(current.get(field)))
        if BASE_COMMISSION_PERCENT + bonus >= 100:
            raise BusinessRuleError(
                f"{field} too large: base {BASE_COMMISSION_PERCENT:g}% + bonus must stay below 100%"
            )

    if "sales_targets" in payload:
        targets = payload["sales_targets"]
        if not isinstance(targets, list):
            raise BusinessRuleError("sales_targets must be a list")
        clean = []
        for t in targets:
            if not isinstance(t, dict) or not str(t.get("level") or "").strip():
                raise BusinessRuleError("each sales target needs a level")
            min_amount = to_float_safe(t.get("min_amount"), -1)
            if min_amount < 0:
                raise BusinessRuleError("sales target min_amount must be >= 0")
            clean.append({
                "level": str(t["level"]).strip(),
                "min_amount": min_amount,
                "bonus": max(0.0, to_float_safe(t.get("bonus"))),
                "badge": t.get("badge") or "",
            })
        updates["sales_targets"] = clean

    if "active" in payload:
        updates["active"] = bool(payload["active"])

    return updates


# ---------------------------
# Queries
# ---------------------------

def revenue_rows(start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """Per-distributor totals of confirmed distributor sales with start <= sale_date < end."""
    pipeline = [
        {"$match": {
            "distributor_id": {"$ne": None},
            "payment_status": "confirmed",
            "sale_date": {"$gte": start, "$lt": end},
        }},
        {"$group": {
            "_id": "$distributor_id",
            "revenue": {"$sum": {"$multiply": ["$sale_price", "$quantity"]}},
            "admin_profit": {"$sum": "$admin_profit"},
            "distributor_profit": {"$sum": "$distributor_profit"},
            "sales_count": {"$sum": 1},
            "units": {"$sum": "$quantity"},
        }},
    ]
    rows = []
    for r in sales_col.aggregate(pipeline):
        rows.append({
            "distributor_id": r["_id"],
            "revenue": money(r.get("revenue")),
            "admin_profit": money(r.get("admin_profit")),
            "distributor_profit": money(r.get("distributor_profit")),
            "sales_count": int(r.get("sales_count") or 0),
            "units": int(r.get("units") or 0),
        })
    return rows


def ranking_for_period(start: datetime, end: datetime, min_admin_profit: float | None = None) -> List[Dict[str, Any]]:
    if min_admin_profit is None:
        min_admin_profit = to_float_safe(get_config().get("min_admin_profit_for_ranking"))
    return rank_rows(revenue_rows(start, end), min_admin_profit)


def position_in(ranking: List[Dict[str, Any]], distributor_id) -> Optional[int]:
    did = parse_oid(distributor_id)
    for r in ranking:
        if r["distributor_id"] == did:
            return r["position"]
    return None


def commission_for(
    distributor_id,
    at: datetime | None = None,
    config: Dict[str, Any] | None = None,
) -> Tuple[float, float, Optional[int]]:
    """(pct, bonus, position) a distributor earns on a sale made at `at`."""
    config = config or get_config()
    if not config.get("active", True):
        return BASE_COMMISSION_PERCENT, 0.0, None

    start, end = config_period_bounds(config, at)
    ranking = ranking_for_period(start, end, to_float_safe(config.get("min_admin_profit_for_ranking")))
    position = position_in(ranking, distributor_id)
    bonus = bonus_for_position(config, position)
    return BASE_COMMISSION_PERCENT + bonus, bonus, position
