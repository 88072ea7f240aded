"""
Rule-based restocking and pricing advice per product.

Input is one row per product with its warehouse stock and the confirmed
units / revenue / profit of two consecutive windows (recent and previous,
`recent_days` long each). The "market price" is the average recent selling
price of the product's category; no external source is consulted.
"""
from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from helpers import money, to_float_safe

NO_CATEGORY = "__none__"

ACTION_PRIORITY = {
    "buy_more_inventory": 1,
    "pause_purchases": 2,
    "decrease_price": 3,
    "run_promotion": 4,
    "increase_price": 5,
    "review_margin": 6,
    "keep": 99,
}

COVER_TARGET_DAYS = 30
LOW_COVER_DAYS = 14
LOW_MARGIN = 0.15
TREND_DROP = -0.2
TREND_RISE = 0.2
PRICE_GAP = 0.1


def _div(num, den) -> float:
    d = to_float_safe(den)
    return to_float_safe(num) / d if d else 0.0


def _action(action: str, title: str, confidence: float, **extra) -> Dict[str, Any]:
    return {"action": action, "title": title, "confidence": confidence, **extra}


def category_key(row: Dict[str, Any]) -> str:
    return str(row["category_id"]) if row.get("category_id") else NO_CATEGORY


def category_average_prices(rows: List[Dict[str, Any]]) -> Dict[str, float]:
    """Average recent unit price per category, weighted by units sold."""
    units: Dict[str, float] = {}
    revenue: Dict[str, float] = {}
    for r in rows:
        key = category_key(r)
        units[key] = units.get(key, 0.0) + to_float_safe(r.get("recent_units"))
        revenue[key] = revenue.get(key, 0.0) + to_float_safe(r.get("recent_revenue"))
    return {k: _div(revenue[k], units[k]) for k in units}


def pick_primary(actions: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not actions:
        return None
    return sorted(actions, key=lambda a: (ACTION_PRIORITY.get(a["action"], 50), -a.get("confidence", 0)))[0]


def recommend(row: Dict[str, Any], category_avg: float, recent_days: int) -> Dict[str, Any]:
    stock = int(row.get("warehouse_stock") or 0)
    alert = int(row.get("low_stock_alert") or 0)
    recent_units = int(row.get("recent_units") or 0)
    prev_units = int(row.get("prev_units") or 0)
    recent_revenue = to_float_safe(row.get("recent_revenue"))
    recent_profit = to_float_safe(row.get("recent_profit"))

    daily = _div(recent_units, recent_days)
    cover = _div(stock, daily) if daily > 0 else None
    avg_price = _div(recent_revenue, recent_units)
    margin = _div(recent_profit, recent_revenue) if recent_revenue > 0 else 0.0
    if prev_units > 0:
        growth = _div(recent_units - prev_units, prev_units)
    else:
        growth = 1.0 if recent_units > 0 else 0.0
    vs_category = _div(avg_price - category_avg, category_avg) if category_avg > 0 else 0.0

    why: List[str] = []
    actions: List[Dict[str, Any]] = []

    # fast mover about to run out
    if recent_units > 0 and cover is not None and cover < LOW_COVER_DAYS and stock <= max(alert * 1.5, 5):
        target = math.ceil(daily * COVER_TARGET_DAYS)
        why.append(f"High rotation: {daily:.2f} units/day over the last {recent_days} days.")
        why.append(f"Estimated cover: {cover:.2f} days with the current warehouse stock ({stock}).")
        actions.append(_action("buy_more_inventory", "Buy more inventory", 0.85,
                               suggested_qty=max(target - stock, 0),
                               details={"target_days": COVER_TARGET_DAYS, "avg_daily_units": round(daily, 2),
                                        "days_cover": round(cover, 2)}))

    low_rotation = recent_units <= 1
    if low_rotation and stock > alert * 2 and stock >= 10:
        why.append(f"Low rotation: {recent_units} units in the last {recent_days} days with high stock ({stock}).")
        actions.append(_action("pause_purchases", "Pause purchases", 0.8))
        if category_avg > 0 and vs_category > PRICE_GAP:
            why.append(f"Price is {vs_category * 100:.2f}% above similar products.")
            actions.append(_action("decrease_price", "Lower the price", 0.7, suggested_change_pct=-5))
        else:
            actions.append(_action("run_promotion", "Run a promotion", 0.65, suggested_change_pct=-10))

    if not low_rotation and growth < TREND_DROP and stock > alert:
        why.append(f"Downward trend: {growth * 100:.2f}% against the previous {recent_days} days.")
        actions.append(_action("run_promotion", "Start a promotion", 0.7, suggested_change_pct=-10))

    if recent_units > 0 and 0 < margin < LOW_MARGIN:
        why.append(f"Low recent margin: {margin * 100:.1f}% over the last {recent_days} days.")
        actions.append(_action("review_margin", "Review price and cost", 0.65))
        if category_avg > 0 and vs_category < -PRICE_GAP:
            actions.append(_action("increase_price", "Raise the price", 0.6, suggested_change_pct=5))

    if recent_units >= 10 and growth >= TREND_RISE and category_avg > 0 and vs_category < -PRICE_GAP:
        why.append(f"Growing demand: +{growth * 100:.2f}% against the previous period.")
        why.append(f"Price is {vs_category * 100:.2f}% below similar products.")
        actions.append(_action("increase_price", "Raise the price (controlled test)", 0.6, suggested_change_pct=5))

    if not actions:
        if recent_units == 0:
            why.append(f"No confirmed sales in the last {recent_days} days.")
            if stock > alert:
                actions.append(_action("run_promotion", "Try a promotion", 0.55, suggested_change_pct=-10))
                actions.append(_action("pause_purchases", "Pause purchases until demand is proven", 0.55))
            else:
                actions.append(_action("keep", "Keep (wait for more data)", 0.5))
        else:
            actions.append(_action("keep", "Keep the current strategy", 0.7))

    return {
        "metrics": {
            "recent_units": recent_units,
            "prev_units": prev_units,
            "units_growth_pct": round(growth * 100, 2),
            "recent_revenue": money(recent_revenue),
            "recent_profit": money(recent_profit),
            "recent_margin_pct": round(margin * 100, 2),
            "avg_daily_units": round(daily, 2),
            "days_cover": round(cover, 2) if cover is not None else None,
            "recent_avg_price": money(avg_price),
            "category_avg_price": money(category_avg),
            "price_vs_category_pct": round(vs_category * 100, 2),
        },
        "primary": pick_primary(actions),
        "actions": actions,
        "justification": why,
    }
