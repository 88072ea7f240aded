"""
Profit history: an append-only ledger of profit events per user.

Each entry stores the user's running balance after it (`balance_after`).
Entries are ordered by (date, _id). Amounts are never edited and entries
are never deleted; corrections are new `adjustment` entries.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from db import db
from helpers import jlog, money, parse_oid, to_float_safe

ledger_col = db["profit_history"]
balances_col = db["profit_balances"]  # {user_id, balance}: running total per user
users_col = db["users"]
sales_col = db["sales"]

ENTRY_TYPES = ("sale", "special_sale", "adjustment", "bonus")


def _latest(user_id) -> Optional[Dict[str, Any]]:
    return ledger_col.find_one({"user_id": user_id}, sort=[("date", DESCENDING), ("_id", DESCENDING)])


def admin_user() -> Optional[Dict[str, Any]]:
    """The business owner account that admin profit is booked to."""
    return users_col.find_one({"role": "admin"}, sort=[("created_at", ASCENDING), ("_id", ASCENDING)])


def current_balance(user_id) -> float:
    last = _latest(parse_oid(user_id))
    return money(last.get("balance_after")) if last else 0.0


def record_entry(
    user_id,
    entry_type: str,
    amount,
    description: str,
    *,
    sale_id=None,
    special_sale_id=None,
    product_id=None,
    metadata: Dict[str, Any] | None = None,
    date: datetime | None = None,
) -> Dict[str, Any]:
    if entry_type not in ENTRY_TYPES:
        raise ValueError(f"unknown ledger entry type: {entry_type}")
    user_id = parse_oid(user_id)
    if user_id is None:
        raise ValueError("ledger entry needs a user")

    amount = money(amount)
    last = _latest(user_id)
    if last:
        # entries written before the running total existed
        balances_col.update_one(
            {"user_id": user_id},
            {"$setOnInsert": {"balance": money(last.get("balance_after"))}},
            upsert=True,
        )

    # the running total is the only serialisation point between writers of one user
    running = balances_col.find_one_and_update(
        {"user_id": user_id},
        {"$inc": {"balance": amount}, "$set": {"updated_at": datetime.utcnow()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    date = date or datetime.utcnow()

    doc = {
        "user_id": user_id,
        "type": entry_type,
        "amount": amount,
        "description": description,
        "sale_id": sale_id,
        "special_sale_id": special_sale_id,
        "product_id": product_id,
        "balance_after": money(running.get("balance")),
        "metadata": metadata or {},
        "date": date,
        "created_at": datetime.utcnow(),
    }
    doc["_id"] = ledger_col.insert_one(doc).inserted_id

    if last and date < last["date"]:
        # back-dated: every later running balance shifts by `amount`
        recalculate_user_balance(user_id)
        doc["balance_after"] = ledger_col.find_one({"_id": doc["_id"]})["balance_after"]

    jlog("ledger_entry", user_id=str(user_id), type=entry_type, amount=amount,
         balance_after=doc["balance_after"])
    return doc


def recalculate_user_balance(user_id) -> float:
    """Rewrite the running balances of a user's entries in (date, _id) order. Returns the final balance."""
    user_id = parse_oid(user_id)
    balance = 0.0
    for e in list(ledger_col.find({"user_id": user_id}).sort([("date", ASCENDING), ("_id", ASCENDING)])):
        balance = money(balance + to_float_safe(e.get("amount")))
        if money(e.get("balance_after")) != balance:
            ledger_col.update_one({"_id": e["_id"]}, {"$set": {"balance_after": balance}})
    balances_col.update_one(
        {"user_id": user_id},
        {"$set": {"balance": balance, "updated_at": datetime.utcnow()}},
        upsert=True,
    )
    return balance


def _sale_metadata(sale: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "quantity": sale.get("quantity"),
        "sale_price": sale.get("sale_price"),
        "sale_code": sale.get("sale_id"),
    }


def record_sale_profit(sale: Dict[str, Any], only_missing: bool = False) -> List[Dict[str, Any]]:
    """
    Book a confirmed sale: commission for the distributor, margin for the admin.
    With only_missing, parties that already have a `sale` entry for it are skipped.
    """
    written = []
    code = sale.get("sale_id") or str(sale["_id"])

    def _has_entry(uid) -> bool:
        return ledger_col.count_documents({"sale_id": sale["_id"], "user_id": uid, "type": "sale"}) > 0

    dist_id = sale.get("distributor_id")
    if dist_id and to_float_safe(sale.get("distributor_profit")) > 0:
        if not (only_missing and _has_entry(dist_id)):
            written.append(record_entry(
                dist_id, "sale", sale["distributor_profit"], f"Commission on sale {code}",
                sale_id=sale["_id"], product_id=sale.get("product_id"),
                metadata={
                    **_sale_metadata(sale),
                    "commission": sale.get("distributor_profit_percentage"),
                    "commission_bonus": sale.get("commission_bonus", 0),
                },
                date=sale.get("sale_date"),
            ))

    admin = admin_user()
    if admin and to_float_safe(sale.get("admin_profit")) != 0:
        if not (only_missing and _has_entry(admin["_id"])):
            desc = f"Profit on sale {code} (distributor)" if dist_id else f"Direct sale {code}"
            written.append(record_entry(
                admin["_id"], "sale", sale["admin_profit"], desc,
                sale_id=sale["_id"], product_id=sale.get("product_id"),
                metadata=_sale_metadata(sale),
                date=sale.get("sale_date"),
            ))
    return written


def _net_by_user(filt: Dict[str, Any]) -> Dict[Any, float]:
    totals: Dict[Any, float] = {}
    for e in ledger_col.find(filt, {"user_id": 1, "amount": 1}):
        totals[e["user_id"]] = money(totals.get(e["user_id"], 0.0) + to_float_safe(e.get("amount")))
    return totals


def _reverse(filt: Dict[str, Any], description: str, ref: Dict[str, Any], reason: str) -> List[Dict[str, Any]]:
    written = []
    for uid, net in _net_by_user(filt).items():
        if net == 0:
            continue
        written.append(record_entry(
            uid, "adjustment", -net, description,
            metadata={"reason": reason}, **ref,
        ))
    return written


def reverse_sale_profit(sale: Dict[str, Any], reason: str = "sale_deleted") -> List[Dict[str, Any]]:
    """Append entries cancelling whatever the ledger holds for this sale. Idempotent."""
    code = sale.get("sale_id") or str(sale["_id"])
    return _reverse(
        {"sale_id": sale["_id"]}, f"Reversal of sale {code}",
        {"sale_id": sale["_id"], "product_id": sale.get("product_id")}, reason,
    )


def record_special_sale_profit(special: Dict[str, Any]) -> List[Dict[str, Any]]:
    written = []
    name = (special.get("product") or {}).get("name", "")
    event = special.get("event_name")
    desc = f"Special sale: {name}" + (f" ({event})" if event else "")
    for line in special.get("distribution") or []:
        uid = line.get("user_id")
        if not uid or to_float_safe(line.get("amount")) <= 0:
            continue
        written.append(record_entry(
            uid, "special_sale", line["amount"], desc,
            special_sale_id=special["_id"],
            product_id=(special.get("product") or {}).get("product_id"),
            metadata={
                "quantity": special.get("quantity"),
                "sale_price": special.get("special_price"),
                "event_name": event,
                "percentage": line.get("percentage"),
                "notes": line.get("notes"),
            },
            date=special.get("sale_date"),
        ))
    return written


def reverse_special_sale_profit(special: Dict[str, Any]) -> List[Dict[str, Any]]:
    name = (special.get("product") or {}).get("name", "")
    return _reverse(
        {"special_sale_id": special["_id"]}, f"Cancellation of special sale: {name}",
        {"special_sale_id": special["_id"]}, "special_sale_cancelled",
    )


def backfill_from_sales() -> Dict[str, int]:
    """Write missing `sale` entries for confirmed sales. Running it twice writes nothing new."""
    sales_seen = 0
    written = 0
    for sale in sales_col.find({"payment_status": "confirmed"}).sort([("sale_date", ASCENDING), ("_id", ASCENDING)]):
        sales_seen += 1
        written += len(record_sale_profit(sale, only_missing=True))
    jlog("ledger_backfill", sales=sales_seen, entries=written)
    return {"sales": sales_seen, "entries": written}


def totals_by_type(user_id=None, date_filter: Dict[str, Any] | None = None) -> Dict[str, Dict[str, Any]]:
    match: Dict[str, Any] = dict(date_filter or {})
    if user_id is not None:
        match["user_id"] = parse_oid(user_id)
    out = {}
    for r in ledger_col.aggregate([
        {"$match": match},
        {"$group": {"_id": "$type", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
    ]):
        out[r["_id"]] = {"total": money(r.get("total")), "count": int(r.get("count") or 0)}
    return out
