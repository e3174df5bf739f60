"""Lock and aggregation rules shared by every read and write path."""
import logging
import os
from datetime import date, datetime
from typing import Iterable, Optional, Union

from fastapi import HTTPException

from schemas import PAYMENT_MODES, ROLE_SUPER_ADMIN

logger = logging.getLogger(__name__)

DateLike = Union[str, date, datetime]


def lock_enabled() -> bool:
    """The date lock is opt-in through ENABLE_BHANDARA_LOCK=true."""
    return os.getenv("ENABLE_BHANDARA_LOCK", "").strip().lower() == "true"


def to_day(value: DateLike) -> date:
    """Truncate a stored date (ISO string, date or datetime) to its day."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise ValueError(f"Unsupported date value: {value!r}")


def is_bhandara_locked(bhandara_date: DateLike, today: Optional[date] = None) -> bool:
    """
    A bhandara is locked once its day is strictly in the past.

    Always False while locking is disabled. The event day itself is never
    locked.
    """
    if not lock_enabled():
        return False
    today = today or date.today()
    return to_day(bhandara_date) < today


def can_modify_record(is_locked: bool, role: Optional[str]) -> bool:
    """Record-level lock: flagged records are reserved to super-admins."""
    if not is_locked:
        return True
    return role == ROLE_SUPER_ADMIN


def ensure_bhandara_unlocked(bhandara: dict, action: str, noun: str) -> None:
    if is_bhandara_locked(bhandara["date"]):
        raise HTTPException(
            status_code=403,
            detail=f"Bhandara is locked. Cannot {action} {noun} after the event date.",
        )


def ensure_record_mutable(bhandara: dict, record: dict, current: dict, action: str,
                          noun: str, label: str) -> None:
    """
    Apply both gates before a financial record is changed.

    The event date lock is checked first; an unlocked event still refuses
    changes to a flag-locked record unless the actor is a super-admin.
    """
    ensure_bhandara_unlocked(bhandara, action, noun)
    if not can_modify_record(record.get("is_locked", False), current.get("role")):
        verb = "modify" if action == "update" else action
        logger.info("Refused %s of locked %s %s by %s", action, label.lower(),
                    record.get("_id"), current.get("username"))
        raise HTTPException(
            status_code=403,
            detail=f"{label} is locked. Only super-admin can {verb} locked {noun}.",
        )


def empty_breakdown() -> dict:
    return {mode: 0 for mode in PAYMENT_MODES}


def fold_breakdown(groups: Iterable[dict]) -> dict:
    """Turn ``{"_id": mode, "total": x}`` aggregation rows into a mode -> total map."""
    breakdown = empty_breakdown()
    for group in groups:
        mode = group.get("_id")
        breakdown[mode] = breakdown.get(mode, 0) + (group.get("total") or 0)
    return breakdown


def build_summary(donation_groups: Iterable[dict], spending_groups: Iterable[dict],
                  donor_count: int) -> dict:
    donation_groups = list(donation_groups)
    spending_groups = list(spending_groups)
    collected = fold_breakdown(donation_groups)
    spent = fold_breakdown(spending_groups)
    total_collected = sum(collected.values())
    total_spent = sum(spent.values())
    return {
        "total_collected": total_collected,
        "total_spent": total_spent,
        "net_balance": total_collected - total_spent,
        "total_donations": sum(g.get("count", 0) for g in donation_groups),
        "total_spendings": sum(g.get("count", 0) for g in spending_groups),
        "donor_count": donor_count,
        "payment_mode_breakdown": collected,
        "spending_mode_breakdown": spent,
    }


def _mode_totals_pipeline(bhandara_id: str) -> list:
    return [
        {"$match": {"bhandara_id": bhandara_id}},
        {"$group": {"_id": "$payment_mode", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
    ]


def summarize_bhandara(db, bhandara_id: str) -> dict:
    """Collected, spent and net balance for one bhandara, split by payment mode."""
    donation_groups = db["donation"].aggregate(_mode_totals_pipeline(bhandara_id))
    spending_groups = db["bhandaraspending"].aggregate(_mode_totals_pipeline(bhandara_id))
    donors = db["donation"].distinct("donor_id", {"bhandara_id": bhandara_id})
    summary = build_summary(donation_groups, spending_groups, len(donors))
    summary["bhandara_id"] = bhandara_id
    return summary
