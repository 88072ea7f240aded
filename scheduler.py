# scheduler.py — background job that closes finished gamification periods
from __future__ import annotations

import os
import traceback

from apscheduler.schedulers.background import BackgroundScheduler

from helpers import jlog
from routes.gamification import check_period

PERIOD_CHECK_MINUTES = int(os.getenv("PERIOD_CHECK_MINUTES", "60"))
JOB_ID = "gamification_period_check"

_scheduler: BackgroundScheduler | None = None


def scheduled_period_check():
    """Evaluate the period that just ended; a no-op once it has a winner."""
    try:
        result = check_period()
        jlog("period_check_run", evaluated=result["evaluated"], reason=result.get("reason"),
             start=result.get("start_date"), end=result.get("end_date"))
        return result
    except Exception:
        jlog("period_check_error", error=traceback.format_exc())
        return None


def build_scheduler(minutes: int = PERIOD_CHECK_MINUTES) -> BackgroundScheduler:
    sched = BackgroundScheduler(timezone="UTC")
    sched.add_job(
        scheduled_period_check,
        "interval",
        minutes=minutes,
        max_instances=1,
        coalesce=True,
        id=JOB_ID,
    )
    return sched


def start_scheduler() -> BackgroundScheduler | None:
    """Start the process-wide scheduler once."""
    global _scheduler
    if _scheduler is not None:
        return _scheduler
    sched = build_scheduler()
    try:
        sched.start()
        jlog("period_scheduler_started", interval_minutes=PERIOD_CHECK_MINUTES)
    except Exception:
        jlog("period_scheduler_start_failed", error=traceback.format_exc())
        return None
    _scheduler = sched
    return sched
