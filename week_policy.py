# week_policy.py
# Weekly rollover of the subscription pool.
#
# - A week starts Sunday 00:00:00 UTC.
# - Rollover resets weekly_used in memory right away; persisting the reset runs
#   on a detached thread and only logs failures.

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from credits import UsageRecord

log = logging.getLogger("week_policy")

WEEK = timedelta(days=7)


def _utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def current_week_start(now: datetime) -> datetime:
    """Most recent UTC Sunday 00:00:00 at or before `now`."""
    now = _utc(now)
    # weekday(): Monday=0 .. Sunday=6
    days_since_sunday = (now.weekday() + 1) % 7
    day = now - timedelta(days=days_since_sunday)
    return day.replace(hour=0, minute=0, second=0, microsecond=0)


def next_week_start(now: datetime) -> datetime:
    return current_week_start(now) + WEEK


def is_stale(record: UsageRecord, now: datetime) -> bool:
    return _utc(record.week_start) != current_week_start(now)


def _spawn_persist(record: UsageRecord, persist: Callable[[UsageRecord], object]) -> None:
    snapshot = record.copy()

    def runner():
        try:
            persist(snapshot)
        except Exception as e:
            log.warning("[ROLLOVER] persist failed uid=%s err=%s", snapshot.user_id, e)

    threading.Thread(target=runner, daemon=True).start()


def apply_rollover(
    record: UsageRecord,
    now: datetime,
    persist: Optional[Callable[[UsageRecord], object]] = None,
) -> bool:
    """Bring `record` into the current week. Returns True if it was reset."""
    if not is_stale(record, now):
        return False

    week_start = current_week_start(now)
    log.info(
        "[ROLLOVER] uid=%s week_start %s -> %s weekly_used_before=%s",
        record.user_id,
        record.week_start.isoformat(),
        week_start.isoformat(),
        record.weekly_used,
    )
    record.weekly_used = 0
    record.week_start = week_start

    if persist is not None:
        _spawn_persist(record, persist)
    return True
