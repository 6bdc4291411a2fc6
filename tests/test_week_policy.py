import threading
from datetime import datetime, timedelta, timezone

import pytest

from credits import UsageRecord
from week_policy import apply_rollover, current_week_start, is_stale, next_week_start

from conftest import NOW, WEEK_START


@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc), datetime(2026, 10, 11, tzinfo=timezone.utc)),
        (datetime(2026, 10, 11, 0, 0, tzinfo=timezone.utc), datetime(2026, 10, 11, tzinfo=timezone.utc)),
        (datetime(2026, 10, 10, 23, 59, 59, tzinfo=timezone.utc), datetime(2026, 10, 4, tzinfo=timezone.utc)),
        (datetime(2027, 1, 1, 8, 30, tzinfo=timezone.utc), datetime(2026, 12, 27, tzinfo=timezone.utc)),
    ],
)
def test_current_week_start_is_previous_sunday_midnight(now: datetime, expected: datetime) -> None:
    start = current_week_start(now)
    assert start == expected
    assert start.weekday() == 6
    assert start <= now


def test_current_week_start_converts_other_timezones() -> None:
    # Sunday 01:00 in UTC+3 is still Saturday in UTC
    tz = timezone(timedelta(hours=3))
    now = datetime(2026, 10, 11, 1, 0, tzinfo=tz)
    assert current_week_start(now) == datetime(2026, 10, 4, tzinfo=timezone.utc)


def test_naive_datetimes_are_treated_as_utc() -> None:
    assert current_week_start(datetime(2026, 10, 14, 12, 0)) == WEEK_START


def test_next_week_start() -> None:
    assert next_week_start(NOW) == WEEK_START + timedelta(days=7)


def test_rollover_resets_stale_record() -> None:
    rec = UsageRecord(user_id="u1", weekly_used=12, week_start=WEEK_START - timedelta(days=7), purchased_credits=3)
    assert is_stale(rec, NOW)

    assert apply_rollover(rec, NOW) is True
    assert rec.weekly_used == 0
    assert rec.week_start == current_week_start(NOW)
    assert rec.purchased_credits == 3


def test_rollover_is_idempotent_within_a_week() -> None:
    rec = UsageRecord(user_id="u1", weekly_used=4, week_start=WEEK_START - timedelta(days=14))
    assert apply_rollover(rec, NOW) is True
    rec.weekly_used = 2

    assert apply_rollover(rec, NOW + timedelta(days=2)) is False
    assert rec.weekly_used == 2
    assert rec.week_start == WEEK_START


def test_rollover_persists_in_background() -> None:
    done = threading.Event()
    seen = []

    def persist(snapshot: UsageRecord) -> None:
        seen.append(snapshot)
        done.set()

    rec = UsageRecord(user_id="u1", weekly_used=9, week_start=WEEK_START - timedelta(days=7))
    assert apply_rollover(rec, NOW, persist=persist) is True
    assert done.wait(2)
    assert seen[0].weekly_used == 0
    assert seen[0].week_start == WEEK_START
    assert seen[0] is not rec


def test_rollover_persist_failure_does_not_undo_reset() -> None:
    attempted = threading.Event()

    def persist(_snapshot: UsageRecord) -> None:
        attempted.set()
        raise RuntimeError("remote down")

    rec = UsageRecord(user_id="u1", weekly_used=9, week_start=WEEK_START - timedelta(days=7))
    assert apply_rollover(rec, NOW, persist=persist) is True
    assert attempted.wait(2)
    assert rec.weekly_used == 0


def test_fresh_record_is_not_persisted() -> None:
    calls = []
    rec = UsageRecord(user_id="u1", weekly_used=1, week_start=WEEK_START)
    assert apply_rollover(rec, NOW, persist=calls.append) is False
    assert calls == []
