import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

os.environ.setdefault("DEBUG_MODE", "false")

from admission import AdmissionController
from credits import SubscriptionType, UsageRecord
from revenuecat import LedgerUnavailable, default_record
from usage_cache import UsageCache
from usage_ledger import UsageLedger

# Wednesday; the week started Sunday 2026-10-11
NOW = datetime(2026, 10, 14, 12, 0, 0, tzinfo=timezone.utc)
WEEK_START = datetime(2026, 10, 11, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRemoteLedger:
    """In-memory stand-in for RevenueCat: counters + entitlement state kept apart."""

    def __init__(self, clock: FrozenClock):
        self._clock = clock
        self._lock = threading.Lock()
        self.counters: Dict[str, UsageRecord] = {}
        self.entitlements: Dict[str, Tuple[SubscriptionType, Optional[datetime]]] = {}
        self.fetch_calls = 0
        self.persisted: List[UsageRecord] = []
        self.fail_fetch = False
        self.fail_persist = False
        # when set, the next persist signals persist_entered and blocks until the gate opens
        self.persist_gate: Optional[threading.Event] = None
        self.persist_entered = threading.Event()

    def seed(self, user_id: str, **counters) -> None:
        rec = default_record(user_id, self._clock())
        for k, v in counters.items():
            setattr(rec, k, v)
        self.counters[user_id] = rec

    def subscribe(self, user_id: str, stype: SubscriptionType, expires_at: Optional[datetime] = None) -> None:
        self.entitlements[user_id] = (stype, expires_at)

    def fetch(self, user_id: str) -> UsageRecord:
        with self._lock:
            self.fetch_calls += 1
        if self.fail_fetch:
            raise LedgerUnavailable("revenuecat down")
        rec = self.counters.get(user_id)
        rec = rec.copy() if rec else default_record(user_id, self._clock())
        ent = self.entitlements.get(user_id)
        if ent:
            rec.is_subscribed = True
            rec.subscription_type, rec.expires_at = ent
        else:
            rec.is_subscribed = False
            rec.subscription_type = SubscriptionType.NONE
            rec.expires_at = None
        return rec

    def persist(self, user_id: str, record: UsageRecord) -> None:
        if self.fail_persist:
            raise LedgerUnavailable("revenuecat write failed")
        gate, self.persist_gate = self.persist_gate, None
        if gate is not None:
            self.persist_entered.set()
            gate.wait(timeout=5)
        with self._lock:
            self.counters[user_id] = UsageRecord(
                user_id=user_id,
                weekly_used=record.weekly_used,
                week_start=record.week_start,
                purchased_credits=record.purchased_credits,
                demo_used=record.demo_used,
            )
            self.persisted.append(record.copy())


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def remote(clock: FrozenClock) -> FakeRemoteLedger:
    return FakeRemoteLedger(clock)


@pytest.fixture
def cache(clock: FrozenClock) -> UsageCache:
    return UsageCache(ttl_sec=10, clock=clock.timestamp)


@pytest.fixture
def ledger(remote: FakeRemoteLedger, cache: UsageCache, clock: FrozenClock) -> UsageLedger:
    return UsageLedger(remote, cache, clock=clock)


@pytest.fixture
def controller(ledger: UsageLedger) -> AdmissionController:
    return AdmissionController(ledger, debug_bypass=False)
