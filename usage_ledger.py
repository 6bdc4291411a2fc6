# usage_ledger.py
# Cache-first reads, write-through saves.
#
# - load(): cache hit or RevenueCat fetch, then weekly rollover (reset persisted in background)
# - save(): persist counters + refresh cache; persist failures are logged, never raised
# - lock(uid): per-user RLock; every read-modify-write of a user's counters holds it
#   (admission commits, webhook top-ups/renewals, the rollover write)

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Protocol

from credits import UsageRecord
from revenuecat import LedgerUnavailable
from usage_cache import UsageCache
from week_policy import apply_rollover

log = logging.getLogger("usage_ledger")


class RemoteLedger(Protocol):
    def fetch(self, user_id: str) -> UsageRecord: ...

    def persist(self, user_id: str, record: UsageRecord) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _UserLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, user_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock


class UsageLedger:
    def __init__(
        self,
        remote: RemoteLedger,
        cache: UsageCache,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.remote = remote
        self.cache = cache
        self._clock = clock
        self._locks = _UserLocks()

    def now(self) -> datetime:
        return self._clock()

    def lock(self, user_id: str) -> threading.RLock:
        return self._locks.get(user_id)

    def fetch_fresh(self, user_id: str) -> UsageRecord:
        """Skip the cache. Raises LedgerUnavailable."""
        record = self.remote.fetch(user_id)
        self.cache.put(user_id, record)
        return record

    def load(self, user_id: str) -> UsageRecord:
        """Current record with rollover applied. Raises LedgerUnavailable."""
        record = self.cache.get(user_id)
        source = "cache"
        if record is None:
            record = self.fetch_fresh(user_id)
            source = "remote"

        if apply_rollover(record, self.now(), persist=self._persist_rollover):
            self.cache.put(user_id, record)

        log.debug("[LOAD] uid=%s source=%s weekly_used=%s purchased=%s", user_id, source,
                  record.weekly_used, record.purchased_credits)
        return record

    def _persist_rollover(self, snapshot: UsageRecord) -> None:
        # background thread. Writes the cached view, not the snapshot, so a debit or
        # top-up saved since load() is not overwritten; the cache itself is left alone.
        uid = snapshot.user_id
        with self.lock(uid):
            current = self.cache.get(uid)
            if current is None or current.week_start != snapshot.week_start:
                log.debug("[PERSIST] uid=%s rollover write skipped (superseded)", uid)
                return
            try:
                self.remote.persist(uid, current)
            except LedgerUnavailable as e:
                log.warning("[PERSIST] uid=%s rollover write failed: %s", uid, e)

    def save(self, user_id: str, record: UsageRecord) -> bool:
        # the cache keeps the latest in-memory view even if the remote write fails
        self.cache.put(user_id, record)
        try:
            self.remote.persist(user_id, record)
        except LedgerUnavailable as e:
            log.warning("[PERSIST] uid=%s failed (kept in-memory state): %s", user_id, e)
            return False
        return True

    def invalidate(self, user_id: str) -> None:
        self.cache.invalidate(user_id)
