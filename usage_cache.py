# usage_cache.py
import os
import time
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from credits import UsageRecord

USAGE_CACHE_TTL_SEC = float(os.getenv("USAGE_CACHE_TTL_SEC", "10"))


@dataclass
class CacheEntry:
    record: UsageRecord
    fetched_at: float


class UsageCache:
    """Short-TTL user_id -> UsageRecord snapshots. Stores and returns copies."""

    def __init__(self, ttl_sec: float = USAGE_CACHE_TTL_SEC, clock: Callable[[], float] = time.time):
        self.ttl_sec = float(ttl_sec)
        self._clock = clock
        self._db: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[UsageRecord]:
        with self._lock:
            entry = self._db.get(user_id)
            if not entry:
                return None
            if self._clock() - entry.fetched_at >= self.ttl_sec:
                self._db.pop(user_id, None)
                return None
            return entry.record.copy()

    def put(self, user_id: str, record: UsageRecord) -> None:
        entry = CacheEntry(record=record.copy(), fetched_at=self._clock())
        with self._lock:
            self._db[user_id] = entry

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._db.pop(user_id, None)

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._db.items() if now - e.fetched_at >= self.ttl_sec]
            for k in expired:
                self._db.pop(k, None)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._db)
