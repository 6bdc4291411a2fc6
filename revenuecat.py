# revenuecat.py
# RevenueCat REST v1 adapter: source of truth for entitlements + our usage counters.
#
# - GET  /subscribers/{app_user_id}             -> entitlements + subscriber_attributes
# - POST /subscribers/{app_user_id}/attributes  -> write namespaced counters (string values)
#
# Unknown subscriber (404) is not an error: a zero-state record is synthesized.
# Derived fields (is_subscribed / subscription_type / expires_at) are never written back.

import os
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import requests

from credits import (
    SubscriptionType,
    UsageRecord,
    subscription_type_for_product,
    total_entitlement,
)
from week_policy import current_week_start

log = logging.getLogger("revenuecat")

REVENUECAT_API_KEY = (os.getenv("REVENUECAT_API_KEY") or "").strip()
REVENUECAT_API_BASE = (os.getenv("REVENUECAT_API_BASE") or "https://api.revenuecat.com/v1").strip().rstrip("/")
REVENUECAT_TIMEOUT_SEC = float(os.getenv("REVENUECAT_TIMEOUT_SEC", "10"))

# namespace for the attributes this engine owns
CREDITS_ATTR_PREFIX = (os.getenv("CREDITS_ATTR_PREFIX") or "credits_").strip()

COUNTER_FIELDS = ("weekly_used", "week_start", "purchased_credits", "demo_used")


class LedgerUnavailable(RuntimeError):
    """Remote ledger read/write failed for a reason other than an unknown user."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short(s: str, n: int = 300) -> str:
    return (s or "")[:n]


# -----------------------------
# Parsing
# -----------------------------
def _parse_dt(v: Any) -> Optional[datetime]:
    if v is None:
        return None
    try:
        if isinstance(v, (int, float)) or (isinstance(v, str) and v.strip().isdigit()):
            x = int(v)
            if x <= 0:
                return None
            # ms vs sec
            if x > 10_000_000_000:
                x = x / 1000
            return datetime.fromtimestamp(x, tz=timezone.utc)
        s = str(v).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _parse_int(v: Any, default: int = 0) -> int:
    try:
        return max(0, int(str(v).strip()))
    except (TypeError, ValueError):
        return default


def _parse_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "yes")


def _attr_values(attributes: Any, prefix: str) -> Dict[str, Any]:
    """subscriber_attributes -> {counter_name: raw value} for our namespace."""
    out: Dict[str, Any] = {}
    if not isinstance(attributes, dict):
        return out
    for name in COUNTER_FIELDS:
        raw = attributes.get(prefix + name)
        if isinstance(raw, dict):
            raw = raw.get("value")
        if raw is not None:
            out[name] = raw
    return out


def _active_entitlement(
    entitlements: Any, now: datetime
) -> Tuple[bool, SubscriptionType, Optional[datetime]]:
    if not isinstance(entitlements, dict):
        return False, SubscriptionType.NONE, None

    best: Optional[Tuple[int, float, SubscriptionType, Optional[datetime]]] = None
    for ent in entitlements.values():
        if not isinstance(ent, dict):
            continue
        expires_raw = ent.get("expires_date")
        expires_at = _parse_dt(expires_raw)
        if expires_raw is not None and expires_at is None:
            # unparsable expiry: treat as inactive
            continue
        if expires_at is not None and expires_at <= now:
            continue
        stype = subscription_type_for_product(str(ent.get("product_identifier") or ""))
        rank = (
            total_entitlement(stype),
            expires_at.timestamp() if expires_at else float("inf"),
        )
        if best is None or rank > best[:2]:
            best = (rank[0], rank[1], stype, expires_at)

    if best is None:
        return False, SubscriptionType.NONE, None
    return True, best[2], best[3]


def default_record(user_id: str, now: datetime) -> UsageRecord:
    return UsageRecord(user_id=user_id, week_start=current_week_start(now))


def parse_subscriber(
    user_id: str,
    payload: Any,
    now: datetime,
    prefix: str = CREDITS_ATTR_PREFIX,
) -> UsageRecord:
    """RevenueCat subscriber payload -> fully populated UsageRecord."""
    sub = payload.get("subscriber") if isinstance(payload, dict) else None
    if not isinstance(sub, dict):
        sub = {}

    attrs = _attr_values(sub.get("subscriber_attributes"), prefix)
    is_subscribed, stype, expires_at = _active_entitlement(sub.get("entitlements"), now)

    return UsageRecord(
        user_id=user_id,
        weekly_used=_parse_int(attrs.get("weekly_used"), 0),
        week_start=_parse_dt(attrs.get("week_start")) or current_week_start(now),
        purchased_credits=_parse_int(attrs.get("purchased_credits"), 0),
        demo_used=_parse_bool(attrs.get("demo_used")),
        is_subscribed=is_subscribed,
        subscription_type=stype,
        expires_at=expires_at,
    )


def serialize_counters(record: UsageRecord, prefix: str = CREDITS_ATTR_PREFIX) -> Dict[str, Dict[str, str]]:
    week_start = record.week_start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        prefix + "weekly_used": {"value": str(max(0, int(record.weekly_used)))},
        prefix + "week_start": {"value": week_start},
        prefix + "purchased_credits": {"value": str(max(0, int(record.purchased_credits)))},
        prefix + "demo_used": {"value": "true" if record.demo_used else "false"},
    }


# -----------------------------
# Client
# -----------------------------
class RevenueCatLedger:
    def __init__(
        self,
        api_key: str = REVENUECAT_API_KEY,
        base_url: str = REVENUECAT_API_BASE,
        timeout_sec: float = REVENUECAT_TIMEOUT_SEC,
        prefix: str = CREDITS_ATTR_PREFIX,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.prefix = prefix
        self._clock = clock

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise LedgerUnavailable("missing REVENUECAT_API_KEY")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _subscriber_url(self, user_id: str) -> str:
        return f"{self.base_url}/subscribers/{quote(user_id, safe='')}"

    def fetch(self, user_id: str) -> UsageRecord:
        url = self._subscriber_url(user_id)
        try:
            r = requests.get(url, headers=self._headers(), timeout=self.timeout_sec)
        except requests.RequestException as e:
            raise LedgerUnavailable(f"fetch {user_id}: {e}") from e

        now = self._clock()
        if r.status_code == 404:
            log.info("[RC_FETCH] uid=%s not found -> zero record", user_id)
            return default_record(user_id, now)
        if r.status_code >= 400:
            log.warning("[RC_FETCH] uid=%s status=%s body=%s", user_id, r.status_code, _short(r.text))
            raise LedgerUnavailable(f"fetch {user_id}: http {r.status_code}")

        try:
            payload = r.json()
        except ValueError as e:
            raise LedgerUnavailable(f"fetch {user_id}: invalid json") from e

        record = parse_subscriber(user_id, payload, now, prefix=self.prefix)
        log.debug(
            "[RC_FETCH] uid=%s subscribed=%s type=%s weekly_used=%s purchased=%s demo_used=%s",
            user_id,
            record.is_subscribed,
            record.subscription_type.value,
            record.weekly_used,
            record.purchased_credits,
            record.demo_used,
        )
        return record

    def persist(self, user_id: str, record: UsageRecord) -> None:
        url = self._subscriber_url(user_id) + "/attributes"
        body = {"attributes": serialize_counters(record, prefix=self.prefix)}
        try:
            r = requests.post(url, headers=self._headers(), json=body, timeout=self.timeout_sec)
        except requests.RequestException as e:
            raise LedgerUnavailable(f"persist {user_id}: {e}") from e

        if r.status_code >= 400:
            log.warning("[RC_PERSIST] uid=%s status=%s body=%s", user_id, r.status_code, _short(r.text))
            raise LedgerUnavailable(f"persist {user_id}: http {r.status_code}")
