# webhook.py
# RevenueCat webhook reconciliation.
#
# - Authorization header must equal REVENUECAT_WEBHOOK_AUTH (set in the RevenueCat
#   dashboard -> Integrations -> Webhooks). Missing config is a server error.
# - Every recognized event drops the user's cache entry; fetch -> mutate -> save runs
#   under the ledger's per-user lock so it never interleaves with an admission commit.
# - NON_RENEWING_PURCHASE: + pack quantity to purchased_credits
# - RENEWAL: weekly_used = 0, week_start = current week
# - Everything else is logged only; entitlements are re-read from RevenueCat on next fetch.
# - Processing errors never reach the caller (avoid provider retry storms).

import os
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from credits import extract_pack_quantity
from usage_ledger import UsageLedger
from week_policy import current_week_start

log = logging.getLogger("webhook")

REVENUECAT_WEBHOOK_AUTH = os.getenv("REVENUECAT_WEBHOOK_AUTH", "").strip()

PURCHASE_EVENTS = {"NON_RENEWING_PURCHASE", "PURCHASE"}
RENEWAL_EVENTS = {"RENEWAL"}
OBSERVED_EVENTS = {
    "INITIAL_PURCHASE",
    "CANCELLATION",
    "UNCANCELLATION",
    "EXPIRATION",
    "PRODUCT_CHANGE",
    "BILLING_ISSUE",
    "SUBSCRIPTION_PAUSED",
    "SUBSCRIPTION_EXTENDED",
    "TRANSFER",
    "TEMPORARY_ENTITLEMENT_GRANT",
    "TEST",
}
RECOGNIZED_EVENTS = PURCHASE_EVENTS | RENEWAL_EVENTS | OBSERVED_EVENTS


class WebhookError(Exception):
    pass


class WebhookMisconfigured(WebhookError):
    pass


class WebhookUnauthenticated(WebhookError):
    pass


@dataclass(frozen=True)
class WebhookEvent:
    type: str
    app_user_id: str
    product_id: str
    event_id: str = ""


def _strip_bearer(v: str) -> str:
    v = (v or "").strip()
    if v.lower().startswith("bearer "):
        return v[7:].strip()
    return v


def authenticate(header_value: Optional[str], secret: str = REVENUECAT_WEBHOOK_AUTH) -> None:
    if not (secret or "").strip():
        raise WebhookMisconfigured("REVENUECAT_WEBHOOK_AUTH is not configured")
    got = _strip_bearer(header_value or "").encode("utf-8")
    expected = _strip_bearer(secret).encode("utf-8")
    if not got or not hmac.compare_digest(got, expected):
        raise WebhookUnauthenticated("bad authorization header")


def parse_event(body: Any) -> WebhookEvent:
    """Flat {type, app_user_id, product_id} or RevenueCat's {"event": {...}} envelope."""
    if not isinstance(body, dict):
        body = {}
    inner = body.get("event")
    src: Dict[str, Any] = inner if isinstance(inner, dict) else body

    def _get(*keys) -> str:
        for k in keys:
            v = src.get(k)
            if v is None:
                continue
            s = str(v).strip()
            if s:
                return s
        return ""

    return WebhookEvent(
        type=_get("type", "event_type").upper(),
        app_user_id=_get("app_user_id", "appUserId", "original_app_user_id"),
        product_id=_get("product_id", "productId", "product_identifier"),
        event_id=_get("id", "event_id"),
    )


class WebhookReconciler:
    def __init__(self, ledger: UsageLedger, pack_default_quantity: Optional[int] = None):
        self.ledger = ledger
        self.pack_default_quantity = pack_default_quantity

    def handle(self, event: WebhookEvent) -> str:
        """Apply one event. Returns an outcome label; never raises."""
        uid = event.app_user_id
        if event.type not in RECOGNIZED_EVENTS:
            log.info("[RC_WEBHOOK] ignored type=%s uid=%s id=%s", event.type or "-", uid or "-", event.event_id or "-")
            return "ignored"
        if not uid:
            log.warning("[RC_WEBHOOK] missing app_user_id type=%s id=%s", event.type, event.event_id or "-")
            return "ignored"

        with self.ledger.lock(uid):
            self.ledger.invalidate(uid)

            try:
                if event.type in PURCHASE_EVENTS:
                    return self._apply_purchase(event)
                if event.type in RENEWAL_EVENTS:
                    return self._apply_renewal(event)
            except Exception:
                log.exception("[RC_WEBHOOK] failed type=%s uid=%s product=%s", event.type, uid, event.product_id)
                return "error"

        log.info("[RC_WEBHOOK] observed type=%s uid=%s product=%s", event.type, uid, event.product_id or "-")
        return "observed"

    def _apply_purchase(self, event: WebhookEvent) -> str:
        qty = extract_pack_quantity(event.product_id, self.pack_default_quantity)
        record = self.ledger.fetch_fresh(event.app_user_id)
        before = record.purchased_credits
        record.purchased_credits = before + qty
        persisted = self.ledger.save(event.app_user_id, record)
        log.info(
            "[RC_WEBHOOK] purchase uid=%s product=%s qty=%s purchased %s->%s persisted=%s",
            event.app_user_id,
            event.product_id or "-",
            qty,
            before,
            record.purchased_credits,
            persisted,
        )
        return "purchase"

    def _apply_renewal(self, event: WebhookEvent) -> str:
        record = self.ledger.fetch_fresh(event.app_user_id)
        before = record.weekly_used
        record.weekly_used = 0
        record.week_start = current_week_start(self.ledger.now())
        persisted = self.ledger.save(event.app_user_id, record)
        log.info(
            "[RC_WEBHOOK] renewal uid=%s weekly_used %s->0 week_start=%s persisted=%s",
            event.app_user_id,
            before,
            record.week_start.isoformat(),
            persisted,
        )
        return "renewal"
