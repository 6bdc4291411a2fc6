"""Credit ledger model + arithmetic.

Pools:
- weekly subscription allowance (size depends on the plan tier, reset every UTC week)
- purchased credits (one-off packs, never reset by time)
- one lifetime demo grant
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

# fallback pack size when a purchase product id carries no number
CREDIT_PACK_DEFAULT_QUANTITY = int(os.getenv("CREDIT_PACK_DEFAULT_QUANTITY", "10"))

# nominal balance reported for debug-bypassed admissions
DEBUG_CREDITS = 999

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DIGITS_RE = re.compile(r"\d+")


class SubscriptionType(str, Enum):
    NONE = "none"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"


def total_entitlement(subscription_type: SubscriptionType) -> int:
    """Weekly allowance for a plan tier. Lifetime is a large finite cap."""
    if subscription_type is SubscriptionType.NONE:
        return 0
    if subscription_type is SubscriptionType.WEEKLY:
        return 15
    if subscription_type is SubscriptionType.MONTHLY:
        return 60
    if subscription_type is SubscriptionType.ANNUAL:
        return 60
    if subscription_type is SubscriptionType.LIFETIME:
        return 9999
    raise ValueError(f"unknown subscription type: {subscription_type!r}")


def subscription_type_for_product(product_id: str) -> SubscriptionType:
    """Map an active entitlement's product identifier to a tier.

    Unrecognized products of an active entitlement count as weekly.
    """
    pid = (product_id or "").strip().lower()
    if "lifetime" in pid:
        return SubscriptionType.LIFETIME
    if "annual" in pid or "yearly" in pid:
        return SubscriptionType.ANNUAL
    if "monthly" in pid:
        return SubscriptionType.MONTHLY
    return SubscriptionType.WEEKLY


@dataclass
class UsageRecord:
    user_id: str
    weekly_used: int = 0
    week_start: datetime = _EPOCH
    purchased_credits: int = 0
    demo_used: bool = False

    # derived from entitlements on every remote fetch, never persisted
    is_subscribed: bool = False
    subscription_type: SubscriptionType = SubscriptionType.NONE
    expires_at: Optional[datetime] = field(default=None)

    def copy(self) -> "UsageRecord":
        return replace(self)


def credits_remaining(record: UsageRecord) -> int:
    purchased = max(0, int(record.purchased_credits))
    if not record.is_subscribed:
        return purchased
    allowance = total_entitlement(record.subscription_type)
    return max(0, allowance - int(record.weekly_used)) + purchased


def credits_total(record: UsageRecord) -> int:
    purchased = max(0, int(record.purchased_credits))
    if not record.is_subscribed:
        return purchased
    return purchased + total_entitlement(record.subscription_type)


def deduct_one(record: UsageRecord) -> None:
    # Subscribers always draw from the weekly pool, even once it is exhausted;
    # purchased credits are only spent by unsubscribed users.
    if record.is_subscribed:
        record.weekly_used = int(record.weekly_used) + 1
    else:
        record.purchased_credits = max(0, int(record.purchased_credits) - 1)


def extract_pack_quantity(product_id: str, default: Optional[int] = None) -> int:
    """First decimal run in a pack product id, e.g. `credits_pack_25` -> 25."""
    fallback = CREDIT_PACK_DEFAULT_QUANTITY if default is None else int(default)
    m = _DIGITS_RE.search(product_id or "")
    if not m:
        return fallback
    return int(m.group(0))
