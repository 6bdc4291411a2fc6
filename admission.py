# admission.py
# Server-authoritative admission for credit-consuming actions.
#
#   check(uid)  -> granted (normal) | granted (demo) | denied
#   commit(uid, was_demo) only after the downstream action succeeded:
#     demo   -> demo_used = True
#     normal -> one unit off (weekly pool for subscribers, purchased pool otherwise)
#   commit never raises once the action succeeded: if RevenueCat is unreachable it
#   debits the record resolved at check time, or drops the debit with a warning.
#
# The ledger's per-user RLocks serialize read-decide-write inside this process.
# RevenueCat attributes have no compare-and-swap, so races across processes remain possible.
#
# DEBUG_MODE=true bypasses every check (no ledger reads or writes).

import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple, TypeVar

from credits import DEBUG_CREDITS, UsageRecord, credits_remaining, deduct_one
from revenuecat import LedgerUnavailable
from usage_ledger import UsageLedger

log = logging.getLogger("admission")

DEBUG_MODE = os.getenv("DEBUG_MODE", "false").strip().lower() in ("1", "true", "yes")

T = TypeVar("T")


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    is_demo: bool
    credits_remaining: int
    requires_subscription: bool = False
    bypass: bool = False


class AdmissionController:
    def __init__(self, ledger: UsageLedger, debug_bypass: bool = DEBUG_MODE):
        self.ledger = ledger
        self.debug_bypass = debug_bypass

    @contextmanager
    def session(self, user_id: str) -> Iterator[None]:
        """Hold the user's lock across check -> action -> commit."""
        with self.ledger.lock(user_id):
            yield

    def check(self, user_id: Optional[str]) -> AdmissionDecision:
        """Raises ValueError (no user id) or LedgerUnavailable."""
        if self.debug_bypass:
            log.warning("[ADMIT] DEBUG_MODE bypass uid=%s", user_id or "-")
            return AdmissionDecision(allowed=True, is_demo=False, credits_remaining=DEBUG_CREDITS, bypass=True)

        uid = (user_id or "").strip()
        if not uid:
            raise ValueError("missing user id")
        return self._evaluate(uid)[0]

    def _evaluate(self, uid: str) -> Tuple[AdmissionDecision, UsageRecord]:
        with self.ledger.lock(uid):
            record = self.ledger.load(uid)
            remaining = credits_remaining(record)

        if remaining > 0:
            decision = AdmissionDecision(allowed=True, is_demo=False, credits_remaining=remaining)
        elif not record.demo_used:
            decision = AdmissionDecision(allowed=True, is_demo=True, credits_remaining=0)
        else:
            decision = AdmissionDecision(
                allowed=False,
                is_demo=False,
                credits_remaining=0,
                requires_subscription=True,
            )

        log.info(
            "[ADMIT] uid=%s allowed=%s demo=%s remaining=%s subscribed=%s type=%s",
            uid,
            decision.allowed,
            decision.is_demo,
            decision.credits_remaining,
            record.is_subscribed,
            record.subscription_type.value,
        )
        return decision, record

    def commit(self, user_id: Optional[str], was_demo: bool, fallback: Optional[UsageRecord] = None) -> int:
        """Apply the debit for a succeeded action. Returns credits remaining.

        Re-reads the record under the user's lock. If that read fails, `fallback`
        (the record seen at check time) is debited instead; without one the debit
        is dropped and logged.
        """
        if self.debug_bypass:
            return DEBUG_CREDITS

        uid = (user_id or "").strip()
        if not uid:
            raise ValueError("missing user id")

        with self.ledger.lock(uid):
            try:
                record = self.ledger.load(uid)
            except LedgerUnavailable as e:
                if fallback is None:
                    log.error("[COMMIT] uid=%s demo=%s debit dropped, ledger unavailable: %s", uid, was_demo, e)
                    return 0
                log.warning("[COMMIT] uid=%s reload failed, debiting admission snapshot: %s", uid, e)
                record = fallback.copy()

            before = (record.weekly_used, record.purchased_credits)
            if was_demo:
                record.demo_used = True
            else:
                deduct_one(record)
            persisted = self.ledger.save(uid, record)
            remaining = credits_remaining(record)

        log.info(
            "[COMMIT] uid=%s demo=%s weekly_used %s->%s purchased %s->%s remaining=%s persisted=%s",
            uid,
            was_demo,
            before[0],
            record.weekly_used,
            before[1],
            record.purchased_credits,
            remaining,
            persisted,
        )
        return remaining

    def run(self, user_id: Optional[str], action: Callable[[], T]) -> Tuple[AdmissionDecision, Optional[T]]:
        """check -> action -> commit under the user's lock.

        Denied: (decision, None), action not called. If the action raises, nothing
        is committed and the exception propagates. Granted: the returned decision
        carries the post-debit balance. Only the check can raise LedgerUnavailable.
        """
        if self.debug_bypass:
            return self.check(user_id), action()

        uid = (user_id or "").strip()
        if not uid:
            raise ValueError("missing user id")

        with self.session(uid):
            decision, record = self._evaluate(uid)
            if not decision.allowed:
                return decision, None
            result = action()
            remaining = self.commit(uid, decision.is_demo, fallback=record)

        return (
            AdmissionDecision(allowed=True, is_demo=decision.is_demo, credits_remaining=remaining),
            result,
        )
