# billing.py
# Credits HTTP surface.
#
#   GET  /credits                 (alias /billing/credits)
#        user id: X-User-Id header, or ?user_id= / ?userId=
#        any internal failure -> safe zero-credit default (never fabricates credits)
#   POST /webhooks/revenuecat     (alias /billing/webhook/revenuecat)
#        Authorization header must match REVENUECAT_WEBHOOK_AUTH
#        always 200 once authenticated
#
# guard_consuming_action() wraps admission check -> action -> commit for the
# generation endpoints: 403 + requiresSubscription when out of credits, 503 when
# RevenueCat is unreachable.

import os
import uuid
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from admission import AdmissionController
from credits import credits_remaining, credits_total
from revenuecat import LedgerUnavailable, RevenueCatLedger
from usage_cache import UsageCache
from usage_ledger import UsageLedger
from webhook import (
    REVENUECAT_WEBHOOK_AUTH,
    WebhookMisconfigured,
    WebhookReconciler,
    WebhookUnauthenticated,
    authenticate,
    parse_event,
)
from week_policy import next_week_start

router = APIRouter(tags=["credits"])

# -----------------------------
# Logging
# -----------------------------
LOG_LEVEL = os.getenv("BILLING_LOG_LEVEL", "INFO").upper()
log = logging.getLogger("billing")
log.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

# -----------------------------
# Engine (built once per process)
# -----------------------------
cache = UsageCache()
ledger = UsageLedger(RevenueCatLedger(), cache)
controller = AdmissionController(ledger)
reconciler = WebhookReconciler(ledger)


def _rid(req: Request) -> str:
    return req.headers.get("x-request-id") or str(uuid.uuid4())


def _user_id(req: Request, user_id: str = "") -> str:
    return (
        (req.headers.get("x-user-id") or "").strip()
        or (user_id or "").strip()
        or (req.query_params.get("user_id") or "").strip()
        or (req.query_params.get("userId") or "").strip()
    )


def _iso(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class CreditsResponse(BaseModel):
    creditsRemaining: int = 0
    creditsTotal: int = 0
    subscriptionStatus: str = "none"
    subscriptionType: Optional[str] = None
    resetsAt: Optional[str] = None
    demoUsed: bool = False


SAFE_CREDITS = CreditsResponse()


def credits_snapshot(user_id: str) -> CreditsResponse:
    record = ledger.load(user_id)
    subscribed = bool(record.is_subscribed)
    return CreditsResponse(
        creditsRemaining=credits_remaining(record),
        creditsTotal=credits_total(record),
        subscriptionStatus="active" if subscribed else "none",
        subscriptionType=record.subscription_type.value if subscribed else None,
        resetsAt=_iso(next_week_start(ledger.now())) if subscribed else None,
        demoUsed=bool(record.demo_used),
    )


# -----------------------------
# Routes
# -----------------------------
@router.get("/credits", response_model=CreditsResponse)
def get_credits(req: Request, user_id: str = ""):
    rid = _rid(req)
    uid = _user_id(req, user_id)
    if not uid:
        return JSONResponse({"ok": False, "error": "missing_user_id"}, status_code=400)

    try:
        snap = credits_snapshot(uid)
    except Exception as e:
        log.warning("[CREDITS][%s] uid=%s failed -> safe default: %s", rid, uid, e)
        return SAFE_CREDITS

    log.info(
        "[CREDITS][%s] uid=%s remaining=%s total=%s status=%s type=%s demo_used=%s",
        rid,
        uid,
        snap.creditsRemaining,
        snap.creditsTotal,
        snap.subscriptionStatus,
        snap.subscriptionType,
        snap.demoUsed,
    )
    return snap


@router.get("/billing/credits", response_model=CreditsResponse)
def billing_credits(req: Request, user_id: str = ""):
    return get_credits(req, user_id=user_id)


@router.post("/webhooks/revenuecat")
async def revenuecat_webhook(req: Request):
    rid = _rid(req)

    try:
        authenticate(req.headers.get("authorization"), secret=REVENUECAT_WEBHOOK_AUTH)
    except WebhookMisconfigured:
        log.error("[RC][%s] REVENUECAT_WEBHOOK_AUTH not configured", rid)
        return JSONResponse({"ok": False, "error": "webhook_misconfigured"}, status_code=500)
    except WebhookUnauthenticated:
        log.warning("[RC][%s] unauthorized", rid)
        return JSONResponse({"ok": False, "error": "unauthorized"}, status_code=401)

    try:
        body = await req.json()
    except Exception:
        body = {}

    event = parse_event(body)
    log.info("[RC][%s] recv type=%s uid=%s product=%s", rid, event.type or "-", event.app_user_id or "-",
             event.product_id or "-")

    # handle() swallows its own errors; ledger I/O is blocking
    outcome = await run_in_threadpool(reconciler.handle, event)
    log.info("[RC][%s] done outcome=%s", rid, outcome)
    return {"ok": True}


@router.post("/billing/webhook/revenuecat")
async def billing_revenuecat_webhook(req: Request):
    return await revenuecat_webhook(req)


# -----------------------------
# Guard for credit-consuming endpoints
# -----------------------------
def _denied(decision) -> JSONResponse:
    return JSONResponse(
        {
            "success": False,
            "error": "No credits remaining",
            "creditsRemaining": 0,
            "requiresSubscription": bool(decision.requires_subscription),
        },
        status_code=403,
    )


def guard_consuming_action(req: Request, action: Callable[[], Any], user_id: str = ""):
    """Run `action` only if the user may spend a credit; debit once on success.

    Call from a sync endpoint (threadpool). An exception from `action` propagates
    without touching the ledger.
    """
    rid = _rid(req)
    uid = _user_id(req, user_id)
    if not uid and not controller.debug_bypass:
        return JSONResponse({"success": False, "error": "missing_user_id"}, status_code=400)

    try:
        decision, result = controller.run(uid, action)
    except LedgerUnavailable as e:
        log.error("[GUARD][%s] uid=%s ledger unavailable: %s", rid, uid, e)
        return JSONResponse({"success": False, "error": "ledger_unavailable"}, status_code=503)

    if not decision.allowed:
        log.info("[GUARD][%s] uid=%s denied requires_subscription=%s", rid, uid, decision.requires_subscription)
        return _denied(decision)

    out: Dict[str, Any] = dict(result) if isinstance(result, dict) else {"result": result}
    out.setdefault("success", True)
    out["creditsRemaining"] = decision.credits_remaining
    out["isDemo"] = decision.is_demo
    return out
