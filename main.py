# main.py
# ---------------------------------------------------------
# NOVAMARK ACCESS GATE: CHECKOUT + WEBHOOK + ACCESS CHECKS
# ---------------------------------------------------------
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

import auth
import billing
from config import Settings, get_settings
from errors import AccessGateError
from membership import denied_payload
from subscription_cache import SubscriptionCache, get_subscription_cache

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="NovaMark Access Gate")


@app.on_event("startup")
def _startup():
    # Pick the cache backend once per process
    cache = get_subscription_cache()
    settings = get_settings()
    if not settings.stripe_configured:
        logger.warning(billing.MISSING_KEY_MESSAGE)
    logger.info("startup: cache=%s webhook_configured=%s", cache.backend, settings.webhook_configured)


@app.exception_handler(AccessGateError)
async def _access_gate_error(request: Request, exc: AccessGateError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def _json_body(request: Request) -> Dict[str, Any]:
    try: payload = await request.json()
    except Exception: payload = {}
    return payload if isinstance(payload, dict) else {}

# -------------------------------------------------------------------
# BILLING & STRIPE INTEGRATION
# -------------------------------------------------------------------
@app.post("/api/create-checkout")
async def create_checkout(request: Request, settings: Settings = Depends(get_settings)):
    payload = await _json_body(request)
    billing.configure_stripe(settings)
    site_url = billing.resolve_site_url(settings, request.headers)
    url = await asyncio.to_thread(billing.create_checkout_session, payload.get("plan"), site_url)
    return {"url": url}


@app.post("/api/link-session")
async def link_session(
    request: Request,
    settings: Settings = Depends(get_settings),
    cache: SubscriptionCache = Depends(get_subscription_cache),
):
    payload = await _json_body(request)
    billing.configure_stripe(settings)
    customer_id, state = await asyncio.to_thread(billing.link_checkout_session, payload.get("session_id"), cache)

    response = JSONResponse({"ok": True, "customerId": customer_id, "sub": state.to_record() if state else None})
    auth.set_customer_cookie(response, customer_id, secure=settings.cookie_secure)
    return response


@app.post("/api/stripe-webhook")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    cache: SubscriptionCache = Depends(get_subscription_cache),
):
    # Signature is computed over the exact bytes Stripe sent
    payload = await request.body()
    sig = request.headers.get("stripe-signature")
    try:
        return await asyncio.to_thread(billing.handle_webhook, payload, sig, settings, cache)
    except AccessGateError:
        raise
    except Exception as e:
        # 5xx makes Stripe redeliver
        logger.exception("stripe-webhook handler failed")
        raise HTTPException(status_code=500, detail=str(e) or "Webhook handler failed")


# -------------------------------------------------------------------
# ACCESS CHECKS (never fails: any fault is a denial)
# -------------------------------------------------------------------
@app.api_route("/api/check-access", methods=["GET", "POST", "HEAD"])
def check_access(
    request: Request,
    settings: Settings = Depends(get_settings),
    cache: SubscriptionCache = Depends(get_subscription_cache),
):
    try:
        body = billing.check_access(auth.get_customer_id(request), cache, settings)
    except Exception:
        logger.exception("check-access failed, denying")
        body = denied_payload()
    return JSONResponse(body, headers={"Cache-Control": "no-store"})


@app.get("/api/health")
def health(
    settings: Settings = Depends(get_settings),
    cache: SubscriptionCache = Depends(get_subscription_cache),
):
    return {
        "ok": True,
        "stripeConfigured": settings.stripe_configured,
        "webhookConfigured": settings.webhook_configured,
        "cache": cache.backend,
    }
