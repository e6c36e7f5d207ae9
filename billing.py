# billing.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

import stripe

from config import Settings
from errors import (
    ClientInputError,
    MisconfigurationError,
    SignatureVerificationFailure,
    UpstreamUnavailable,
)
from membership import (
    ACTIVE_STATUSES,
    Lookup,
    SubscriptionState,
    access_payload,
    normalize_subscription,
    object_id,
    stripe_field,
)
from plans import CURRENCY, INTERVAL, PRODUCT_NAME, PRODUCT_SLUG, Plan, get_plan
from subscription_cache import SubscriptionCache

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = (
    "Missing STRIPE_SECRET_KEY. Add it to the deployment's environment variables "
    "(e.g. Vercel -> Project -> Settings -> Environment Variables)."
)
SUBSCRIPTION_SCAN_LIMIT = 10
SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.paused",
    "customer.subscription.resumed",
)


def configure_stripe(settings: Settings) -> None:
    """
    Points the SDK at the configured key.
    Raises MisconfigurationError when no key is set.
    """
    if not settings.stripe_configured:
        raise MisconfigurationError(MISSING_KEY_MESSAGE)
    stripe.api_key = settings.stripe_secret_key
    stripe.api_version = settings.stripe_api_version


def resolve_site_url(settings: Settings, headers: Mapping[str, str]) -> Optional[str]:
    """Explicit base URL wins; otherwise rebuild it from the proxy headers."""
    if settings.public_base_url:
        return settings.public_base_url
    host = (headers.get("x-forwarded-host") or headers.get("host") or "").strip()
    if not host:
        return None
    proto = (headers.get("x-forwarded-proto") or "https").split(",")[0].strip()
    return f"{proto}://{host}"


def _data(listing: Any) -> list:
    return list(stripe_field(listing, "data") or [])


# ---------------------------------------------------------
# CATALOG PROVISIONING
# ---------------------------------------------------------
def ensure_product():
    """Finds the product by metadata slug, then by name; creates it once."""
    products = _data(stripe.Product.list(limit=100, active=True))
    found = next(
        (p for p in products if (stripe_field(p, "metadata") or {}).get("slug") == PRODUCT_SLUG),
        None,
    ) or next((p for p in products if stripe_field(p, "name") == PRODUCT_NAME), None)
    if found:
        return found

    product = stripe.Product.create(
        name=PRODUCT_NAME,
        metadata={"slug": PRODUCT_SLUG},
        idempotency_key=f"product-{PRODUCT_SLUG}",
    )
    logger.info("created Stripe product %s", object_id(product))
    return product


def _price_matches(price: Any, plan: Plan) -> bool:
    recurring = stripe_field(price, "recurring") or {}
    return (
        stripe_field(price, "lookup_key") == plan.lookup_key
        and stripe_field(recurring, "interval") == INTERVAL
        and stripe_field(price, "currency") == CURRENCY
    )


def ensure_price(product_id: str, plan: Plan):
    prices = _data(stripe.Price.list(product=product_id, active=True, limit=100))
    existing = next((p for p in prices if _price_matches(p, plan)), None)
    if existing:
        return existing

    price = stripe.Price.create(
        product=product_id,
        currency=CURRENCY,
        unit_amount=plan.amount,
        recurring={"interval": INTERVAL},
        lookup_key=plan.lookup_key,
        nickname=plan.nickname,
        idempotency_key=f"price-{plan.lookup_key}",
    )
    logger.info("created Stripe price %s for plan %s", object_id(price), plan.key)
    return price


# ---------------------------------------------------------
# CHECKOUT & PORTAL
# ---------------------------------------------------------
def create_checkout_session(plan_key: Any, site_url: Optional[str]) -> str:
    """
    Provisions the plan's price if needed and opens a subscription-mode
    Checkout session. Returns the hosted checkout URL.
    """
    plan = get_plan(plan_key)
    if plan is None:
        raise ClientInputError("Unknown plan")
    if not site_url:
        raise UpstreamUnavailable("Unable to resolve site URL")

    try:
        product = ensure_product()
        price = ensure_price(object_id(product), plan)

        checkout_args: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": object_id(price), "quantity": 1}],
            "success_url": f"{site_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{site_url}/#pricing",
            "allow_promotion_codes": True,
        }
        if plan.trial_days > 0:
            checkout_args["subscription_data"] = {"trial_period_days": plan.trial_days}

        sess = stripe.checkout.Session.create(**checkout_args)
    except stripe.StripeError as e:
        logger.exception("checkout session for plan %s failed", plan.key)
        raise UpstreamUnavailable(e.user_message or str(e) or "Stripe error") from e
    return stripe_field(sess, "url")


# ---------------------------------------------------------
# SUBSCRIPTION STATE
# ---------------------------------------------------------
def upsert_subscription(sub: Any, cache: SubscriptionCache) -> Optional[SubscriptionState]:
    """
    Normalizes a Stripe subscription and writes it to the cache.
    Returns None (and writes nothing) when the object names no customer.
    """
    customer_id, state = normalize_subscription(sub)
    if not customer_id:
        logger.warning("subscription %s has no customer, skipping", object_id(sub))
        return None
    cache.write(customer_id, state)
    return state


def pick_subscription(subscriptions: list):
    """Prefer an active/trialing subscription, else the most recent one."""
    if not subscriptions:
        return None
    return next(
        (s for s in subscriptions if stripe_field(s, "status") in ACTIVE_STATUSES),
        subscriptions[0],
    )


def fetch_subscription_state(customer_id: str, cache: SubscriptionCache, settings: Settings) -> Lookup:
    """
    Reads the customer's subscriptions straight from Stripe and writes the
    preferred one back into the cache. Never raises.
    """
    if not settings.stripe_configured:
        return Lookup.absent()
    try:
        configure_stripe(settings)
        subs = _data(stripe.Subscription.list(customer=customer_id, status="all", limit=SUBSCRIPTION_SCAN_LIMIT))
    except stripe.StripeError as e:
        logger.warning("subscription lookup for %s failed: %s", customer_id, e)
        return Lookup.failed(str(e))

    preferred = pick_subscription(subs)
    if preferred is None:
        return Lookup.absent()
    _, state = normalize_subscription(preferred)
    cache.write(customer_id, state)
    return Lookup.found(state)


def check_access(customer_id: Optional[str], cache: SubscriptionCache, settings: Settings,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
    """Cache first, Stripe on a miss; anything not found is a denial."""
    now = now or datetime.now(timezone.utc)
    if not customer_id:
        return access_payload(None, now)

    lookup = cache.read(customer_id)
    if not lookup.is_found:
        lookup = fetch_subscription_state(customer_id, cache, settings)
    return access_payload(lookup.state if lookup.is_found else None, now)


# ---------------------------------------------------------
# SESSION LINKING
# ---------------------------------------------------------
def link_checkout_session(session_id: Any, cache: SubscriptionCache) -> Tuple[str, Optional[SubscriptionState]]:
    """
    Resolves a completed Checkout session to its customer and caches the
    exact subscription that checkout created, when there is one.
    """
    if not isinstance(session_id, str) or not session_id.strip():
        raise ClientInputError("Missing session_id")

    try:
        session = stripe.checkout.Session.retrieve(session_id.strip())
    except stripe.InvalidRequestError as e:
        logger.info("unknown checkout session %s: %s", session_id, e)
        raise ClientInputError("Invalid session") from e
    except stripe.StripeError as e:
        logger.exception("checkout session %s lookup failed", session_id)
        raise UpstreamUnavailable(e.user_message or str(e) or "Link failed") from e

    customer_id = object_id(stripe_field(session, "customer"))
    if not customer_id:
        raise ClientInputError("Invalid session")

    state = None
    sub_id = object_id(stripe_field(session, "subscription"))
    if sub_id:
        try:
            sub = stripe.Subscription.retrieve(sub_id)
        except stripe.StripeError as e:
            # the cookie is still worth setting; the webhook or a later check fills the cache
            logger.warning("subscription %s for session %s unavailable: %s", sub_id, session_id, e)
        else:
            _, state = normalize_subscription(sub)
            cache.write(customer_id, state)
    return customer_id, state


# ---------------------------------------------------------
# WEBHOOKS
# ---------------------------------------------------------
def verify_event(payload: bytes, sig_header: Optional[str], secret: str):
    """Checks the signature against the raw body and returns the parsed event."""
    if not sig_header:
        raise SignatureVerificationFailure("Missing stripe-signature header")
    try:
        return stripe.Webhook.construct_event(payload, sig_header, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise SignatureVerificationFailure(f"Webhook Error: {e}") from e


def dispatch_event(event: Any, cache: SubscriptionCache) -> None:
    event_type = stripe_field(event, "type")
    data = stripe_field(stripe_field(event, "data"), "object")

    if event_type == "checkout.session.completed":
        sub_id = object_id(stripe_field(data, "subscription"))
        if not sub_id:
            return
        try:
            sub = stripe.Subscription.retrieve(sub_id)
        except stripe.StripeError as e:
            logger.warning("subscription %s from checkout unavailable: %s", sub_id, e)
            return
        upsert_subscription(sub, cache)

    elif event_type in SUBSCRIPTION_EVENTS:
        upsert_subscription(data, cache)

    else:
        logger.debug("ignoring Stripe event %s", event_type)


def handle_webhook(payload: bytes, sig_header: Optional[str], settings: Settings,
                   cache: SubscriptionCache) -> Dict[str, Any]:
    """
    Processes signals from Stripe. Without a configured signing secret the
    call is accepted and dropped.
    """
    configure_stripe(settings)
    if not settings.webhook_configured:
        return {"ok": True, "note": "No STRIPE_WEBHOOK_SECRET set"}

    event = verify_event(payload, sig_header, settings.stripe_webhook_secret)
    dispatch_event(event, cache)
    return {"received": True}
