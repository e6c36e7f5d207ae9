# auth.py
# Binds an anonymous browser to a Stripe customer id via a long-lived cookie.
from typing import Optional
from urllib.parse import unquote

from fastapi import Request, Response

COOKIE_NAME = "stripe_cid"
COOKIE_MAX_AGE = 60 * 60 * 24 * 365  # 1 year


def get_customer_id(request: Request) -> Optional[str]:
    raw = request.cookies.get(COOKIE_NAME)
    if not raw:
        return None
    raw = unquote(raw).strip()
    return raw or None


def set_customer_cookie(response: Response, customer_id: str, secure: bool = True) -> None:
    response.set_cookie(
        key=COOKIE_NAME,
        value=customer_id,
        max_age=COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        samesite="lax",
        secure=secure,
    )
