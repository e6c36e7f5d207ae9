# config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env(*names: str) -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return v
    return ""


def _bool_env(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None: return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _log_level(name: str) -> str:
    level = (_env(name) or "INFO").upper()
    # getLevelName maps known names to ints, anything else to a string
    return level if isinstance(logging.getLevelName(level), int) else "INFO"


@dataclass(frozen=True)
class Settings:
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_api_version: str
    public_base_url: Optional[str]
    cache_url: Optional[str]
    cookie_secure: bool
    log_level: str

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def webhook_configured(self) -> bool:
        return bool(self.stripe_webhook_secret)


def load_settings() -> Settings:
    base_url = _env("PUBLIC_BASE_URL", "NEXT_PUBLIC_SITE_URL").rstrip("/")
    return Settings(
        stripe_secret_key=_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        stripe_api_version=_env("STRIPE_API_VERSION") or "2024-06-20",
        public_base_url=base_url or None,
        # Vercel KV exposes a Redis URL as KV_URL
        cache_url=_env("CACHE_URL", "KV_URL", "REDIS_URL") or None,
        cookie_secure=_bool_env("COOKIE_SECURE", default=True),
        log_level=_log_level("LOG_LEVEL"),
    )


@lru_cache
def get_settings() -> Settings:
    """Settings are read once per process; tests call get_settings.cache_clear()."""
    return load_settings()
