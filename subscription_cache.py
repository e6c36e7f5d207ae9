"""Subscription-state cache.

A derived, disposable projection of Stripe subscription state keyed by
customer id. The backend is picked once from ``CACHE_URL`` (or ``KV_URL`` /
``REDIS_URL``); with nothing configured a null store is used, so call sites
never check for the cache's presence.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Optional

import redis

from config import get_settings
from database import CacheEntryModel, init_db, make_engine, make_session_factory
from membership import Lookup, SubscriptionState

logger = logging.getLogger(__name__)

KEY_PREFIX = "sub:customer:"


def cache_key(customer_id: str) -> str:
    return f"{KEY_PREFIX}{customer_id}"


# ---------------------------------------------------------
# STORES
# ---------------------------------------------------------
class CacheStore(ABC):
    """Raw key-value backend. Methods may raise; SubscriptionCache absorbs it."""

    name = "abstract"

    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the stored value (str, bytes or mapping) or None."""

    @abstractmethod
    def set(self, key: str, value: dict) -> None:
        """Create or overwrite ``key``."""


class NullCacheStore(CacheStore):
    name = "none"

    def get(self, key: str) -> Any:
        return None

    def set(self, key: str, value: dict) -> None:
        return None


class RedisCacheStore(CacheStore):
    name = "redis"

    def __init__(self, url: str = None, client=None):
        if client is None:
            client = redis.Redis.from_url(url, decode_responses=True)
        self._client = client

    def get(self, key: str) -> Any:
        return self._client.get(key)

    def set(self, key: str, value: dict) -> None:
        self._client.set(key, json.dumps(value))


class SqlCacheStore(CacheStore):
    name = "sql"

    def __init__(self, url: str):
        self._engine = make_engine(url)
        init_db(self._engine)
        self._sessions = make_session_factory(self._engine)

    def get(self, key: str) -> Any:
        db = self._sessions()
        try:
            row = db.get(CacheEntryModel, key)
            return row.value if row else None
        finally:
            db.close()

    def set(self, key: str, value: dict) -> None:
        db = self._sessions()
        try:
            db.merge(CacheEntryModel(key=key, value=json.dumps(value)))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def build_cache_store(url: Optional[str]) -> CacheStore:
    if not url:
        return NullCacheStore()
    scheme = url.split(":", 1)[0].lower()
    if scheme in ("redis", "rediss", "unix"):
        return RedisCacheStore(url)
    return SqlCacheStore(url)


# ---------------------------------------------------------
# SERVICE
# ---------------------------------------------------------
def _decode(raw: Any) -> Any:
    # KV clients hand back either the JSON text or the decoded object
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


class SubscriptionCache:
    def __init__(self, store: CacheStore):
        self.store = store

    @property
    def backend(self) -> str:
        return self.store.name

    def read(self, customer_id: str) -> Lookup:
        try:
            raw = self.store.get(cache_key(customer_id))
        except Exception as e:
            logger.warning("cache read failed for %s: %s", customer_id, e)
            return Lookup.failed(str(e))
        if raw is None:
            return Lookup.absent()
        try:
            state = SubscriptionState.from_record(_decode(raw))
        except ValueError:
            state = None
        if state is None:
            logger.warning("ignoring malformed cache entry for %s", customer_id)
            return Lookup.absent()
        return Lookup.found(state)

    def write(self, customer_id: str, state: SubscriptionState) -> bool:
        """Best-effort upsert; False when the backend refused it."""
        try:
            self.store.set(cache_key(customer_id), state.to_record())
        except Exception as e:
            logger.warning("cache write failed for %s: %s", customer_id, e)
            return False
        logger.info("cached subscription state for %s (status=%s)", customer_id, state.status)
        return True


@lru_cache
def get_subscription_cache() -> SubscriptionCache:
    try:
        store = build_cache_store(get_settings().cache_url)
    except Exception:
        logger.exception("cache backend unavailable, continuing without cache")
        store = NullCacheStore()
    logger.info("subscription cache backend: %s", store.name)
    return SubscriptionCache(store)
