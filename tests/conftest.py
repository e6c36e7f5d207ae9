import hashlib
import hmac
import json
import os
import sys
import time
from dataclasses import replace
from pathlib import Path

import pytest
import stripe

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ['STRIPE_SECRET_KEY'] = 'sk_test_123'
os.environ['STRIPE_WEBHOOK_SECRET'] = 'whsec_test_123'
os.environ['LOG_LEVEL'] = 'DEBUG'
for name in ('CACHE_URL', 'KV_URL', 'REDIS_URL', 'PUBLIC_BASE_URL', 'NEXT_PUBLIC_SITE_URL'):
    os.environ.pop(name, None)

from config import get_settings, load_settings  # noqa: E402
from subscription_cache import CacheStore, NullCacheStore, SubscriptionCache, get_subscription_cache  # noqa: E402

WEBHOOK_SECRET = 'whsec_test_123'
DAY = 24 * 60 * 60


class MemoryCacheStore(CacheStore):
    """Keeps values as JSON text, the way a KV service returns them."""

    name = 'memory'

    def __init__(self):
        self.data = {}
        self.writes = 0

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.writes += 1
        self.data[key] = json.dumps(value)


class RaisingStore(NullCacheStore):
    """Backend whose every call fails, like an unreachable KV service."""

    name = 'broken'

    def get(self, key):
        raise ConnectionError('kv down')

    def set(self, key, value):
        raise ConnectionError('kv down')


class FakeStripe:
    """In-memory stand-in for the Stripe resources the app touches."""

    def __init__(self):
        self.products = []
        self.prices = []
        self.subscriptions = []
        self.sessions = {}
        self.checkout_calls = []
        self.idempotency_keys = []
        self.subscription_list_error = None

    # products / prices
    def product_list(self, **params):
        return {'data': [p for p in self.products if p['active']]}

    def product_create(self, idempotency_key=None, **params):
        self.idempotency_keys.append(idempotency_key)
        product = {
            'id': f'prod_{len(self.products) + 1}',
            'active': True,
            'name': params['name'],
            'metadata': params.get('metadata', {}),
        }
        self.products.append(product)
        return product

    def price_list(self, product=None, active=None, limit=None):
        return {'data': [p for p in self.prices if p['product'] == product and p['active']]}

    def price_create(self, idempotency_key=None, **params):
        self.idempotency_keys.append(idempotency_key)
        price = dict(params, id=f'price_{len(self.prices) + 1}', active=True)
        self.prices.append(price)
        return price

    # checkout
    def session_create(self, **params):
        self.checkout_calls.append(params)
        session_id = f'cs_test_{len(self.checkout_calls)}'
        return {'id': session_id, 'url': f'https://checkout.stripe.test/{session_id}'}

    def session_retrieve(self, session_id, **params):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", 'id')
        return self.sessions[session_id]

    # subscriptions
    def add_subscription(self, sub_id, customer, status, period_end=None, trial_end=None):
        sub = {
            'id': sub_id,
            'object': 'subscription',
            'customer': customer,
            'status': status,
            'current_period_end': period_end,
            'trial_end': trial_end,
        }
        self.subscriptions.append(sub)
        return sub

    def subscription_list(self, customer=None, status=None, limit=10):
        if self.subscription_list_error:
            raise self.subscription_list_error
        return {'data': [s for s in self.subscriptions if s['customer'] == customer][:limit]}

    def subscription_retrieve(self, sub_id, **params):
        for sub in self.subscriptions:
            if sub['id'] == sub_id:
                return sub
        raise stripe.InvalidRequestError(f"No such subscription: '{sub_id}'", 'id')


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe.Product, 'list', fake.product_list)
    monkeypatch.setattr(stripe.Product, 'create', fake.product_create)
    monkeypatch.setattr(stripe.Price, 'list', fake.price_list)
    monkeypatch.setattr(stripe.Price, 'create', fake.price_create)
    monkeypatch.setattr(stripe.checkout.Session, 'create', fake.session_create)
    monkeypatch.setattr(stripe.checkout.Session, 'retrieve', fake.session_retrieve)
    monkeypatch.setattr(stripe.Subscription, 'list', fake.subscription_list)
    monkeypatch.setattr(stripe.Subscription, 'retrieve', fake.subscription_retrieve)
    return fake


@pytest.fixture
def store():
    return MemoryCacheStore()


@pytest.fixture
def cache(store):
    return SubscriptionCache(store)


@pytest.fixture
def settings():
    return replace(load_settings(), public_base_url='https://novamark.test')


@pytest.fixture
def client(settings, cache):
    from fastapi.testclient import TestClient

    from main import app

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_subscription_cache] = lambda: cache
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f'{timestamp}.'.encode() + payload
    mac = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={mac}'


def future(days: int = 30) -> int:
    return int(time.time()) + days * DAY


def past(days: int = 30) -> int:
    return int(time.time()) - days * DAY
