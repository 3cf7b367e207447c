import os

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_mock")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENVIRONMENT", "development")

import hashlib
import hmac
import itertools
import json
import time
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from core.database import get_session
from core.locks import KeyedLock
from core.security import create_access_token
from core.stripe_client import get_stripe_client
from main import app
from models.models import EmployerProfile, Subscription, SubscriptionPlan, User
from schemas.webhook_schema import StripeEvent
from services.stripe_service import StripeService
from services.subscription_store import SubscriptionStore
from services.webhook_dispatcher import WebhookDispatcher

_event_ids = itertools.count(1)


# -------------------------
# Database
# -------------------------
@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def store(session):
    return SubscriptionStore(session)


# -------------------------
# Stripe
# -------------------------
@pytest.fixture()
def fake_stripe():
    """MagicMock standing in for stripe.StripeClient, with canned responses."""
    client = MagicMock(name="FakeStripe")
    client.customers.create.return_value = {"id": "cus_test_123"}
    client.customers.retrieve.return_value = {"id": "cus_test_123"}
    client.checkout.sessions.create.return_value = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
    }
    client.subscriptions.retrieve.side_effect = lambda sub_id, *args, **kwargs: {
        "id": sub_id,
        "customer": "cus_test_123",
        "status": "active",
        "current_period_start": 1700000000,
        "current_period_end": 1702592000,
        "cancel_at_period_end": False,
    }
    client.subscriptions.update.return_value = {"id": "sub_updated"}
    client.subscriptions.cancel.return_value = {"id": "sub_canceled", "status": "canceled"}
    return client


@pytest.fixture()
def service(fake_stripe, store):
    return StripeService(fake_stripe, store)


@pytest.fixture()
def dispatcher(service):
    return WebhookDispatcher(service, locks=KeyedLock())


# -------------------------
# Seed data
# -------------------------
def make_plan(name: str, tier: int, **overrides) -> SubscriptionPlan:
    fields = dict(
        name=name,
        display_name=name.title(),
        price_monthly=49.0 * tier,
        price_yearly=490.0 * tier,
        stripe_price_id_monthly=f"price_{name}_monthly",
        stripe_price_id_yearly=f"price_{name}_yearly",
        stripe_product_id=f"prod_{name}",
        limits={"job_postings": 5 * tier, "team_members": 2 * tier},
        tier=tier,
        sort_order=tier,
    )
    fields.update(overrides)
    return SubscriptionPlan(**fields)


@pytest.fixture()
def plans(session):
    """starter (tier 1), professional (tier 2), enterprise (tier 3) and a second tier 2 plan."""
    catalog = {
        "starter": make_plan("starter", 1),
        "professional": make_plan("professional", 2),
        "enterprise": make_plan("enterprise", 3),
        "team": make_plan("team", 2, sort_order=4),
    }
    for plan in catalog.values():
        session.add(plan)
    session.commit()
    for plan in catalog.values():
        session.refresh(plan)
    return catalog


@pytest.fixture()
def user(session):
    user = User(email="employer@example.com", first_name="Ada", last_name="Employer")
    session.add(user)
    session.commit()
    session.refresh(user)

    session.add(EmployerProfile(user_id=user.id, company_name="Acme Hiring"))
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture()
def make_subscription(session, user, plans):
    def _make(stripe_id: str = "sub_test_1", plan: str = "starter", **overrides) -> Subscription:
        fields = dict(
            user_id=user.id,
            subscription_plan_id=plans[plan].id,
            stripe_subscription_id=stripe_id,
            stripe_customer_id="cus_test_123",
            status="active",
            billing_cycle="monthly",
        )
        fields.update(overrides)
        subscription = Subscription(**fields)
        session.add(subscription)
        session.commit()
        session.refresh(subscription)
        return subscription

    return _make


# -------------------------
# Events
# -------------------------
def make_event(event_type: str, obj: dict, created: int = 1700000000, event_id: str = None) -> StripeEvent:
    return StripeEvent(
        id=event_id or f"evt_test_{next(_event_ids)}",
        type=event_type,
        created=created,
        data={"object": obj},
    )


def sign_payload(payload: str, secret: str, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does (HMAC-SHA256 over 't.payload')."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_payload(event_type: str, obj: dict, event_id: str = "evt_http_1", created: int = 1700000000) -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    })


# -------------------------
# HTTP
# -------------------------
@pytest.fixture()
def client(session, fake_stripe):
    def _get_session():
        yield session

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_stripe_client] = lambda: fake_stripe
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers(user):
    token = create_access_token({"sub": user.email, "user_id": user.id})
    return {"Authorization": f"Bearer {token}"}
