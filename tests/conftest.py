import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PRICE_ID_MONTHLY", "price_monthly_test")
os.environ.setdefault("ENVIRONMENT", "test")

from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from core.config import Settings
from core.database import create_db_and_tables, create_db_engine
from core.errors import ExternalServiceError
from core.security import create_token_for_user
from main import create_app
from models.models import BillingInterval, SubscriptionState, SubscriptionTier, User, utcnow
from services.billing_provider import (
    PriceInfo,
    ProviderCheckoutSession,
    ProviderSubscription,
    StripeBillingClient,
)
from services.caption_generator import GeneratedCaption
from services.rate_limiter import InMemoryCache
from services.subscription_state import SubscriptionStateService
from services.usage_ledger import UsageLedger

WEBHOOK_SECRET = "whsec_test_secret"


# ---------------------------
# Fakes
# ---------------------------
class FakeBillingProvider:
    """In-memory stand-in for Stripe. Webhook verification is the real one."""

    webhook_secret = WEBHOOK_SECRET
    webhook_tolerance = 300
    construct_events = StripeBillingClient.construct_events

    def __init__(self):
        self.checkout_sessions: Dict[str, ProviderCheckoutSession] = {}
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.created_sessions: List[Dict[str, Any]] = []
        self.canceled: List[str] = []
        self.fail_cancel = False
        self.price: Optional[PriceInfo] = None

    def create_checkout_session(self, **kwargs) -> ProviderCheckoutSession:
        self.created_sessions.append(kwargs)
        checkout = ProviderCheckoutSession(
            id=f"cs_test_{len(self.created_sessions)}",
            url=f"https://checkout.stripe.test/{len(self.created_sessions)}",
            status="open",
            payment_status="unpaid",
            user_id=kwargs["user_id"],
            customer_id=kwargs.get("customer_id"),
            subscription_id=None,
            subscription=None,
            created=utcnow(),
        )
        self.checkout_sessions[checkout.id] = checkout
        return checkout

    def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession:
        if session_id not in self.checkout_sessions:
            raise ExternalServiceError("Checkout session not found or unavailable", service="stripe")
        return self.checkout_sessions[session_id]

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        if subscription_id not in self.subscriptions:
            raise ExternalServiceError("Failed to retrieve subscription", service="stripe")
        return self.subscriptions[subscription_id]

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        if self.fail_cancel:
            raise ExternalServiceError("Failed to cancel subscription", service="stripe")
        self.canceled.append(subscription_id)
        return ProviderSubscription(id=subscription_id, status="canceled")

    def get_price(self, interval: BillingInterval) -> PriceInfo:
        if self.price is None:
            raise ExternalServiceError("Failed to retrieve price", service="stripe")
        return self.price

    # Test helpers
    def add_paid_session(
        self,
        session_id: str,
        user_id: int,
        subscription: ProviderSubscription,
        *,
        payment_status: str = "paid",
        created: Optional[datetime] = None,
    ) -> ProviderCheckoutSession:
        checkout = ProviderCheckoutSession(
            id=session_id,
            url=None,
            status="complete",
            payment_status=payment_status,
            user_id=user_id,
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            subscription=subscription,
            created=created or utcnow(),
        )
        self.checkout_sessions[session_id] = checkout
        self.subscriptions[subscription.id] = subscription
        return checkout


class FakeCaptionGenerator:
    def __init__(self):
        self.calls: List[List[str]] = []

    def generate(self, content_type: str, content_description: str, platforms: List[str]) -> List[GeneratedCaption]:
        self.calls.append(platforms)
        return [
            GeneratedCaption(platform=p, caption=f"{content_description} on {p}", hashtags=["#test"])
            for p in platforms
        ]


# ---------------------------
# Database
# ---------------------------
@pytest.fixture()
def engine():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def make_user(session) -> Callable[..., User]:
    counter = {"n": 0}

    def _make_user(email: Optional[str] = None, full_name: str = "Test Creator") -> User:
        counter["n"] += 1
        user = User(email=email or f"creator{counter['n']}@example.com", full_name=full_name)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make_user


@pytest.fixture()
def ledger() -> UsageLedger:
    return UsageLedger()


@pytest.fixture()
def states(ledger) -> SubscriptionStateService:
    return SubscriptionStateService(ledger)


@pytest.fixture()
def set_state(session, states) -> Callable[..., SubscriptionState]:
    """Force a user's subscription row into a given shape."""

    def _set_state(user_id: int, tier: SubscriptionTier, **fields) -> SubscriptionState:
        state = states.get_or_create_state(session, user_id)
        state.tier = tier.value
        for key, value in fields.items():
            setattr(state, key, value)
        session.add(state)
        session.commit()
        session.refresh(state)
        return state

    return _set_state


# ---------------------------
# App
# ---------------------------
@pytest.fixture()
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite://",
        SECRET_KEY="test-secret-key",
        STRIPE_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRICE_ID_MONTHLY="price_monthly_test",
        ENVIRONMENT="test",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture()
def provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture()
def generator() -> FakeCaptionGenerator:
    return FakeCaptionGenerator()


@pytest.fixture()
def app(settings, engine, provider, generator):
    return create_app(
        settings=settings,
        engine=engine,
        billing_provider=provider,
        cache=InMemoryCache(),
        caption_generator=generator,
    )


@pytest.fixture()
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def auth_headers(settings) -> Callable[[User], Dict[str, str]]:
    def _headers(user: User) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_token_for_user(user, settings)}"}

    return _headers


# ---------------------------
# Stripe payloads
# ---------------------------
def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture()
def signed() -> Callable[[Any], Dict[str, Any]]:
    """Serialize events and sign them like Stripe does; returns kwargs for client.post."""

    def _signed(events: Any, secret: str = WEBHOOK_SECRET) -> Dict[str, Any]:
        body = json.dumps(events)
        return {
            "content": body,
            "headers": {"stripe-signature": sign_payload(body, secret), "content-type": "application/json"},
        }

    return _signed


def ts(moment: datetime) -> int:
    """Naive UTC datetime to a Unix timestamp."""
    return int((moment - datetime(1970, 1, 1)).total_seconds())


def stripe_event(event_id: str, event_type: str, obj: Dict[str, Any], created: datetime) -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": ts(created),
        "data": {"object": obj},
    }


def subscription_payload(
    subscription_id: str,
    status: str,
    user_id: Optional[int] = None,
    *,
    customer: str = "cus_test",
    period_end: Optional[datetime] = None,
    trial_end: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "current_period_end": ts(period_end) if period_end else None,
        "trial_end": ts(trial_end) if trial_end else None,
        "metadata": {"userId": str(user_id)} if user_id is not None else {},
    }


def invoice_payload(
    invoice_id: str,
    subscription_id: str,
    *,
    billing_reason: str = "subscription_cycle",
    customer: str = "cus_test",
    period_start: Optional[datetime] = None,
) -> Dict[str, Any]:
    lines = []
    if period_start is not None:
        lines.append({"period": {"start": ts(period_start), "end": ts(period_start + timedelta(days=30))}})
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription_id,
        "customer": customer,
        "billing_reason": billing_reason,
        "lines": {"data": lines},
    }
