from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from core.errors import ExternalServiceError, LimitExceededError
from main import create_app
from models.models import SubscriptionTier, utcnow
from services.expiry_reconciler import ExpiryReconciler
from services.quota_gate import QuotaGate
from services.rate_limiter import InMemoryCache
from services.usage_ledger import current_period


def generate(client, headers=None, **overrides):
    body = {"contentType": "video", "contentDescription": "Morning run by the lake"}
    body.update(overrides)
    return client.post("/captions/generate", json=body, headers=headers or {})


def broken_store(*args, **kwargs):
    raise OperationalError("UPDATE usage_records", {}, Exception("database is locked"))


@pytest.fixture()
def gate(ledger):
    return QuotaGate(ledger, ExpiryReconciler(ledger))


# ---------------------------
# QuotaGate
# ---------------------------
def test_consume_until_limit(gate, make_user, session):
    user = make_user()

    for i in range(5):
        result = gate.check_and_consume(session, user.id)
        assert result.current == i + 1

    with pytest.raises(LimitExceededError) as exc:
        gate.check_and_consume(session, user.id)
    assert exc.value.details == {
        "limitExceeded": True,
        "currentUsage": 5,
        "limit": 5,
        "remaining": 0,
        "upgrade": True,
    }


def test_expired_premium_is_blocked_at_free_limit(gate, ledger, make_user, session, set_state):
    user = make_user()
    now = utcnow()
    later = now + timedelta(days=2)
    if current_period(later) != current_period(now):
        pytest.skip("expiry crosses a month boundary today")

    set_state(user.id, SubscriptionTier.PREMIUM, subscription_end=now + timedelta(days=1))
    for _ in range(40):
        gate.check_and_consume(session, user.id, now=now)

    with pytest.raises(LimitExceededError) as exc:
        gate.check_and_consume(session, user.id, now=later)

    assert exc.value.details["currentUsage"] == 40
    assert exc.value.details["limit"] == 5
    assert exc.value.details["upgrade"] is True


def test_store_failure_fails_closed(gate, make_user, session, monkeypatch):
    user = make_user()
    monkeypatch.setattr(gate.ledger, "try_consume", broken_store)

    with pytest.raises(ExternalServiceError) as exc:
        gate.check_and_consume(session, user.id)
    assert exc.value.status_code == 502


def test_store_failure_can_fail_open(ledger, make_user, session, monkeypatch):
    gate = QuotaGate(ledger, ExpiryReconciler(ledger), fail_open=True)
    user = make_user()
    monkeypatch.setattr(ledger, "try_consume", broken_store)

    assert gate.check_and_consume(session, user.id).ok is True


# ---------------------------
# Caption generation API
# ---------------------------
def test_free_user_gets_five_generations_then_403(client, make_user, auth_headers, generator):
    headers = auth_headers(make_user())

    for i in range(5):
        response = generate(client, headers)
        assert response.status_code == 200
        assert response.json()["usage"]["generatedCount"] == i + 1

    response = generate(client, headers)
    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "LIMIT_EXCEEDED"
    assert body["limitExceeded"] is True
    assert body["currentUsage"] == 5
    assert body["limit"] == 5
    assert body["remaining"] == 0
    assert body["upgrade"] is True
    assert len(generator.calls) == 5


def test_one_generation_costs_one_unit_for_many_platforms(client, make_user, auth_headers, set_state):
    user = make_user()
    set_state(user.id, SubscriptionTier.PREMIUM, subscription_end=utcnow() + timedelta(days=30))

    response = generate(client, auth_headers(user), platforms=["instagram", "tiktok", "youtube", "linkedin"])

    assert response.status_code == 200
    assert len(response.json()["captions"]) == 4
    assert response.json()["usage"] == {
        "generatedCount": 1,
        "monthlyLimit": 100,
        "remaining": 99,
        "year": current_period().year,
        "month": current_period().month,
    }


def test_free_user_is_capped_at_two_platforms(client, make_user, auth_headers, generator):
    headers = auth_headers(make_user())

    response = generate(client, headers, platforms=["instagram", "tiktok", "youtube"])

    assert response.status_code == 403
    assert response.json()["maxPlatforms"] == 2
    assert response.json()["upgrade"] is True
    assert generator.calls == []
    assert client.get("/usage", headers=headers).json()["generatedCount"] == 0


def test_free_user_defaults_to_two_platforms(client, make_user, auth_headers, generator):
    response = generate(client, auth_headers(make_user()))

    assert response.status_code == 200
    assert len(generator.calls[0]) == 2


def test_guest_is_asked_to_sign_up_then_rate_limited(client):
    for _ in range(5):
        assert generate(client).status_code == 401

    response = generate(client)
    assert response.status_code == 429
    assert response.json()["upgrade"] is True


def test_missing_generator_is_503_without_consuming(settings, engine, provider, make_user, auth_headers):
    app = create_app(settings=settings, engine=engine, billing_provider=provider, cache=InMemoryCache())
    client = TestClient(app)
    headers = auth_headers(make_user())

    response = generate(client, headers)

    assert response.status_code == 503
    assert client.get("/usage", headers=headers).json()["generatedCount"] == 0


def test_store_failure_surfaces_as_502(app, client, make_user, auth_headers, monkeypatch):
    monkeypatch.setattr(app.state.ledger, "try_consume", broken_store)

    response = generate(client, auth_headers(make_user()))

    assert response.status_code == 502
    assert response.json()["service"] == "database"


def test_usage_endpoint(client, make_user, auth_headers):
    headers = auth_headers(make_user())
    generate(client, headers)

    response = client.get("/usage", headers=headers)

    assert response.status_code == 200
    assert response.json()["generatedCount"] == 1
    assert response.json()["monthlyLimit"] == 5
    assert response.json()["remaining"] == 4


def test_usage_requires_authentication(client):
    assert client.get("/usage").status_code == 401


class FailingCaptionGenerator:
    def generate(self, content_type, content_description, platforms):
        raise RuntimeError("model timed out")


def test_failed_generation_is_not_charged(settings, engine, provider, make_user, auth_headers):
    app = create_app(
        settings=settings,
        engine=engine,
        billing_provider=provider,
        cache=InMemoryCache(),
        caption_generator=FailingCaptionGenerator(),
    )
    client = TestClient(app)
    headers = auth_headers(make_user())

    response = generate(client, headers)

    assert response.status_code == 502
    assert response.json()["service"] == "generator"
    assert client.get("/usage", headers=headers).json()["generatedCount"] == 0
