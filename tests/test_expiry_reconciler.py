from datetime import datetime, timedelta

import pytest

from models.models import SubscriptionTier
from services.expiry_reconciler import ExpiryReconciler
from services.usage_ledger import current_period

NOW = datetime(2025, 5, 20, 9, 30, 0)


@pytest.fixture()
def reconciler(ledger):
    return ExpiryReconciler(ledger)


def test_expired_premium_is_downgraded_and_usage_preserved(session, make_user, set_state, ledger, reconciler, states):
    user = make_user()
    set_state(
        user.id,
        SubscriptionTier.PREMIUM,
        subscription_start=NOW - timedelta(days=31),
        subscription_end=NOW - timedelta(minutes=1),
        external_subscription_id="sub_1",
    )
    period = current_period(NOW)
    ledger.resync_limit(session, user.id, period, SubscriptionTier.PREMIUM)
    ledger.try_consume(session, user.id, period, amount=40)
    session.commit()

    assert reconciler.reconcile(session, user.id, NOW) is True
    session.commit()

    state = states.get_or_create_state(session, user.id)
    assert state.tier == SubscriptionTier.FREE.value
    assert state.subscription_end is None
    assert state.subscription_start is None
    assert state.external_subscription_id is None
    record = ledger.get(session, user.id, period)
    assert record.generated_count == 40
    assert record.limit_snapshot == 5
    # Over the FREE limit now, so nothing more can be consumed
    assert not ledger.try_consume(session, user.id, period).ok


def test_expired_trial_keeps_trial_activated(session, make_user, set_state, reconciler, states):
    user = make_user()
    set_state(
        user.id,
        SubscriptionTier.TRIAL,
        subscription_end=NOW - timedelta(hours=1),
        trial_ends_at=NOW - timedelta(hours=1),
        trial_activated=True,
    )

    assert reconciler.reconcile(session, user.id, NOW)

    state = states.get_or_create_state(session, user.id)
    assert state.tier == SubscriptionTier.FREE.value
    assert state.trial_ends_at is None
    assert state.trial_activated is True


def test_active_subscription_is_untouched(session, make_user, set_state, reconciler, states):
    user = make_user()
    set_state(user.id, SubscriptionTier.PREMIUM, subscription_end=NOW + timedelta(days=3))

    assert reconciler.reconcile(session, user.id, NOW) is False
    assert states.snapshot(session, user.id).tier == SubscriptionTier.PREMIUM


def test_end_exactly_now_is_not_expired(session, make_user, set_state, reconciler):
    user = make_user()
    set_state(user.id, SubscriptionTier.PREMIUM, subscription_end=NOW)

    assert reconciler.reconcile(session, user.id, NOW) is False
    assert reconciler.reconcile(session, user.id, NOW + timedelta(seconds=1)) is True


def test_free_user_is_never_touched(session, make_user, reconciler, states):
    user = make_user()
    version = states.get_or_create_state(session, user.id).version

    assert reconciler.reconcile(session, user.id, NOW) is False
    assert states.get_or_create_state(session, user.id).version == version


def test_downgrade_bumps_version(session, make_user, set_state, reconciler, states):
    user = make_user()
    state = set_state(user.id, SubscriptionTier.PREMIUM, subscription_end=NOW - timedelta(days=1))
    version = state.version

    reconciler.reconcile(session, user.id, NOW)

    assert states.get_or_create_state(session, user.id).version == version + 1


def test_sweep_downgrades_every_expired_user(session, make_user, set_state, reconciler, states):
    expired_a, expired_b, current = make_user(), make_user(), make_user()
    set_state(expired_a.id, SubscriptionTier.PREMIUM, subscription_end=NOW - timedelta(days=2))
    set_state(expired_b.id, SubscriptionTier.TRIAL, subscription_end=NOW - timedelta(hours=2))
    set_state(current.id, SubscriptionTier.PREMIUM, subscription_end=NOW + timedelta(days=2))

    downgraded = reconciler.sweep(session, NOW)

    assert sorted(downgraded) == sorted([expired_a.id, expired_b.id])
    assert states.snapshot(session, current.id).tier == SubscriptionTier.PREMIUM
    assert states.snapshot(session, expired_a.id).tier == SubscriptionTier.FREE
    assert states.snapshot(session, expired_b.id).tier == SubscriptionTier.FREE
