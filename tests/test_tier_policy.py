import pytest

from models.models import SubscriptionTier
from services.tier_policy import TIER_POLICY, TRIAL_DURATION_DAYS, limit_for, monthly_limit_for


def test_free_tier_limits():
    limits = limit_for(SubscriptionTier.FREE)
    assert limits.monthly_limit == 5
    assert limits.max_platforms == 2
    assert not limits.has_unlimited_platforms


@pytest.mark.parametrize("tier", [SubscriptionTier.TRIAL, SubscriptionTier.PREMIUM])
def test_paid_tiers_have_unlimited_platforms(tier):
    limits = limit_for(tier)
    assert limits.monthly_limit == 100
    assert limits.max_platforms is None
    assert limits.has_unlimited_platforms


def test_lookup_accepts_stored_string_values():
    assert monthly_limit_for("PREMIUM") == 100
    assert limit_for("FREE") is TIER_POLICY[SubscriptionTier.FREE]


def test_unknown_tier_is_rejected():
    with pytest.raises(ValueError):
        limit_for("ENTERPRISE")


def test_every_tier_has_features_and_trial_is_a_week():
    assert TRIAL_DURATION_DAYS == 7
    assert all(limits.features for limits in TIER_POLICY.values())
