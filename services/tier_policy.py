# services/tier_policy.py
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from models.models import SubscriptionTier

TRIAL_DURATION_DAYS = 7


@dataclass(frozen=True)
class TierLimits:
    monthly_limit: int
    max_platforms: Optional[int]  # None means unlimited
    features: List[str] = field(default_factory=list)

    @property
    def has_unlimited_platforms(self) -> bool:
        return self.max_platforms is None


TIER_POLICY: Dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.FREE: TierLimits(
        monthly_limit=5,
        max_platforms=2,
        features=[
            "5 caption generations per month",
            "Up to 2 platforms per generation",
            "3 variants per platform",
            "Basic analytics",
        ],
    ),
    SubscriptionTier.TRIAL: TierLimits(
        monthly_limit=100,
        max_platforms=None,
        features=[
            f"{TRIAL_DURATION_DAYS}-day free trial with full Premium features",
            "100 caption generations per month",
            "Unlimited platforms per generation",
            "Advanced analytics",
        ],
    ),
    SubscriptionTier.PREMIUM: TierLimits(
        monthly_limit=100,
        max_platforms=None,
        features=[
            "100 caption generations per month",
            "Unlimited platforms per generation",
            "Advanced analytics",
            "Priority support",
        ],
    ),
}


def limit_for(tier: Union[SubscriptionTier, str]) -> TierLimits:
    """Static lookup of a tier's quota and platform limits."""
    return TIER_POLICY[SubscriptionTier(tier)]


def monthly_limit_for(tier: Union[SubscriptionTier, str]) -> int:
    return limit_for(tier).monthly_limit
