# ================================================================
# services/checkout_service.py: Checkout, verify, cancel, plans
# ================================================================
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session

from core.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from models.models import BillingInterval, SubscriptionTier, User, utcnow
from services.billing_provider import BillingProvider, PriceInfo
from services.subscription_state import SubscriptionStateService, TransitionResult
from services.tier_policy import TRIAL_DURATION_DAYS, limit_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSessionResult:
    session_id: str
    url: Optional[str]
    include_trial: bool


@dataclass(frozen=True)
class PlanOption:
    tier: SubscriptionTier
    monthly_limit: int
    max_platforms: Optional[int]
    features: List[str] = field(default_factory=list)
    price: float = 0.0
    currency: str = "USD"
    interval: Optional[str] = None
    trial_days: Optional[int] = None


class CheckoutOrchestrator:
    """
    Drives the user-facing half of billing: opening a Stripe Checkout
    session, confirming it when the user returns, cancelling, and listing
    plans. Provider calls happen before any local write they depend on.
    """

    def __init__(
        self,
        provider: BillingProvider,
        states: SubscriptionStateService,
        *,
        success_url: str,
        cancel_url: str,
        price_fallback: float = 9.99,
        currency_fallback: str = "USD",
    ):
        self.provider = provider
        self.states = states
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.price_fallback = price_fallback
        self.currency_fallback = currency_fallback

    # ============================================================
    # ✅ Create checkout session
    # ============================================================
    def create_session(
        self,
        session: Session,
        user: User,
        interval: BillingInterval = BillingInterval.MONTHLY,
    ) -> CheckoutSessionResult:
        state = self.states.get_or_create_state(session, user.id)
        if state.tier == SubscriptionTier.PREMIUM.value:
            raise ConflictError("You already have an active Premium subscription")

        include_trial = not state.trial_activated
        customer_id = state.external_customer_id
        # Nothing to hold open across the provider round-trip
        session.commit()

        checkout = self.provider.create_checkout_session(
            user_id=user.id,
            email=user.email,
            interval=interval,
            include_trial=include_trial,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            customer_id=customer_id,
        )
        return CheckoutSessionResult(session_id=checkout.id, url=checkout.url, include_trial=include_trial)

    # ============================================================
    # ✅ Verify session (client returns from Stripe)
    # ============================================================
    def verify_session(
        self,
        session: Session,
        user: User,
        session_id: str,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Apply the outcome of a completed checkout. The session's creation
        time is the event time, so a webhook carrying newer information is
        never overwritten by a late verify.
        """
        if not session_id:
            raise ValidationError("Session ID is required")

        checkout = self.provider.retrieve_checkout_session(session_id)
        if checkout.user_id is not None and checkout.user_id != user.id:
            logger.warning("🚫 User %s tried to verify checkout session %s of another user", user.id, session_id)
            raise NotFoundError("Checkout session not found")
        if not checkout.is_completed:
            raise ExternalServiceError(
                f"Checkout session is not completed (payment status: {checkout.payment_status})",
                service="stripe",
            )

        subscription = checkout.subscription
        if subscription is None:
            if not checkout.subscription_id:
                raise ExternalServiceError("Checkout session has no subscription", service="stripe")
            subscription = self.provider.retrieve_subscription(checkout.subscription_id)

        try:
            result = self.states.apply_provider_subscription(
                session,
                user.id,
                subscription,
                checkout.created,
                customer_id=checkout.customer_id,
                now=now or utcnow(),
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "✅ Checkout session %s verified for user %s: %s (%s)",
            session_id, user.id, result.tier.value, result.reason,
        )
        return result

    # ============================================================
    # ✅ Cancel
    # ============================================================
    def cancel(self, session: Session, user: User, now: Optional[datetime] = None) -> TransitionResult:
        state = self.states.get_or_create_state(session, user.id)
        if not state.is_paid_tier:
            raise ValidationError("You are already on the free plan")

        subscription_id = state.external_subscription_id
        session.commit()

        if subscription_id:
            try:
                self.provider.cancel_subscription(subscription_id)
            except ExternalServiceError as e:
                # Local downgrade proceeds; the provider's deletion webhook will follow or be reconciled
                logger.warning("⚠️ Stripe cancel failed for %s, downgrading locally: %s", subscription_id, e)

        try:
            result = self.states.downgrade(
                session, user.id, reason="canceled by user", subscription_id=subscription_id, now=now
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        return result

    # ============================================================
    # ✅ Plans
    # ============================================================
    def plans(self, interval: BillingInterval = BillingInterval.MONTHLY) -> List[PlanOption]:
        try:
            price = self.provider.get_price(interval)
        except (ExternalServiceError, ValidationError) as e:
            logger.warning("⚠️ Using fallback Premium price: %s", e)
            price = PriceInfo(
                amount=self.price_fallback,
                currency=self.currency_fallback,
                interval="year" if interval == BillingInterval.YEARLY else "month",
                product_name="Premium",
            )

        free = limit_for(SubscriptionTier.FREE)
        premium = limit_for(SubscriptionTier.PREMIUM)
        return [
            PlanOption(
                tier=SubscriptionTier.FREE,
                monthly_limit=free.monthly_limit,
                max_platforms=free.max_platforms,
                features=list(free.features),
            ),
            PlanOption(
                tier=SubscriptionTier.PREMIUM,
                monthly_limit=premium.monthly_limit,
                max_platforms=premium.max_platforms,
                features=list(premium.features),
                price=price.amount,
                currency=price.currency,
                interval=price.interval,
                trial_days=TRIAL_DURATION_DAYS,
            ),
        ]
