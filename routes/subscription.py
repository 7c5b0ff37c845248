# routes/subscription.py
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlmodel import Session

from core.database import get_session
from core.dependencies import get_checkout, get_email_service, get_quota_gate, get_subscription_states
from core.security import get_current_user
from models.models import BillingInterval, SubscriptionTier, User
from schemas import PlanRead, SubscriptionDetailRead, SubscriptionRead, UsageRead
from services.checkout_service import CheckoutOrchestrator
from services.email_service import EmailService, notification_for_transition, schedule_notifications
from services.quota_gate import QuotaGate
from services.subscription_state import SubscriptionStateService
from services.tier_policy import limit_for

router = APIRouter(prefix="/subscription", tags=["Subscription"])


# -------------------------
# Current subscription
# -------------------------
@router.get("", response_model=SubscriptionDetailRead)
def get_subscription(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    states: SubscriptionStateService = Depends(get_subscription_states),
    gate: QuotaGate = Depends(get_quota_gate),
):
    # Reconciles expiry first, so a lapsed plan already reads as FREE
    usage = gate.usage(session, current_user.id)
    snapshot = states.snapshot(session, current_user.id)
    session.commit()

    limits = limit_for(snapshot.tier)
    return SubscriptionDetailRead(
        tier=snapshot.tier,
        subscription_start=snapshot.subscription_start,
        subscription_end=snapshot.subscription_end,
        trial_ends_at=snapshot.trial_ends_at,
        trial_activated=snapshot.trial_activated,
        is_premium=snapshot.tier != SubscriptionTier.FREE,
        max_platforms=limits.max_platforms,
        features=list(limits.features),
        usage=UsageRead.model_validate(usage),
    )


# -------------------------
# Cancel
# -------------------------
@router.post("/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    email_service: EmailService = Depends(get_email_service),
):
    """Cancel at Stripe (best effort) and drop to FREE right away. This month's usage is kept."""
    result = checkout.cancel(session, current_user)
    notification = notification_for_transition(current_user.id, result)
    if notification:
        schedule_notifications(background_tasks, session, email_service, [notification])
    return SubscriptionRead.model_validate(result.snapshot)


# -------------------------
# Plans
# -------------------------
@router.get("/plans", response_model=List[PlanRead])
def list_plans(
    interval: BillingInterval = BillingInterval.MONTHLY,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    return [PlanRead.model_validate(plan) for plan in checkout.plans(interval)]
