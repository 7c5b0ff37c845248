# routes/checkout.py
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlmodel import Session

from core.database import get_session
from core.dependencies import get_checkout, get_email_service
from core.security import get_current_user
from models.models import User
from schemas import CheckoutSessionCreate, CheckoutSessionRead, CheckoutVerifyRequest, SubscriptionRead
from services.checkout_service import CheckoutOrchestrator
from services.email_service import EmailService, notification_for_transition, schedule_notifications

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["Checkout"])


# -------------------------
# Create session
# -------------------------
@router.post("/session", response_model=CheckoutSessionRead)
def create_checkout_session(
    payload: CheckoutSessionCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    """Open a Stripe Checkout session for Premium (with a trial if the user never had one)."""
    result = checkout.create_session(session, current_user, payload.interval)
    return CheckoutSessionRead(session_id=result.session_id, url=result.url, include_trial=result.include_trial)


# -------------------------
# Verify session
# -------------------------
def _verify(
    session_id: str,
    current_user: User,
    session: Session,
    checkout: CheckoutOrchestrator,
    background_tasks: BackgroundTasks,
    email_service: EmailService,
) -> SubscriptionRead:
    result = checkout.verify_session(session, current_user, session_id)
    notification = notification_for_transition(current_user.id, result)
    if notification:
        schedule_notifications(background_tasks, session, email_service, [notification])
    return SubscriptionRead.model_validate(result.snapshot)


@router.post("/verify", response_model=SubscriptionRead)
def verify_checkout_session(
    payload: CheckoutVerifyRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    email_service: EmailService = Depends(get_email_service),
):
    """Called by the client after Stripe redirects back; applies the paid checkout immediately."""
    return _verify(payload.session_id, current_user, session, checkout, background_tasks, email_service)


@router.get("/verify", response_model=SubscriptionRead)
def verify_checkout_session_by_query(
    background_tasks: BackgroundTasks,
    session_id: str = Query(..., min_length=1),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    email_service: EmailService = Depends(get_email_service),
):
    return _verify(session_id, current_user, session, checkout, background_tasks, email_service)
