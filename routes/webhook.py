# routes/webhook.py
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session

from core.database import get_session
from core.dependencies import get_email_service, get_webhook_processor
from schemas import WebhookAck, WebhookOutcomeRead
from services.email_service import EmailService, schedule_notifications
from services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhook"])


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    processor: WebhookProcessor = Depends(get_webhook_processor),
    email_service: EmailService = Depends(get_email_service),
):
    """
    Handle Stripe webhook deliveries. A bad signature is a 400 and changes
    nothing; otherwise every event is acknowledged with its outcome, even
    when its handler failed, so one bad event never blocks the rest.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    # Processing is blocking database and Stripe I/O
    outcomes = await run_in_threadpool(processor.handle_delivery, session, payload, sig_header)

    notifications = [n for outcome in outcomes for n in outcome.notifications]
    if notifications:
        schedule_notifications(background_tasks, session, email_service, notifications)

    return WebhookAck(events=[WebhookOutcomeRead(**outcome.to_dict()) for outcome in outcomes])
