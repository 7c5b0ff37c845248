import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from fastapi import BackgroundTasks
from sqlmodel import Session

from models.models import SubscriptionTier, User
from services.subscription_state import TransitionResult

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    TRIAL_STARTED = "trial_started"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


@dataclass(frozen=True)
class Notification:
    user_id: int
    kind: NotificationKind
    context: Dict[str, Any] = field(default_factory=dict)


_SUBJECTS = {
    NotificationKind.SUBSCRIPTION_ACTIVATED: "🎉 Welcome to CaptionFlow Premium!",
    NotificationKind.TRIAL_STARTED: "🚀 Your CaptionFlow Premium trial has started",
    NotificationKind.PAYMENT_FAILED: "⚠️ We couldn't process your CaptionFlow payment",
    NotificationKind.SUBSCRIPTION_CANCELED: "Your CaptionFlow Premium subscription has ended",
}


def _fmt_date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "-"


class EmailService:
    """
    Billing notification emails via SendGrid.
    Delivery is best-effort: failures are logged and never reach the caller.
    """

    def __init__(self, sendgrid_api_key: Optional[str], sender_email: Optional[str], frontend_url: str):
        self.sendgrid_api_key = sendgrid_api_key
        self.sender_email = sender_email
        self.frontend_url = frontend_url

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email service not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email service configured and ready. Sender: {self.sender_email}")

    # ============================================================
    # ✅ Render
    # ============================================================
    def _body(self, kind: NotificationKind, name: str, context: Dict[str, Any]) -> str:
        pricing_link = f"{self.frontend_url}/pricing"

        if kind == NotificationKind.SUBSCRIPTION_ACTIVATED:
            paragraph = (
                "<p>Your Premium subscription is active. You now have 100 caption generations "
                "per month across unlimited platforms.</p>"
                f"<p>Current period ends: <strong>{_fmt_date(context.get('subscription_end'))}</strong></p>"
            )
        elif kind == NotificationKind.TRIAL_STARTED:
            paragraph = (
                "<p>Your free Premium trial has started. Enjoy every Premium feature until "
                f"<strong>{_fmt_date(context.get('trial_ends_at'))}</strong>.</p>"
            )
        elif kind == NotificationKind.PAYMENT_FAILED:
            paragraph = (
                "<p>We couldn't collect your latest Premium payment. Please update your payment "
                "method to keep Premium access.</p>"
            )
        else:
            paragraph = (
                "<p>Your Premium subscription has ended and your account is back on the Free plan. "
                "Your usage this month is kept.</p>"
            )

        return f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>👋 Hi {name}!</h2>
            {paragraph}
            <p style="text-align: center; margin: 20px 0;">
                <a href="{pricing_link}" style="
                    background-color: #4F46E5;
                    color: white;
                    padding: 12px 28px;
                    text-decoration: none;
                    border-radius: 6px;
                    font-weight: bold;
                    display: inline-block;
                ">Manage subscription</a>
            </p>
            <hr style="border:none; border-top:1px solid #eee; margin: 24px 0;">
            <p>Best regards,<br><strong>The CaptionFlow Team</strong></p>
        </div>
        """

    # ============================================================
    # ✅ Send (synchronous for BackgroundTasks)
    # ============================================================
    def send_notification(
        self,
        to_email: str,
        kind: NotificationKind,
        full_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        context = context or {}
        subject = _SUBJECTS[kind]

        if not self.enabled:
            # Development fallback (no SendGrid setup)
            logger.info(f"📨 [Mock Email] To: {to_email} | {kind.value}")
            return True

        try:
            message = Mail(
                from_email=self.sender_email,
                to_emails=to_email,
                subject=subject,
                html_content=self._body(kind, full_name or "there", context),
            )
            sg = SendGridAPIClient(self.sendgrid_api_key)
            response = sg.send(message)
            logger.info(f"✅ {kind.value} email sent to {to_email}. Status: {response.status_code}")
            return True
        except Exception as e:
            logger.exception("❌ Failed to send %s email to %s: %s", kind.value, to_email, e)
            return False


# ============================================================
# ✅ Notification helpers
# ============================================================
def notification_for_transition(user_id: int, result: TransitionResult) -> Optional[Notification]:
    """Map an applied tier change to the email the user should get, if any."""
    if not result.tier_changed:
        return None
    snapshot = result.snapshot
    if result.tier == SubscriptionTier.TRIAL:
        return Notification(user_id, NotificationKind.TRIAL_STARTED, {"trial_ends_at": snapshot.trial_ends_at})
    if result.tier == SubscriptionTier.PREMIUM:
        return Notification(
            user_id, NotificationKind.SUBSCRIPTION_ACTIVATED, {"subscription_end": snapshot.subscription_end}
        )
    return Notification(user_id, NotificationKind.SUBSCRIPTION_CANCELED)


def schedule_notifications(
    background_tasks: BackgroundTasks,
    session: Session,
    email_service: Optional[EmailService],
    notifications: Iterable[Notification],
) -> None:
    """Queue emails to run after the response has been sent."""
    if email_service is None:
        return
    for notification in notifications:
        user = session.get(User, notification.user_id)
        if user is None:
            logger.warning(f"⚠️ No user {notification.user_id} for {notification.kind.value} notification")
            continue
        background_tasks.add_task(
            email_service.send_notification,
            user.email,
            notification.kind,
            user.full_name,
            notification.context,
        )
