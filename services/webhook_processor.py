# ================================================================
# services/webhook_processor.py: Stripe webhook ingestion
# ================================================================
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from core.database import insert_if_absent
from models.models import WebhookEvent, utcnow
from services.billing_provider import (
    BillingProvider,
    ProviderCheckoutSession,
    ProviderInvoice,
    ProviderSubscription,
    from_timestamp,
)
from services.email_service import Notification, NotificationKind, notification_for_transition
from services.subscription_state import SubscriptionStateService, TransitionResult

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, event_type: Optional[str]) -> "EventKind":
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNKNOWN
        return kind


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class WebhookEnvelope:
    id: str
    type: str
    kind: EventKind
    created: Optional[datetime]
    data_object: Dict[str, Any]

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "WebhookEnvelope":
        event_id = event.get("id")
        if not event_id:
            raise ValueError("event has no id")
        data_object = (event.get("data") or {}).get("object")
        if not isinstance(data_object, dict):
            raise ValueError(f"event {event_id} has no data.object")
        return cls(
            id=event_id,
            type=str(event.get("type") or ""),
            kind=EventKind.parse(event.get("type")),
            created=from_timestamp(event.get("created")),
            data_object=data_object,
        )


@dataclass
class EventOutcome:
    event_id: Optional[str]
    event_type: Optional[str]
    status: OutcomeStatus
    detail: Optional[str] = None
    user_id: Optional[int] = None
    notifications: List[Notification] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "type": self.event_type,
            "status": self.status.value,
            "detail": self.detail,
        }


@dataclass
class HandlerResult:
    status: OutcomeStatus
    detail: Optional[str] = None
    user_id: Optional[int] = None
    notifications: List[Notification] = field(default_factory=list)


class _Handler(NamedTuple):
    # Provider round-trips; runs before the database transaction opens
    fetch: Callable[[WebhookEnvelope], Any]
    # Local writes; runs inside the transaction that claims the event
    apply: Callable[[Session, WebhookEnvelope, Any], HandlerResult]


class WebhookProcessor:
    """
    Applies verified Stripe events exactly once each.

    An event is claimed (row inserted or flipped to processed) in the same
    transaction as its state change, so redeliveries of a processed event
    are duplicates and a failed attempt leaves the event open for Stripe's
    retry. One failing event never blocks the others in a delivery.
    """

    def __init__(self, provider: BillingProvider, states: SubscriptionStateService):
        self.provider = provider
        self.states = states
        self._handlers: Dict[EventKind, _Handler] = {
            EventKind.CHECKOUT_COMPLETED: _Handler(self._fetch_checkout, self._apply_checkout),
            EventKind.SUBSCRIPTION_CREATED: _Handler(self._fetch_subscription, self._apply_subscription),
            EventKind.SUBSCRIPTION_UPDATED: _Handler(self._fetch_subscription, self._apply_subscription),
            EventKind.SUBSCRIPTION_DELETED: _Handler(self._fetch_subscription, self._apply_deletion),
            EventKind.INVOICE_PAYMENT_SUCCEEDED: _Handler(self._fetch_paid_invoice, self._apply_paid_invoice),
            EventKind.INVOICE_PAYMENT_FAILED: _Handler(self._fetch_invoice, self._apply_failed_invoice),
            EventKind.UNKNOWN: _Handler(lambda envelope: None, self._apply_unknown),
        }

    # ============================================================
    # ✅ Entry points
    # ============================================================
    def handle_delivery(self, session: Session, payload: bytes, signature_header: Optional[str]) -> List[EventOutcome]:
        """Verify a raw delivery and process every event in it."""
        events = self.provider.construct_events(payload, signature_header)
        return self.process(session, events)

    def process(self, session: Session, events: List[Dict[str, Any]]) -> List[EventOutcome]:
        outcomes = [self.process_event(session, event) for event in events]
        logger.info(
            "📬 Webhook delivery handled: %s",
            ", ".join(f"{o.event_type}={o.status.value}" for o in outcomes) or "no events",
        )
        return outcomes

    def process_event(self, session: Session, event: Dict[str, Any]) -> EventOutcome:
        try:
            envelope = WebhookEnvelope.from_event(event)
        except ValueError as e:
            logger.warning("⚠️ Malformed webhook event skipped: %s", e)
            return EventOutcome(event.get("id"), event.get("type"), OutcomeStatus.FAILED, str(e))

        if self._already_processed(session, envelope.id):
            logger.info("🔁 Duplicate webhook event %s (%s)", envelope.id, envelope.type)
            return EventOutcome(envelope.id, envelope.type, OutcomeStatus.DUPLICATE)

        handler = self._handlers[envelope.kind]

        try:
            fetched = handler.fetch(envelope)
        except Exception as e:
            return self._fail(session, envelope, e)

        try:
            if not self._claim(session, envelope):
                session.rollback()
                logger.info("🔁 Webhook event %s claimed concurrently", envelope.id)
                return EventOutcome(envelope.id, envelope.type, OutcomeStatus.DUPLICATE)

            result = handler.apply(session, envelope, fetched)
            if result.user_id is not None:
                session.exec(
                    update(WebhookEvent)
                    .where(WebhookEvent.provider_event_id == envelope.id)
                    .values(user_id=result.user_id)
                    .execution_options(synchronize_session=False)
                )
            session.commit()
        except Exception as e:
            session.rollback()
            return self._fail(session, envelope, e)

        logger.info(
            "✅ Webhook %s (%s): %s%s",
            envelope.id, envelope.type, result.status.value, f" ({result.detail})" if result.detail else "",
        )
        return EventOutcome(
            envelope.id,
            envelope.type,
            result.status,
            result.detail,
            user_id=result.user_id,
            notifications=result.notifications,
        )

    # ============================================================
    # ✅ Event ledger
    # ============================================================
    def _already_processed(self, session: Session, event_id: str) -> bool:
        processed = session.exec(
            select(WebhookEvent.processed).where(WebhookEvent.provider_event_id == event_id)
        ).first()
        # End the read so nothing is held open across provider calls
        session.rollback()
        return bool(processed)

    def _claim(self, session: Session, envelope: WebhookEnvelope) -> bool:
        now = utcnow()
        reopened = session.exec(
            update(WebhookEvent)
            .where(WebhookEvent.provider_event_id == envelope.id, WebhookEvent.processed.is_(False))
            .values(
                processed=True,
                attempts=WebhookEvent.attempts + 1,
                processing_error=None,
                processed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if reopened.rowcount == 1:
            return True

        return insert_if_absent(
            session,
            WebhookEvent,
            dict(
                provider_event_id=envelope.id,
                event_type=envelope.type,
                event_created_at=envelope.created,
                processed=True,
                attempts=1,
                received_at=now,
                processed_at=now,
            ),
            index_elements=["provider_event_id"],
        )

    def _fail(self, session: Session, envelope: WebhookEnvelope, error: Exception) -> EventOutcome:
        logger.error("❌ Error processing webhook event %s (%s): %s", envelope.id, envelope.type, error)
        message = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]
        try:
            created = insert_if_absent(
                session,
                WebhookEvent,
                dict(
                    provider_event_id=envelope.id,
                    event_type=envelope.type,
                    event_created_at=envelope.created,
                    processed=False,
                    attempts=1,
                    processing_error=message,
                    received_at=utcnow(),
                ),
                index_elements=["provider_event_id"],
            )
            if not created:
                session.exec(
                    update(WebhookEvent)
                    .where(WebhookEvent.provider_event_id == envelope.id, WebhookEvent.processed.is_(False))
                    .values(processing_error=message, attempts=WebhookEvent.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
            session.commit()
        except Exception as record_error:
            session.rollback()
            logger.exception("❌ Could not record failure for webhook event %s: %s", envelope.id, record_error)
        return EventOutcome(envelope.id, envelope.type, OutcomeStatus.FAILED, str(error))

    # ============================================================
    # ✅ Handlers
    # ============================================================
    def _fetch_checkout(self, envelope: WebhookEnvelope):
        checkout = ProviderCheckoutSession.from_payload(envelope.data_object)
        subscription = checkout.subscription
        if subscription is None and checkout.subscription_id and checkout.is_completed:
            subscription = self.provider.retrieve_subscription(checkout.subscription_id)
        return checkout, subscription

    def _apply_checkout(self, session: Session, envelope: WebhookEnvelope, fetched) -> HandlerResult:
        checkout, subscription = fetched
        if not checkout.is_completed:
            return HandlerResult(OutcomeStatus.IGNORED, f"payment status {checkout.payment_status}")
        if subscription is None:
            return HandlerResult(OutcomeStatus.IGNORED, "checkout session has no subscription")

        user_id = checkout.user_id or self.states.find_user_by_customer(session, checkout.customer_id)
        if user_id is None:
            return HandlerResult(OutcomeStatus.IGNORED, "no user for checkout session")

        result = self.states.apply_provider_subscription(
            session, user_id, subscription, envelope.created, customer_id=checkout.customer_id
        )
        return self._from_transition(user_id, result)

    def _fetch_subscription(self, envelope: WebhookEnvelope) -> ProviderSubscription:
        # The event payload is the subscription as of the event; no round-trip needed
        return ProviderSubscription.from_payload(envelope.data_object)

    def _resolve_subscription_user(self, session: Session, subscription: ProviderSubscription) -> Optional[int]:
        return (
            subscription.user_id
            or self.states.find_user_by_subscription(session, subscription.id)
            or self.states.find_user_by_customer(session, subscription.customer_id)
        )

    def _apply_subscription(self, session: Session, envelope: WebhookEnvelope, subscription) -> HandlerResult:
        user_id = self._resolve_subscription_user(session, subscription)
        if user_id is None:
            return HandlerResult(OutcomeStatus.IGNORED, f"no user for subscription {subscription.id}")
        result = self.states.apply_provider_subscription(session, user_id, subscription, envelope.created)
        return self._from_transition(user_id, result)

    def _apply_deletion(self, session: Session, envelope: WebhookEnvelope, subscription) -> HandlerResult:
        user_id = self._resolve_subscription_user(session, subscription)
        if user_id is None:
            self.states.tombstone(session, subscription.id, None)
            return HandlerResult(OutcomeStatus.IGNORED, f"no user for subscription {subscription.id}")
        result = self.states.apply_deletion(session, user_id, subscription.id, envelope.created)
        return self._from_transition(user_id, result)

    def _fetch_invoice(self, envelope: WebhookEnvelope) -> ProviderInvoice:
        return ProviderInvoice.from_payload(envelope.data_object)

    def _fetch_paid_invoice(self, envelope: WebhookEnvelope):
        invoice = ProviderInvoice.from_payload(envelope.data_object)
        subscription = None
        if invoice.subscription_id:
            subscription = self.provider.retrieve_subscription(invoice.subscription_id)
        return invoice, subscription

    def _resolve_invoice_user(
        self,
        session: Session,
        invoice: ProviderInvoice,
        subscription: Optional[ProviderSubscription] = None,
    ) -> Optional[int]:
        return (
            (subscription.user_id if subscription else None)
            or self.states.find_user_by_subscription(session, invoice.subscription_id)
            or self.states.find_user_by_customer(session, invoice.customer_id)
        )

    def _apply_paid_invoice(self, session: Session, envelope: WebhookEnvelope, fetched) -> HandlerResult:
        invoice, subscription = fetched
        if not invoice.subscription_id:
            return HandlerResult(OutcomeStatus.IGNORED, "invoice is not for a subscription")
        user_id = self._resolve_invoice_user(session, invoice, subscription)
        if user_id is None:
            return HandlerResult(OutcomeStatus.IGNORED, f"no user for invoice {invoice.id}")
        result = self.states.apply_renewal(session, user_id, invoice, subscription, envelope.created)
        return self._from_transition(user_id, result)

    def _apply_failed_invoice(self, session: Session, envelope: WebhookEnvelope, invoice) -> HandlerResult:
        user_id = self._resolve_invoice_user(session, invoice)
        if user_id is None:
            return HandlerResult(OutcomeStatus.IGNORED, f"no user for invoice {invoice.id}")
        # Tier stays as is; the paid window runs out and expiry takes over
        logger.warning("💳 Payment failed for user %s (invoice %s)", user_id, invoice.id)
        return HandlerResult(
            OutcomeStatus.APPLIED,
            "payment failure recorded",
            user_id=user_id,
            notifications=[Notification(user_id, NotificationKind.PAYMENT_FAILED)],
        )

    def _apply_unknown(self, session: Session, envelope: WebhookEnvelope, fetched) -> HandlerResult:
        logger.info("ℹ️ Unhandled event type: %s", envelope.type)
        return HandlerResult(OutcomeStatus.IGNORED, f"unhandled event type {envelope.type}")

    @staticmethod
    def _from_transition(user_id: int, result: TransitionResult) -> HandlerResult:
        if not result.applied:
            return HandlerResult(OutcomeStatus.IGNORED, result.reason, user_id=user_id)
        notification = notification_for_transition(user_id, result)
        return HandlerResult(
            OutcomeStatus.APPLIED,
            f"{result.previous_tier.value} → {result.tier.value}",
            user_id=user_id,
            notifications=[notification] if notification else [],
        )
