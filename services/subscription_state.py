# ================================================================
# services/subscription_state.py: Tier state machine
# ================================================================
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, NamedTuple, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlmodel import Session, select

from core.database import insert_if_absent
from core.errors import ConflictError
from models.models import CanceledSubscription, SubscriptionState, SubscriptionTier, utcnow
from services.billing_provider import ProviderInvoice, ProviderSubscription
from services.tier_policy import TRIAL_DURATION_DAYS
from services.usage_ledger import UsageLedger, current_period

logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = 3

# A renewal invoice whose period starts this close to the stored end date is
# the one that moves the end date forward; anything earlier is already covered.
RENEWAL_OVERLAP_TOLERANCE = timedelta(days=1)

DOWNGRADE_STATUSES = frozenset({"incomplete_expired", "unpaid"})
UNCHANGED_STATUSES = frozenset({"past_due", "incomplete"})

_FREE_VALUES: Dict[str, Any] = {
    "tier": SubscriptionTier.FREE.value,
    "subscription_start": None,
    "subscription_end": None,
    "trial_ends_at": None,
    "external_subscription_id": None,
}


class Skip(NamedTuple):
    reason: str


Decision = Union[Dict[str, Any], Skip]


@dataclass(frozen=True)
class SubscriptionSnapshot:
    tier: SubscriptionTier
    subscription_start: Optional[datetime]
    subscription_end: Optional[datetime]
    trial_ends_at: Optional[datetime]
    trial_activated: bool
    external_customer_id: Optional[str] = None

    @classmethod
    def of(cls, state: SubscriptionState) -> "SubscriptionSnapshot":
        return cls(
            tier=SubscriptionTier(state.tier),
            subscription_start=state.subscription_start,
            subscription_end=state.subscription_end,
            trial_ends_at=state.trial_ends_at,
            trial_activated=state.trial_activated,
            external_customer_id=state.external_customer_id,
        )


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    previous_tier: SubscriptionTier
    tier: SubscriptionTier
    reason: str
    snapshot: SubscriptionSnapshot

    @property
    def tier_changed(self) -> bool:
        return self.applied and self.previous_tier != self.tier


class SubscriptionStateService:
    """
    Owns every write to ``subscription_state``.

    Writes are compare-and-set on ``version`` and retried on contention.
    Provider-driven transitions also carry the provider's event time and are
    dropped when an event at least as new has already been applied. Nothing
    here commits; the caller's transaction decides.
    """

    def __init__(self, ledger: UsageLedger, max_attempts: int = MAX_TRANSITION_ATTEMPTS):
        self.ledger = ledger
        self.max_attempts = max_attempts

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------
    def get_or_create_state(self, session: Session, user_id: int) -> SubscriptionState:
        now = utcnow()
        insert_if_absent(
            session,
            SubscriptionState,
            dict(
                user_id=user_id,
                tier=SubscriptionTier.FREE.value,
                trial_activated=False,
                version=0,
                created_at=now,
                updated_at=now,
            ),
            index_elements=["user_id"],
        )
        state = session.get(SubscriptionState, user_id, populate_existing=True)
        if state is None:
            raise RuntimeError(f"subscription state for user {user_id} vanished after insert")
        return state

    def snapshot(self, session: Session, user_id: int) -> SubscriptionSnapshot:
        return SubscriptionSnapshot.of(self.get_or_create_state(session, user_id))

    def find_user_by_customer(self, session: Session, customer_id: Optional[str]) -> Optional[int]:
        if not customer_id:
            return None
        statement = select(SubscriptionState.user_id).where(SubscriptionState.external_customer_id == customer_id)
        return session.exec(statement).first()

    def find_user_by_subscription(self, session: Session, subscription_id: Optional[str]) -> Optional[int]:
        if not subscription_id:
            return None
        statement = select(SubscriptionState.user_id).where(
            SubscriptionState.external_subscription_id == subscription_id
        )
        user_id = session.exec(statement).first()
        if user_id is None:
            tombstone = session.get(CanceledSubscription, subscription_id)
            user_id = tombstone.user_id if tombstone else None
        return user_id

    # ------------------------------------------------------------
    # Tombstones
    # ------------------------------------------------------------
    def is_tombstoned(self, session: Session, subscription_id: Optional[str]) -> bool:
        if not subscription_id:
            return False
        return session.get(CanceledSubscription, subscription_id) is not None

    def tombstone(self, session: Session, subscription_id: str, user_id: Optional[int]) -> None:
        insert_if_absent(
            session,
            CanceledSubscription,
            dict(external_subscription_id=subscription_id, user_id=user_id, canceled_at=utcnow()),
            index_elements=["external_subscription_id"],
        )

    # ------------------------------------------------------------
    # Provider-driven transitions
    # ------------------------------------------------------------
    def apply_provider_subscription(
        self,
        session: Session,
        user_id: int,
        subscription: ProviderSubscription,
        event_at: Optional[datetime],
        *,
        customer_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Map a provider subscription status onto the tier machine."""
        now = now or utcnow()
        status = subscription.status

        if status == "canceled":
            return self.apply_deletion(session, user_id, subscription.id, event_at, now=now)

        if status in DOWNGRADE_STATUSES:
            return self._transition(
                session, user_id, lambda state: self._decide_lapse(state, subscription.id),
                event_at=event_at, now=now,
            )

        if status not in ("trialing", "active"):
            reason = f"status {status or 'unknown'} leaves tier unchanged"
            if status not in UNCHANGED_STATUSES:
                logger.warning("⚠️ Unrecognized subscription status %r for %s", status, subscription.id)
            return self._skip(session, user_id, reason)

        if self.is_tombstoned(session, subscription.id):
            return self._skip(session, user_id, f"subscription {subscription.id} was canceled")

        customer_id = customer_id or subscription.customer_id

        def decide(state: SubscriptionState) -> Decision:
            if status == "trialing":
                return self._decide_trial(state, subscription, customer_id, now)
            return self._decide_premium(state, subscription, customer_id, now)

        return self._transition(session, user_id, decide, event_at=event_at, now=now)

    def apply_deletion(
        self,
        session: Session,
        user_id: int,
        subscription_id: str,
        event_at: Optional[datetime],
        *,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Cancellation is terminal for the subscription id: it is tombstoned
        whatever the outcome, and the user is downgraded when it is the
        current subscription regardless of event ordering.
        """
        self.tombstone(session, subscription_id, user_id)

        def decide(state: SubscriptionState) -> Decision:
            if state.external_subscription_id != subscription_id:
                return Skip(f"subscription {subscription_id} is not current")
            if not state.is_paid_tier:
                return Skip("already on free plan")
            return dict(_FREE_VALUES)

        return self._transition(session, user_id, decide, event_at=event_at, now=now, enforce_order=False)

    def apply_renewal(
        self,
        session: Session,
        user_id: int,
        invoice: ProviderInvoice,
        subscription: Optional[ProviderSubscription],
        event_at: Optional[datetime],
        *,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        A paid invoice. For an existing Premium subscription it extends the
        paid window to the provider's period end, or by one calendar month
        when the provider reports no later end. Otherwise it activates from
        the provider's view of the subscription.
        """
        now = now or utcnow()
        state = self.get_or_create_state(session, user_id)

        if invoice.is_initial or state.tier != SubscriptionTier.PREMIUM.value:
            if subscription is None:
                return self._skip(session, user_id, "no subscription attached to invoice")
            return self.apply_provider_subscription(
                session, user_id, subscription, event_at, customer_id=invoice.customer_id, now=now
            )

        if self.is_tombstoned(session, invoice.subscription_id):
            return self._skip(session, user_id, f"subscription {invoice.subscription_id} was canceled")

        def decide(state: SubscriptionState) -> Decision:
            if state.tier != SubscriptionTier.PREMIUM.value:
                return Skip("not premium")
            if invoice.subscription_id and state.external_subscription_id not in (None, invoice.subscription_id):
                return Skip(f"invoice for non-current subscription {invoice.subscription_id}")
            if (
                invoice.period_start is not None
                and state.subscription_end is not None
                and state.subscription_end > invoice.period_start + RENEWAL_OVERLAP_TOLERANCE
            ):
                return Skip("billing period already covered")
            base = max(state.subscription_end or now, now)
            provider_end = subscription.current_period_end if subscription else None
            if provider_end is not None and provider_end > base:
                # Yearly plans renew for a year; the provider knows the real period
                return {"subscription_end": provider_end}
            return {"subscription_end": base + relativedelta(months=1)}

        return self._transition(session, user_id, decide, event_at=event_at, now=now)

    # ------------------------------------------------------------
    # Local transitions
    # ------------------------------------------------------------
    def downgrade(
        self,
        session: Session,
        user_id: int,
        *,
        reason: str,
        subscription_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Local cancel. Stamps ``last_event_at`` with ``now`` so provider
        events older than the cancel cannot undo it.
        """
        now = now or utcnow()
        if subscription_id:
            self.tombstone(session, subscription_id, user_id)

        def decide(state: SubscriptionState) -> Decision:
            if not state.is_paid_tier:
                return Skip("already on free plan")
            return dict(_FREE_VALUES)

        result = self._transition(session, user_id, decide, event_at=now, now=now, enforce_order=False)
        if result.applied:
            logger.info("⬇️ User %s downgraded to FREE (%s)", user_id, reason)
        return result

    # ------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------
    @staticmethod
    def _decide_trial(
        state: SubscriptionState,
        subscription: ProviderSubscription,
        customer_id: Optional[str],
        now: datetime,
    ) -> Decision:
        if state.tier == SubscriptionTier.PREMIUM.value:
            return Skip("trial ignored for premium user")
        trial_end = subscription.trial_end or subscription.current_period_end or now + timedelta(days=TRIAL_DURATION_DAYS)
        same_trial = state.tier == SubscriptionTier.TRIAL.value and state.external_subscription_id == subscription.id
        return {
            "tier": SubscriptionTier.TRIAL.value,
            "subscription_start": state.subscription_start if same_trial else now,
            "subscription_end": trial_end,
            "trial_ends_at": trial_end,
            "trial_activated": True,
            "external_subscription_id": subscription.id,
            "external_customer_id": customer_id or state.external_customer_id,
        }

    @staticmethod
    def _decide_premium(
        state: SubscriptionState,
        subscription: ProviderSubscription,
        customer_id: Optional[str],
        now: datetime,
    ) -> Decision:
        period_end = subscription.current_period_end or now + relativedelta(months=1)
        continuing = state.tier == SubscriptionTier.PREMIUM.value and state.external_subscription_id == subscription.id
        return {
            "tier": SubscriptionTier.PREMIUM.value,
            "subscription_start": state.subscription_start if continuing and state.subscription_start else now,
            "subscription_end": period_end,
            "trial_ends_at": None,
            "external_subscription_id": subscription.id,
            "external_customer_id": customer_id or state.external_customer_id,
        }

    @staticmethod
    def _decide_lapse(state: SubscriptionState, subscription_id: str) -> Decision:
        if state.external_subscription_id != subscription_id:
            return Skip(f"subscription {subscription_id} is not current")
        if not state.is_paid_tier:
            return Skip("already on free plan")
        return dict(_FREE_VALUES)

    # ------------------------------------------------------------
    # Compare-and-set core
    # ------------------------------------------------------------
    def _compare_and_set(self, session: Session, state: SubscriptionState, values: Dict[str, Any]) -> bool:
        statement = (
            update(SubscriptionState)
            .where(
                SubscriptionState.user_id == state.user_id,
                SubscriptionState.version == state.version,
            )
            .values(**values, version=state.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return session.exec(statement).rowcount == 1

    def _transition(
        self,
        session: Session,
        user_id: int,
        decide: Callable[[SubscriptionState], Decision],
        *,
        event_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        enforce_order: bool = True,
    ) -> TransitionResult:
        now = now or utcnow()

        for attempt in range(1, self.max_attempts + 1):
            state = self.get_or_create_state(session, user_id)
            previous = SubscriptionTier(state.tier)

            if (
                enforce_order
                and event_at is not None
                and state.last_event_at is not None
                and state.last_event_at > event_at
            ):
                logger.info(
                    "⏭️ Stale event for user %s (event %s, last applied %s)",
                    user_id, event_at, state.last_event_at,
                )
                return TransitionResult(False, previous, previous, "stale event", SubscriptionSnapshot.of(state))

            decision = decide(state)
            if isinstance(decision, Skip):
                return TransitionResult(False, previous, previous, decision.reason, SubscriptionSnapshot.of(state))

            values = dict(decision)
            if event_at is not None:
                values["last_event_at"] = max(event_at, state.last_event_at or event_at)

            if self._compare_and_set(session, state, values):
                session.refresh(state)
                new_tier = SubscriptionTier(state.tier)
                if new_tier != previous:
                    self.ledger.resync_limit(session, user_id, current_period(now), new_tier)
                    logger.info("🔁 User %s moved %s → %s", user_id, previous.value, new_tier.value)
                return TransitionResult(True, previous, new_tier, "applied", SubscriptionSnapshot.of(state))

            logger.debug("Version conflict on subscription state for user %s (attempt %s)", user_id, attempt)

        logger.error("❌ Gave up on subscription transition for user %s after %s attempts", user_id, self.max_attempts)
        raise ConflictError("Subscription state changed concurrently, please retry")

    def _skip(self, session: Session, user_id: int, reason: str) -> TransitionResult:
        state = self.get_or_create_state(session, user_id)
        tier = SubscriptionTier(state.tier)
        logger.info("⏭️ No tier change for user %s: %s", user_id, reason)
        return TransitionResult(False, tier, tier, reason, SubscriptionSnapshot.of(state))
