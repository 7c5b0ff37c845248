# ================================================================
# services/expiry_reconciler.py: Lazy + periodic downgrade of lapsed tiers
# ================================================================
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from models.models import SubscriptionState, SubscriptionTier, utcnow
from services.usage_ledger import UsageLedger, current_period

logger = logging.getLogger(__name__)

PAID_TIERS = (SubscriptionTier.TRIAL.value, SubscriptionTier.PREMIUM.value)


def _expired(now: datetime):
    return (
        SubscriptionState.tier.in_(PAID_TIERS),
        SubscriptionState.subscription_end.is_not(None),
        SubscriptionState.subscription_end < now,
    )


def _downgrade_values():
    return dict(
        tier=SubscriptionTier.FREE.value,
        subscription_start=None,
        subscription_end=None,
        trial_ends_at=None,
        external_subscription_id=None,
        version=SubscriptionState.version + 1,
        updated_at=utcnow(),
    )


class ExpiryReconciler:
    """
    Downgrades TRIAL/PREMIUM users whose paid window has ended.

    The downgrade is a single conditional UPDATE, so a concurrent renewal
    that moved ``subscription_end`` forward simply makes it match nothing.
    Usage counts are never touched; only the period's limit is resynced.
    """

    def __init__(self, ledger: UsageLedger):
        self.ledger = ledger

    def reconcile(self, session: Session, user_id: int, now: Optional[datetime] = None) -> bool:
        """Downgrade one user if expired. Returns True when a downgrade happened."""
        now = now or utcnow()
        statement = (
            update(SubscriptionState)
            .where(SubscriptionState.user_id == user_id, *_expired(now))
            .values(**_downgrade_values())
            .execution_options(synchronize_session=False)
        )
        if session.exec(statement).rowcount != 1:
            return False

        self.ledger.resync_limit(session, user_id, current_period(now), SubscriptionTier.FREE)
        logger.info("⌛ Subscription expired for user %s, downgraded to FREE", user_id)
        return True

    def sweep(self, session: Session, now: Optional[datetime] = None) -> List[int]:
        """Downgrade every expired user. Commits per user so one failure does not stall the rest."""
        now = now or utcnow()
        candidates = session.exec(select(SubscriptionState.user_id).where(*_expired(now))).all()

        downgraded: List[int] = []
        for user_id in candidates:
            try:
                if self.reconcile(session, user_id, now):
                    downgraded.append(user_id)
                session.commit()
            except Exception as e:
                session.rollback()
                logger.error(f"❌ Expiry sweep failed for user {user_id}: {e}")

        if downgraded:
            logger.info(f"🔔 Expiry sweep downgraded {len(downgraded)} subscription(s)")
        return downgraded
