# ================================================================
# services/quota_gate.py: Expiry reconcile + atomic quota consume
# ================================================================
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from core.errors import ExternalServiceError, LimitExceededError
from models.models import SubscriptionTier, utcnow
from services.expiry_reconciler import ExpiryReconciler
from services.usage_ledger import ConsumeResult, Period, UsageLedger, UsageSummary, current_period

logger = logging.getLogger(__name__)


class QuotaGate:
    """Every generation request passes here before any work is done."""

    def __init__(self, ledger: UsageLedger, reconciler: ExpiryReconciler, fail_open: bool = False):
        self.ledger = ledger
        self.reconciler = reconciler
        self.fail_open = fail_open

    def check_and_consume(
        self,
        session: Session,
        user_id: int,
        amount: int = 1,
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        now = now or utcnow()
        period = current_period(now)

        try:
            self.reconciler.reconcile(session, user_id, now)
            result = self.ledger.try_consume(session, user_id, period, amount)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            return self._store_failure(user_id, period, e)

        if not result.ok:
            tier = self.ledger.current_tier(session, user_id)
            raise LimitExceededError(
                f"Monthly limit of {result.limit} generations reached",
                current_usage=result.current,
                limit=result.limit,
                upgrade=tier == SubscriptionTier.FREE,
            )
        return result

    def _store_failure(self, user_id: int, period: Period, error: Exception) -> ConsumeResult:
        if self.fail_open:
            logger.error("❌ Quota store unavailable for user %s, allowing request (fail-open): %s", user_id, error)
            return ConsumeResult(ok=True, current=0, limit=0, remaining=0)
        logger.error("❌ Quota store unavailable for user %s in %s-%02d: %s", user_id, period.year, period.month, error)
        raise ExternalServiceError("Usage tracking is temporarily unavailable", service="database")

    def release(self, session: Session, user_id: int, amount: int = 1, now: Optional[datetime] = None) -> bool:
        """Refund units taken by check_and_consume when the work then failed."""
        period = current_period(now or utcnow())
        try:
            released = self.ledger.release(session, user_id, period, amount)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("❌ Could not release quota for user %s in %s-%02d: %s", user_id, period.year, period.month, e)
            return False
        return released

    def usage(self, session: Session, user_id: int, now: Optional[datetime] = None) -> UsageSummary:
        """Current period usage, with any pending expiry applied first."""
        now = now or utcnow()
        try:
            self.reconciler.reconcile(session, user_id, now)
            summary = self.ledger.usage_summary(session, user_id, now)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("❌ Could not read usage for user %s: %s", user_id, e)
            raise ExternalServiceError("Usage tracking is temporarily unavailable", service="database")
        return summary

    def effective_tier(self, session: Session, user_id: int, now: Optional[datetime] = None) -> SubscriptionTier:
        """The user's tier once any lapsed paid window has been downgraded."""
        try:
            self.reconciler.reconcile(session, user_id, now or utcnow())
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("❌ Could not reconcile tier for user %s: %s", user_id, e)
            raise ExternalServiceError("Usage tracking is temporarily unavailable", service="database")
        return self.ledger.current_tier(session, user_id)
