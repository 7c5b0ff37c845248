# ================================================================
# services/usage_ledger.py: Per-user, per-month generation counter
# ================================================================
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from core.database import insert_if_absent
from core.errors import ValidationError
from models.models import SubscriptionState, SubscriptionTier, UsageRecord, utcnow
from services.tier_policy import monthly_limit_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class Period:
    year: int
    month: int

    @classmethod
    def of(cls, moment: datetime) -> "Period":
        return cls(year=moment.year, month=moment.month)

    def next(self) -> "Period":
        if self.month == 12:
            return Period(self.year + 1, 1)
        return Period(self.year, self.month + 1)


def current_period(now: Optional[datetime] = None) -> Period:
    return Period.of(now or utcnow())


@dataclass(frozen=True)
class ConsumeResult:
    ok: bool
    current: int
    limit: int
    remaining: int


@dataclass(frozen=True)
class UsageSummary:
    generated_count: int
    monthly_limit: int
    remaining: int
    year: int
    month: int


class UsageLedger:
    """
    Durable quota counter. Methods never commit: the caller owns the
    transaction, so a limit resync can share one with a tier transition.
    """

    def get(self, session: Session, user_id: int, period: Period) -> Optional[UsageRecord]:
        statement = select(UsageRecord).where(
            UsageRecord.user_id == user_id,
            UsageRecord.year == period.year,
            UsageRecord.month == period.month,
        )
        return session.exec(statement).first()

    def get_or_create(self, session: Session, user_id: int, period: Period) -> UsageRecord:
        """
        Return the record for (user, period), creating it with a limit taken
        from the user's tier right now. Concurrent creators are resolved by the
        unique constraint; whoever loses reads the winner's row.
        """
        record = self.get(session, user_id, period)
        if record is not None:
            return record

        limit = monthly_limit_for(self.current_tier(session, user_id))
        self._insert_if_absent(session, user_id, period, limit)
        record = self.get(session, user_id, period)
        if record is None:
            raise RuntimeError(f"usage record for user {user_id} {period} vanished after insert")
        return record

    def try_consume(self, session: Session, user_id: int, period: Period, amount: int = 1) -> ConsumeResult:
        """
        Atomically add ``amount`` to the counter if it stays within the limit
        snapshot. The check and the increment are one UPDATE statement.
        """
        if amount <= 0:
            raise ValidationError("Consumption amount must be positive")

        record = self.get_or_create(session, user_id, period)

        statement = (
            update(UsageRecord)
            .where(
                UsageRecord.id == record.id,
                UsageRecord.generated_count + amount <= UsageRecord.limit_snapshot,
            )
            .values(
                generated_count=UsageRecord.generated_count + amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = session.exec(statement)
        session.refresh(record)

        if result.rowcount == 1:
            return ConsumeResult(
                ok=True,
                current=record.generated_count,
                limit=record.limit_snapshot,
                remaining=max(record.limit_snapshot - record.generated_count, 0),
            )

        logger.info(
            "🚫 Quota exhausted for user %s in %s-%02d (%s/%s)",
            user_id, period.year, period.month, record.generated_count, record.limit_snapshot,
        )
        return ConsumeResult(ok=False, current=record.generated_count, limit=record.limit_snapshot, remaining=0)

    def release(self, session: Session, user_id: int, period: Period, amount: int = 1) -> bool:
        """Give back units consumed for work that did not complete. Never goes below zero."""
        if amount <= 0:
            raise ValidationError("Release amount must be positive")

        result = session.exec(
            update(UsageRecord)
            .where(
                UsageRecord.user_id == user_id,
                UsageRecord.year == period.year,
                UsageRecord.month == period.month,
                UsageRecord.generated_count >= amount,
            )
            .values(
                generated_count=UsageRecord.generated_count - amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
        if released:
            logger.info("↩️ Released %s unit(s) for user %s in %s-%02d", amount, user_id, period.year, period.month)
        return released

    def resync_limit(
        self,
        session: Session,
        user_id: int,
        period: Period,
        tier: SubscriptionTier | str,
    ) -> UsageRecord:
        """Point the period's limit at ``tier`` without touching the count."""
        record = self.get_or_create(session, user_id, period)
        new_limit = monthly_limit_for(tier)
        if record.limit_snapshot != new_limit:
            session.exec(
                update(UsageRecord)
                .where(UsageRecord.id == record.id)
                .values(limit_snapshot=new_limit, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.refresh(record)
            logger.info(
                "🔄 Usage limit for user %s in %s-%02d resynced to %s (%s)",
                user_id, period.year, period.month, new_limit, SubscriptionTier(tier).value,
            )
        return record

    def usage_summary(self, session: Session, user_id: int, now: Optional[datetime] = None) -> UsageSummary:
        period = current_period(now)
        record = self.get_or_create(session, user_id, period)
        return UsageSummary(
            generated_count=record.generated_count,
            monthly_limit=record.limit_snapshot,
            remaining=max(record.limit_snapshot - record.generated_count, 0),
            year=period.year,
            month=period.month,
        )

    # ------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------
    @staticmethod
    def current_tier(session: Session, user_id: int) -> SubscriptionTier:
        state = session.get(SubscriptionState, user_id, populate_existing=True)
        if state is None:
            return SubscriptionTier.FREE
        return SubscriptionTier(state.tier)

    @staticmethod
    def _insert_if_absent(session: Session, user_id: int, period: Period, limit: int) -> None:
        insert_if_absent(
            session,
            UsageRecord,
            dict(
                user_id=user_id,
                year=period.year,
                month=period.month,
                generated_count=0,
                limit_snapshot=limit,
                created_at=utcnow(),
                updated_at=utcnow(),
            ),
            index_elements=["user_id", "year", "month"],
        )
