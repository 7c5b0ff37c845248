# models/models.py
from typing import Optional
from datetime import datetime, timezone
from enum import Enum

from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from pydantic import EmailStr


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column in this schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# ENUMS
# ============================================================
class SubscriptionTier(str, Enum):
    FREE = "FREE"
    TRIAL = "TRIAL"
    PREMIUM = "PREMIUM"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


# ============================================================
# USER (owned by the auth service; only the fields billing reads)
# ============================================================
class User(SQLModel, table=True):
    __tablename__ = "user"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: EmailStr = Field(index=True, unique=True, max_length=100, nullable=False)
    full_name: Optional[str] = Field(default=None, max_length=100)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# SUBSCRIPTION STATE (one row per user, never deleted)
# ============================================================
class SubscriptionState(SQLModel, table=True):
    __tablename__ = "subscription_state"

    user_id: int = Field(foreign_key="user.id", primary_key=True)
    tier: str = Field(default=SubscriptionTier.FREE.value, max_length=20, index=True)

    subscription_start: Optional[datetime] = None
    subscription_end: Optional[datetime] = Field(default=None, index=True)

    external_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)
    external_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)

    trial_ends_at: Optional[datetime] = None
    trial_activated: bool = Field(default=False)

    # Provider timestamp of the newest event applied to this row
    last_event_at: Optional[datetime] = None
    # Bumped on every write; transitions are compare-and-set on it
    version: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def tier_enum(self) -> SubscriptionTier:
        return SubscriptionTier(self.tier)

    @property
    def is_paid_tier(self) -> bool:
        return self.tier in (SubscriptionTier.TRIAL.value, SubscriptionTier.PREMIUM.value)


# ============================================================
# USAGE TRACKING (one row per user per calendar month)
# ============================================================
class UsageRecord(SQLModel, table=True):
    __tablename__ = "usage_tracking"
    __table_args__ = (UniqueConstraint("user_id", "year", "month", name="uq_usage_user_period"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", nullable=False, index=True)
    year: int = Field(nullable=False)
    month: int = Field(nullable=False)

    generated_count: int = Field(default=0, nullable=False)
    limit_snapshot: int = Field(nullable=False)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# WEBHOOK EVENT LOG (idempotency ledger)
# ============================================================
class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    provider_event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(max_length=100, index=True)
    event_created_at: Optional[datetime] = None

    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)

    processed: bool = Field(default=False)
    attempts: int = Field(default=0)
    processing_error: Optional[str] = None

    received_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None


# ============================================================
# CANCELED SUBSCRIPTIONS (terminal per external subscription id)
# ============================================================
class CanceledSubscription(SQLModel, table=True):
    __tablename__ = "canceled_subscription"

    external_subscription_id: str = Field(primary_key=True, max_length=255)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    canceled_at: datetime = Field(default_factory=utcnow)


# ============================================================
# EXPORTS
# ============================================================
__all__ = [
    "User",
    "SubscriptionState",
    "UsageRecord",
    "WebhookEvent",
    "CanceledSubscription",
    "SubscriptionTier",
    "BillingInterval",
    "utcnow",
]
