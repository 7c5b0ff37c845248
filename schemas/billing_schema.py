# billing_schema.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.models import BillingInterval, SubscriptionTier


class CamelModel(BaseModel):
    """Wire format is camelCase; Python side stays snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------
# Checkout
# ---------------------------
class CheckoutSessionCreate(CamelModel):
    interval: BillingInterval = BillingInterval.MONTHLY


class CheckoutSessionRead(CamelModel):
    session_id: str
    url: Optional[str]
    include_trial: bool


class CheckoutVerifyRequest(CamelModel):
    session_id: str = Field(..., min_length=1, max_length=255)


# ---------------------------
# Subscription / usage
# ---------------------------
class UsageRead(CamelModel):
    generated_count: int
    monthly_limit: int
    remaining: int
    year: int
    month: int


class SubscriptionRead(CamelModel):
    tier: SubscriptionTier
    subscription_start: Optional[datetime] = None
    subscription_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    trial_activated: bool = False


class SubscriptionDetailRead(SubscriptionRead):
    is_premium: bool
    max_platforms: Optional[int]
    features: List[str] = []
    usage: UsageRead


class PlanRead(CamelModel):
    tier: SubscriptionTier
    monthly_limit: int
    max_platforms: Optional[int]
    features: List[str]
    price: float
    currency: str
    interval: Optional[str] = None
    trial_days: Optional[int] = None


# ---------------------------
# Webhook
# ---------------------------
class WebhookOutcomeRead(CamelModel):
    event_id: Optional[str]
    type: Optional[str]
    status: str
    detail: Optional[str] = None


class WebhookAck(CamelModel):
    received: bool = True
    events: List[WebhookOutcomeRead]


# ---------------------------
# Captions
# ---------------------------
class CaptionGenerateRequest(CamelModel):
    content_type: str = Field(..., min_length=1, max_length=50)
    content_description: str = Field(..., min_length=1, max_length=2000)
    platforms: Optional[List[str]] = None


class CaptionRead(CamelModel):
    platform: str
    caption: str
    hashtags: List[str] = []


class CaptionGenerateResponse(CamelModel):
    captions: List[CaptionRead]
    usage: UsageRead
