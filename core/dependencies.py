# core/dependencies.py
from typing import Optional

from fastapi import Request

from services.caption_generator import CaptionGenerator
from services.checkout_service import CheckoutOrchestrator
from services.email_service import EmailService
from services.quota_gate import QuotaGate
from services.rate_limiter import RateLimiter
from services.subscription_state import SubscriptionStateService
from services.webhook_processor import WebhookProcessor


# ========================================
# 🔌 Collaborators built by create_app()
# ========================================
def get_subscription_states(request: Request) -> SubscriptionStateService:
    return request.app.state.subscription_states


def get_checkout(request: Request) -> CheckoutOrchestrator:
    return request.app.state.checkout


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


def get_quota_gate(request: Request) -> QuotaGate:
    return request.app.state.quota_gate


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_email_service(request: Request) -> Optional[EmailService]:
    return request.app.state.email_service


def get_caption_generator(request: Request) -> Optional[CaptionGenerator]:
    return request.app.state.caption_generator
