from .billing_schema import (
    CamelModel,
    CheckoutSessionCreate, CheckoutSessionRead, CheckoutVerifyRequest,
    UsageRead, SubscriptionRead, SubscriptionDetailRead, PlanRead,
    WebhookOutcomeRead, WebhookAck,
    CaptionGenerateRequest, CaptionRead, CaptionGenerateResponse,
)

__all__ = [
    "CamelModel",

    # Checkout
    "CheckoutSessionCreate", "CheckoutSessionRead", "CheckoutVerifyRequest",

    # Subscription / usage
    "UsageRead", "SubscriptionRead", "SubscriptionDetailRead", "PlanRead",

    # Webhook
    "WebhookOutcomeRead", "WebhookAck",

    # Captions
    "CaptionGenerateRequest", "CaptionRead", "CaptionGenerateResponse",
]
