# ================================================================
# services/billing_provider.py: Stripe client (injected, timeouts on)
# ================================================================
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

import stripe

from core.errors import ExternalServiceError, InvalidWebhookSignatureError, ValidationError
from models.models import BillingInterval
from services.tier_policy import TRIAL_DURATION_DAYS

logger = logging.getLogger(__name__)

COMPLETED_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})


# -------------------------
# Payload helpers
# -------------------------
def _field(obj: Any, key: str) -> Any:
    """Read a key from a webhook dict or a StripeObject alike."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _id_of(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


def from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _user_id_from(*candidates: Any) -> Optional[int]:
    for candidate in candidates:
        if candidate is None or candidate == "":
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            logger.warning("⚠️ Ignoring non-numeric user reference %r", candidate)
    return None


# -------------------------
# Normalized provider objects
# -------------------------
@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    user_id: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Any) -> "ProviderSubscription":
        period_end = _field(data, "current_period_end")
        if period_end is None:
            # Newer API versions report the period on subscription items
            items = _field(_field(data, "items"), "data") or []
            if items:
                period_end = _field(items[0], "current_period_end")
        metadata = _field(data, "metadata") or {}
        return cls(
            id=_field(data, "id"),
            status=str(_field(data, "status") or ""),
            customer_id=_id_of(_field(data, "customer")),
            current_period_end=from_timestamp(period_end),
            trial_end=from_timestamp(_field(data, "trial_end")),
            user_id=_user_id_from(_field(metadata, "userId")),
        )


@dataclass(frozen=True)
class ProviderCheckoutSession:
    id: str
    url: Optional[str]
    status: Optional[str]
    payment_status: Optional[str]
    user_id: Optional[int]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    subscription: Optional[ProviderSubscription]
    created: Optional[datetime]

    @property
    def is_completed(self) -> bool:
        return self.payment_status in COMPLETED_PAYMENT_STATUSES

    @classmethod
    def from_payload(cls, data: Any) -> "ProviderCheckoutSession":
        raw_subscription = _field(data, "subscription")
        subscription = None
        if raw_subscription is not None and not isinstance(raw_subscription, str):
            subscription = ProviderSubscription.from_payload(raw_subscription)
        metadata = _field(data, "metadata") or {}
        return cls(
            id=_field(data, "id"),
            url=_field(data, "url"),
            status=_field(data, "status"),
            payment_status=_field(data, "payment_status"),
            user_id=_user_id_from(_field(data, "client_reference_id"), _field(metadata, "userId")),
            customer_id=_id_of(_field(data, "customer")),
            subscription_id=_id_of(raw_subscription),
            subscription=subscription,
            created=from_timestamp(_field(data, "created")),
        )


@dataclass(frozen=True)
class ProviderInvoice:
    id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    billing_reason: Optional[str]
    # Start of the service period the invoice pays for
    period_start: Optional[datetime]

    @property
    def is_initial(self) -> bool:
        return self.billing_reason == "subscription_create"

    @classmethod
    def from_payload(cls, data: Any) -> "ProviderInvoice":
        subscription_ref = _field(data, "subscription")
        if subscription_ref is None:
            # Newer API versions nest the reference under parent.subscription_details
            details = _field(_field(data, "parent"), "subscription_details")
            subscription_ref = _field(details, "subscription")

        period_start = None
        for line in _field(_field(data, "lines"), "data") or []:
            start = _field(_field(line, "period"), "start")
            if start is not None:
                period_start = from_timestamp(start)
                break

        return cls(
            id=_field(data, "id"),
            subscription_id=_id_of(subscription_ref),
            customer_id=_id_of(_field(data, "customer")),
            billing_reason=_field(data, "billing_reason"),
            period_start=period_start,
        )


@dataclass(frozen=True)
class PriceInfo:
    amount: float
    currency: str
    interval: str
    product_name: str


# -------------------------
# Provider capability
# -------------------------
class BillingProvider(Protocol):
    def create_checkout_session(
        self,
        *,
        user_id: int,
        email: str,
        interval: BillingInterval,
        include_trial: bool,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
    ) -> ProviderCheckoutSession: ...

    def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession: ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    def get_price(self, interval: BillingInterval) -> PriceInfo: ...

    def construct_events(self, payload: bytes, signature_header: Optional[str]) -> List[Dict[str, Any]]: ...


class StripeBillingClient:
    """
    Thin wrapper over ``stripe.StripeClient``. Built once at startup and
    injected; every call goes through a client with a bounded timeout and any
    Stripe failure surfaces as ExternalServiceError.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        price_ids: Dict[BillingInterval, Optional[str]],
        *,
        timeout: float = 10.0,
        webhook_tolerance: int = 300,
        client: Optional[stripe.StripeClient] = None,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.price_ids = price_ids
        self.webhook_tolerance = webhook_tolerance
        self._client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=2,
        )
        # Newer SDKs namespace the v1 API under client.v1
        self._api = getattr(self._client, "v1", self._client)

    # ------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------
    def _price_for(self, interval: BillingInterval) -> str:
        price_id = self.price_ids.get(BillingInterval(interval))
        if not price_id:
            raise ValidationError(f"No Stripe price configured for {BillingInterval(interval).value} billing")
        return price_id

    def create_checkout_session(
        self,
        *,
        user_id: int,
        email: str,
        interval: BillingInterval,
        include_trial: bool,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
    ) -> ProviderCheckoutSession:
        subscription_data: Dict[str, Any] = {"metadata": {"userId": str(user_id)}}
        if include_trial:
            subscription_data["trial_period_days"] = TRIAL_DURATION_DAYS

        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": self._price_for(interval), "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": str(user_id),
            "metadata": {"userId": str(user_id)},
            "subscription_data": subscription_data,
        }
        if customer_id:
            params["customer"] = customer_id
        else:
            params["customer_email"] = email

        try:
            session = self._api.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            logger.error("❌ Stripe checkout session creation failed for user %s: %s", user_id, e)
            raise ExternalServiceError("Failed to create checkout session", service="stripe") from e

        logger.info("🧾 Checkout session %s created for user %s (trial=%s)", session.id, user_id, include_trial)
        return ProviderCheckoutSession.from_payload(session)

    def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession:
        try:
            session = self._api.checkout.sessions.retrieve(session_id, params={"expand": ["subscription"]})
        except stripe.StripeError as e:
            logger.warning("⚠️ Could not retrieve checkout session %s: %s", session_id, e)
            raise ExternalServiceError("Checkout session not found or unavailable", service="stripe") from e
        return ProviderCheckoutSession.from_payload(session)

    # ------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------
    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = self._api.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.warning("⚠️ Could not retrieve subscription %s: %s", subscription_id, e)
            raise ExternalServiceError("Failed to retrieve subscription", service="stripe") from e
        return ProviderSubscription.from_payload(subscription)

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = self._api.subscriptions.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.warning("⚠️ Could not cancel subscription %s: %s", subscription_id, e)
            raise ExternalServiceError("Failed to cancel subscription", service="stripe") from e
        logger.info("🗑️ Stripe subscription %s canceled", subscription_id)
        return ProviderSubscription.from_payload(subscription)

    # ------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------
    def get_price(self, interval: BillingInterval) -> PriceInfo:
        try:
            price = self._api.prices.retrieve(self._price_for(interval), params={"expand": ["product"]})
        except stripe.StripeError as e:
            raise ExternalServiceError("Failed to retrieve price", service="stripe") from e

        recurring = _field(price, "recurring")
        product = _field(price, "product")
        return PriceInfo(
            amount=(_field(price, "unit_amount") or 0) / 100,
            currency=str(_field(price, "currency") or "usd").upper(),
            interval=_field(recurring, "interval") or "month",
            product_name=(_field(product, "name") if not isinstance(product, str) else None) or "Premium",
        )

    # ------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------
    def construct_events(self, payload: bytes, signature_header: Optional[str]) -> List[Dict[str, Any]]:
        """
        Verify the Stripe-Signature header over the raw body and return the
        event objects it carries (a single event or a JSON array of them).
        """
        if not signature_header:
            raise InvalidWebhookSignatureError("Missing stripe-signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, tolerance=self.webhook_tolerance
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            logger.warning("❌ Invalid webhook signature: %s", e)
            raise InvalidWebhookSignatureError() from e

        try:
            parsed = json.loads(body)
        except ValueError as e:
            raise ValidationError("Invalid webhook payload") from e

        events = parsed if isinstance(parsed, list) else [parsed]
        if not all(isinstance(event, dict) for event in events):
            raise ValidationError("Invalid webhook payload")
        return events
