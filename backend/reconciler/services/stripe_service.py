"""Stripe billing client - thin async wrapper over the stripe library, no business logic"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import stripe
from stripe import SignatureVerificationError, StripeError

from reconciler.core.config import settings
from reconciler.core.exceptions import ProviderUnavailable, SignatureInvalid
from reconciler.core.metrics import provider_calls_counter

logger = logging.getLogger(__name__)

# Provider statuses that grant the entitlement
LIVE_PROVIDER_STATUSES = frozenset({"active", "trialing"})


@dataclass(frozen=True)
class ProviderSubscription:
    """The provider's subscription object, reduced to what reconciliation reads"""
    id: str
    status: str
    metadata: Dict[str, str] = field(default_factory=dict)
    created: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_PROVIDER_STATUSES

    def tagged_user(self, metadata_key: str) -> Optional[str]:
        return self.metadata.get(metadata_key) or None


@dataclass(frozen=True)
class SubscriptionScan:
    """Result of one bounded listing of the provider account"""
    subscriptions: List[ProviderSubscription]
    truncated: bool = False


class BillingClient(Protocol):
    async def list_subscriptions(self, status: str = "all") -> SubscriptionScan:
        ...

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> ProviderSubscription:
        ...

    async def create_checkout_session(self, user_id: str, email: Optional[str]) -> str:
        ...

    def construct_event(self, payload: bytes, signature: str) -> Any:
        ...


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def to_provider_subscription(obj: Any) -> ProviderSubscription:
    metadata = get_stripe_value(obj, 'metadata', {}) or {}
    return ProviderSubscription(
        id=str(get_stripe_value(obj, 'id', '')),
        status=str(get_stripe_value(obj, 'status', '')),
        metadata={str(k): str(v) for k, v in dict(metadata).items()},
        created=to_datetime(get_stripe_value(obj, 'created')),
        current_period_end=to_datetime(get_stripe_value(obj, 'current_period_end')),
    )


def _stripe_message(error: StripeError) -> str:
    return getattr(error, 'user_message', None) or str(error) or type(error).__name__


# ============================================================================
# CLIENT
# ============================================================================

class StripeBillingClient:
    """BillingClient backed by the stripe module-level API.

    The stripe library is blocking, so every call runs in a worker thread and is
    bounded by ``timeout``. A timeout or any ``StripeError`` surfaces as
    ``ProviderUnavailable``; a timed-out call is never assumed to have succeeded.
    """

    def __init__(
        self,
        secret_key: str = "",
        webhook_secret: str = "",
        price_id: str = "",
        metadata_key: str = "user_id",
        timeout: float = 10.0,
        page_size: int = 100,
        max_pages: int = 1,
        frontend_url: str = "http://localhost:3000",
    ):
        if secret_key:
            stripe.api_key = secret_key
        else:
            logger.warning("Stripe secret key not configured, provider calls will fail")
        self._webhook_secret = webhook_secret
        self._price_id = price_id
        self._metadata_key = metadata_key
        self._timeout = timeout
        self._page_size = page_size
        self._max_pages = max_pages
        self._frontend_url = frontend_url.rstrip("/")

    @classmethod
    def from_settings(cls) -> "StripeBillingClient":
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            price_id=settings.STRIPE_PRICE_ID,
            metadata_key=settings.SUBSCRIPTION_METADATA_KEY,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            page_size=settings.SUBSCRIPTION_SCAN_PAGE_SIZE,
            max_pages=settings.SUBSCRIPTION_SCAN_MAX_PAGES,
            frontend_url=settings.FRONTEND_URL,
        )

    async def _call(self, operation: str, func, *args, **kwargs):
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self._timeout
            )
        except asyncio.TimeoutError:
            provider_calls_counter.labels(operation=operation, outcome="timeout").inc()
            logger.error(f"Stripe {operation} timed out after {self._timeout}s")
            raise ProviderUnavailable(f"Stripe {operation} timed out after {self._timeout}s", operation) from None
        except StripeError as e:
            provider_calls_counter.labels(operation=operation, outcome="error").inc()
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProviderUnavailable(_stripe_message(e), operation) from e
        provider_calls_counter.labels(operation=operation, outcome="success").inc()
        return result

    async def list_subscriptions(self, status: str = "all") -> SubscriptionScan:
        """List subscriptions with the given Stripe status filter, following pagination up to the page cap."""
        subscriptions: List[ProviderSubscription] = []
        starting_after = None
        has_more = False
        for _ in range(self._max_pages):
            params = {"limit": self._page_size, "status": status}
            if starting_after:
                params["starting_after"] = starting_after
            page = await self._call("list", stripe.Subscription.list, **params)
            data = get_stripe_value(page, 'data', []) or []
            subscriptions.extend(to_provider_subscription(item) for item in data)
            has_more = bool(get_stripe_value(page, 'has_more', False))
            if not has_more or not data:
                has_more = False
                break
            starting_after = get_stripe_value(data[-1], 'id')

        if has_more:
            logger.warning(
                f"Subscription scan stopped at {len(subscriptions)} entries "
                f"({self._max_pages} page(s) of {self._page_size}); older subscriptions were not inspected"
            )
        return SubscriptionScan(subscriptions=subscriptions, truncated=has_more)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        obj = await self._call("retrieve", stripe.Subscription.retrieve, subscription_id)
        return to_provider_subscription(obj)

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        obj = await self._call("cancel", stripe.Subscription.cancel, subscription_id)
        return to_provider_subscription(obj)

    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> ProviderSubscription:
        obj = await self._call("update_metadata", stripe.Subscription.modify, subscription_id, metadata=metadata)
        return to_provider_subscription(obj)

    async def create_checkout_session(self, user_id: str, email: Optional[str]) -> str:
        if not self._price_id:
            raise ProviderUnavailable("STRIPE_PRICE_ID is not configured", "checkout")
        params = {
            "payment_method_types": ["card"],
            "mode": "subscription",
            "line_items": [{"price": self._price_id, "quantity": 1}],
            "success_url": f"{self._frontend_url}/success.html",
            "cancel_url": f"{self._frontend_url}/cancel.html",
            "metadata": {self._metadata_key: user_id},
            "subscription_data": {"metadata": {self._metadata_key: user_id}},
        }
        if email:
            params["customer_email"] = email
        session = await self._call("checkout", stripe.checkout.Session.create, **params)
        url = get_stripe_value(session, 'url')
        if not url:
            raise ProviderUnavailable("Stripe checkout session response is missing a url", "checkout")
        return str(url)

    def construct_event(self, payload: bytes, signature: str) -> Any:
        """Verify the signature and decode the event. Fails closed."""
        if not self._webhook_secret:
            logger.error("Webhook secret not configured, rejecting event")
            raise SignatureInvalid("Webhook secret not configured")
        if not signature:
            raise SignatureInvalid("Missing stripe-signature header")
        try:
            return stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except SignatureVerificationError as e:
            raise SignatureInvalid("Invalid signature") from e
        except ValueError as e:
            raise SignatureInvalid("Invalid payload") from e
