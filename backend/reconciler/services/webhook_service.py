"""Webhook ingestion - verify, decode and normalize billing provider events

Each recognized event kind has one handler that turns the provider payload into
a ``StateTransition``; every transition goes through the same
``ReconciliationService.apply_event`` path. Delivery is at-least-once and
unordered, which apply_event tolerates by being a plain assignment.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from reconciler.core.exceptions import ProviderUnavailable
from reconciler.core.logging import webhook_logger
from reconciler.core.metrics import webhook_events_counter
from reconciler.schemas.subscriptions import SubscriptionStatus
from reconciler.services.reconciliation_service import ReconciliationService, status_from_provider
from reconciler.services.stripe_service import BillingClient, get_stripe_value, to_datetime

logger = logging.getLogger(__name__)


class WebhookEventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"

    @classmethod
    def parse(cls, event_type: str) -> Optional["WebhookEventKind"]:
        try:
            return cls(event_type)
        except ValueError:
            return None


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    STALE = "stale"


@dataclass(frozen=True)
class StateTransition:
    user_id: str
    new_status: SubscriptionStatus
    event_kind: WebhookEventKind
    external_subscription_id: Optional[str] = None
    provider_event_at: Optional[datetime] = None


@dataclass(frozen=True)
class WebhookResult:
    event_id: Optional[str]
    event_type: str
    outcome: WebhookOutcome
    user_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object"""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return get_stripe_value(value, 'id')


class WebhookIngestor:
    def __init__(
        self,
        billing: BillingClient,
        reconciliation: ReconciliationService,
        metadata_key: str = "user_id",
    ):
        self._billing = billing
        self._reconciliation = reconciliation
        self._metadata_key = metadata_key
        self._handlers: Dict[WebhookEventKind, Callable[[Any, Optional[datetime]], Awaitable[Optional[StateTransition]]]] = {
            WebhookEventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            WebhookEventKind.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            WebhookEventKind.PAYMENT_FAILED: self._on_payment_failed,
            WebhookEventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            WebhookEventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    async def ingest(self, payload: bytes, signature: str) -> WebhookResult:
        """Verify and process one webhook delivery.

        Raises:
            SignatureInvalid: verification failed; nothing was changed.
            ProviderUnavailable: a referenced subscription could not be read;
                the caller should answer with a failure so the provider redelivers.
        """
        event = self._billing.construct_event(payload, signature)

        event_id = get_stripe_value(event, 'id')
        event_type = str(get_stripe_value(event, 'type', ''))
        data_object = get_stripe_value(get_stripe_value(event, 'data'), 'object', {})
        created = to_datetime(get_stripe_value(event, 'created'))

        kind = WebhookEventKind.parse(event_type)
        if kind is None:
            webhook_logger.info(f"Unhandled event type: {event_type} ({event_id})")
            return self._finish(WebhookResult(event_id, event_type, WebhookOutcome.IGNORED))

        try:
            transition = await self._handlers[kind](data_object, created)
        except ProviderUnavailable:
            webhook_events_counter.labels(event_type=event_type, outcome="provider_error").inc()
            webhook_logger.error(f"Event {event_id} ({event_type}) could not be resolved, provider unavailable")
            raise

        if transition is None:
            return self._finish(WebhookResult(event_id, event_type, WebhookOutcome.IGNORED))

        record = await self._reconciliation.apply_event(
            transition.user_id,
            transition.new_status,
            transition.external_subscription_id,
            provider_event_at=transition.provider_event_at,
        )
        outcome = WebhookOutcome.APPLIED if record is not None else WebhookOutcome.STALE
        return self._finish(WebhookResult(
            event_id, event_type, outcome,
            user_id=transition.user_id,
            status=transition.new_status,
        ))

    def _finish(self, result: WebhookResult) -> WebhookResult:
        webhook_events_counter.labels(event_type=result.event_type, outcome=result.outcome.value).inc()
        webhook_logger.info(
            f"Event {result.event_id} ({result.event_type}): {result.outcome.value}"
            + (f" user={result.user_id} status={result.status.value}" if result.status else "")
        )
        return result

    # ------------------------------------------------------------------
    # identity extraction
    # ------------------------------------------------------------------

    def _user_from_metadata(self, obj: Any) -> Optional[str]:
        metadata = get_stripe_value(obj, 'metadata', {}) or {}
        return get_stripe_value(metadata, self._metadata_key) or None

    async def _user_from_subscription(self, subscription_id: str) -> Optional[str]:
        # ProviderUnavailable propagates: the provider redelivers on failure
        subscription = await self._billing.retrieve_subscription(subscription_id)
        return subscription.tagged_user(self._metadata_key)

    def _invoice_subscription(self, invoice: Any) -> Tuple[Optional[str], Any]:
        """(subscription id, metadata-bearing details) across invoice payload versions"""
        details = get_stripe_value(invoice, 'subscription_details')
        subscription_id = _object_id(get_stripe_value(invoice, 'subscription'))
        parent = get_stripe_value(invoice, 'parent')
        if parent is not None:
            parent_details = get_stripe_value(parent, 'subscription_details')
            if parent_details is not None:
                details = details or parent_details
                subscription_id = subscription_id or _object_id(get_stripe_value(parent_details, 'subscription'))
        return subscription_id, details

    async def _tag_handle(self, subscription_id: str, user_id: str) -> None:
        """Attach the user id to the provider subscription if it is not already there."""
        try:
            subscription = await self._billing.retrieve_subscription(subscription_id)
            if subscription.tagged_user(self._metadata_key) == user_id:
                return
            metadata = dict(subscription.metadata)
            metadata[self._metadata_key] = user_id
            await self._billing.update_subscription_metadata(subscription_id, metadata)
            logger.info(f"Updated subscription {subscription_id} with user id: {user_id}")
        except ProviderUnavailable as e:
            logger.error(f"Failed to update subscription metadata for {subscription_id}: {e}")

    # ------------------------------------------------------------------
    # handlers, one per event kind
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, session: Any, created: Optional[datetime]) -> Optional[StateTransition]:
        user_id = self._user_from_metadata(session) or get_stripe_value(session, 'client_reference_id')
        subscription_id = _object_id(get_stripe_value(session, 'subscription'))
        if not user_id:
            logger.warning(f"Checkout session {get_stripe_value(session, 'id')} carries no user id, ignoring")
            return None
        if subscription_id:
            await self._tag_handle(subscription_id, user_id)
        return StateTransition(
            user_id=user_id,
            new_status=SubscriptionStatus.ACTIVE,
            event_kind=WebhookEventKind.CHECKOUT_COMPLETED,
            external_subscription_id=subscription_id,
            provider_event_at=created,
        )

    async def _invoice_transition(
        self,
        invoice: Any,
        created: Optional[datetime],
        kind: WebhookEventKind,
        new_status: SubscriptionStatus,
    ) -> Optional[StateTransition]:
        subscription_id, details = self._invoice_subscription(invoice)
        if not subscription_id:
            logger.info(f"Invoice {get_stripe_value(invoice, 'id')} has no subscription, ignoring")
            return None

        user_id = self._user_from_metadata(details) if details is not None else None
        if not user_id:
            user_id = await self._user_from_subscription(subscription_id)
        if not user_id:
            logger.warning(f"Subscription {subscription_id} carries no user id, ignoring {kind.value}")
            return None

        return StateTransition(
            user_id=user_id,
            new_status=new_status,
            event_kind=kind,
            external_subscription_id=subscription_id,
            provider_event_at=created,
        )

    async def _on_payment_succeeded(self, invoice: Any, created: Optional[datetime]) -> Optional[StateTransition]:
        return await self._invoice_transition(
            invoice, created, WebhookEventKind.PAYMENT_SUCCEEDED, SubscriptionStatus.ACTIVE
        )

    async def _on_payment_failed(self, invoice: Any, created: Optional[datetime]) -> Optional[StateTransition]:
        return await self._invoice_transition(
            invoice, created, WebhookEventKind.PAYMENT_FAILED, SubscriptionStatus.PAST_DUE
        )

    async def _on_subscription_updated(self, subscription: Any, created: Optional[datetime]) -> Optional[StateTransition]:
        user_id = self._user_from_metadata(subscription)
        if not user_id:
            logger.info(f"Subscription {get_stripe_value(subscription, 'id')} update carries no user id, ignoring")
            return None
        return StateTransition(
            user_id=user_id,
            new_status=status_from_provider(str(get_stripe_value(subscription, 'status', ''))),
            event_kind=WebhookEventKind.SUBSCRIPTION_UPDATED,
            external_subscription_id=get_stripe_value(subscription, 'id'),
            provider_event_at=created,
        )

    async def _on_subscription_deleted(self, subscription: Any, created: Optional[datetime]) -> Optional[StateTransition]:
        user_id = self._user_from_metadata(subscription)
        if not user_id:
            logger.info(f"Subscription {get_stripe_value(subscription, 'id')} deletion carries no user id, ignoring")
            return None
        return StateTransition(
            user_id=user_id,
            new_status=SubscriptionStatus.CANCELED,
            event_kind=WebhookEventKind.SUBSCRIPTION_DELETED,
            external_subscription_id=get_stripe_value(subscription, 'id'),
            provider_event_at=created,
        )
