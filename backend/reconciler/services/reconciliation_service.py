"""Reconciliation service - canonical state transitions across provider, cache and durable store

Every mutating operation for a user runs inside that user's RequestGate key.
The cache is written first and unconditionally; the durable store is a
best-effort mirror whose failures are logged and counted, never raised.

Webhook events carry no sequence number, so a redelivered older event can
overwrite a newer state. That is the documented behaviour; the opt-in ordering
guard (``ordering_guard=True``) compares provider event timestamps instead.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from reconciler.core.exceptions import NotFoundUpstream, NotSubscribed, PersistenceFailure
from reconciler.core.metrics import persistence_failures_counter, reconciliation_operations_counter
from reconciler.schemas.subscriptions import (
    RecordSource, SubscriptionRecord, SubscriptionStatus, utcnow
)
from reconciler.services.persistence import PersistenceAdapter
from reconciler.services.request_gate import RequestGate
from reconciler.services.status_cache import StatusCache
from reconciler.services.stripe_service import BillingClient, ProviderSubscription, SubscriptionScan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancelResult:
    subscription_id: str
    record: SubscriptionRecord


@dataclass(frozen=True)
class UserSubscriptions:
    """Provider handles tagged with one user, from a single bounded scan"""
    user_id: str
    scanned: int
    truncated: bool
    subscriptions: List[ProviderSubscription]


def status_from_provider(provider_status: str) -> SubscriptionStatus:
    """Map a provider subscription status onto the local status set"""
    if provider_status == "active":
        return SubscriptionStatus.ACTIVE
    if provider_status == "trialing":
        return SubscriptionStatus.TRIALING
    return SubscriptionStatus.INACTIVE


class ReconciliationService:
    def __init__(
        self,
        billing: BillingClient,
        cache: StatusCache,
        gate: RequestGate,
        persistence: Optional[PersistenceAdapter] = None,
        metadata_key: str = "user_id",
        ordering_guard: bool = False,
    ):
        self._billing = billing
        self._cache = cache
        self._gate = gate
        self._persistence = persistence
        self._metadata_key = metadata_key
        self._ordering_guard = ordering_guard

    @property
    def persistence_name(self) -> str:
        return self._persistence.name if self._persistence is not None else "none"

    def cached(self, user_id: str) -> Optional[SubscriptionRecord]:
        return self._cache.get(user_id)

    # ------------------------------------------------------------------
    # shared helpers
    # ------------------------------------------------------------------

    def _find_live_handle(self, scan: SubscriptionScan, user_id: str) -> Optional[ProviderSubscription]:
        for sub in scan.subscriptions:
            if sub.tagged_user(self._metadata_key) == user_id and sub.is_live:
                return sub
        return None

    async def _commit(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Write the cache, then mirror to the durable store best-effort."""
        self._cache.set(record)
        if self._persistence is None:
            return record
        try:
            await self._persistence.save(record)
        except PersistenceFailure as e:
            persistence_failures_counter.labels(backend=self._persistence.name).inc()
            logger.warning(f"Durable write failed for user {record.user_id}, cache remains authoritative: {e}")
        except Exception as e:
            persistence_failures_counter.labels(backend=self._persistence.name).inc()
            logger.error(f"Unexpected durable store error for user {record.user_id}: {e}", exc_info=True)
        return record

    def _base_record(self, user_id: str) -> SubscriptionRecord:
        return self._cache.get(user_id) or SubscriptionRecord.unknown(user_id)

    # ------------------------------------------------------------------
    # webhook path
    # ------------------------------------------------------------------

    async def apply_event(
        self,
        user_id: str,
        new_status: SubscriptionStatus,
        external_subscription_id: Optional[str] = None,
        provider_event_at: Optional[datetime] = None,
    ) -> Optional[SubscriptionRecord]:
        """Assign ``new_status`` to the user's record (creating it if needed).

        A direct assignment, so applying the same event twice yields the same
        state. An omitted ``external_subscription_id`` keeps the current one.
        Returns None only when the ordering guard skipped a stale event.
        """
        async with self._gate.hold(user_id):
            current = self._base_record(user_id)

            if (
                self._ordering_guard
                and provider_event_at is not None
                and current.provider_event_at is not None
                and provider_event_at < current.provider_event_at
            ):
                logger.info(
                    f"Skipping stale event for user {user_id}: {new_status.value} at "
                    f"{provider_event_at.isoformat()} is older than {current.provider_event_at.isoformat()}"
                )
                reconciliation_operations_counter.labels(operation="apply_event", outcome="stale").inc()
                return None

            now = utcnow()
            record = current.model_copy(update={
                "status": new_status,
                "external_subscription_id": external_subscription_id or current.external_subscription_id,
                "last_event_at": now,
                "provider_event_at": provider_event_at or current.provider_event_at,
                "source": RecordSource.WEBHOOK,
                "updated_at": now,
            })
            await self._commit(record)

        reconciliation_operations_counter.labels(operation="apply_event", outcome="applied").inc()
        logger.info(f"User {user_id} -> {new_status.value} (webhook)")
        return record

    # ------------------------------------------------------------------
    # read / refresh path
    # ------------------------------------------------------------------

    async def _resolve_from_provider(self, user_id: str) -> SubscriptionRecord:
        """Scan the provider for the user's live handle and commit the result.

        Caller holds the gate. A provider failure propagates before any write.
        """
        scan = await self._billing.list_subscriptions()
        handle = self._find_live_handle(scan, user_id)
        current = self._base_record(user_id)
        now = utcnow()
        if handle is not None:
            logger.info(f"Found live subscription {handle.id} for user {user_id} (status: {handle.status})")
            update = {
                "status": status_from_provider(handle.status),
                "external_subscription_id": handle.id,
            }
        else:
            logger.info(f"No live subscription for user {user_id} among {len(scan.subscriptions)} scanned")
            update = {
                "status": SubscriptionStatus.INACTIVE,
                "external_subscription_id": None,
            }
        update.update({
            "last_checked_at": now,
            "source": RecordSource.FORCED_REFRESH,
            "updated_at": now,
        })
        return await self._commit(current.model_copy(update=update))

    async def check_status(self, user_id: str, force_refresh: bool = False) -> SubscriptionRecord:
        """Return the cached record, or resolve it from the provider.

        ``force_refresh=False`` with a cache entry never touches the provider,
        even if the provider has changed since: that staleness is accepted.
        """
        if not force_refresh:
            record = self._cache.get(user_id)
            if record is not None:
                reconciliation_operations_counter.labels(operation="check", outcome="cache_hit").inc()
                return record

        async with self._gate.hold(user_id):
            if not force_refresh:
                # Filled by whoever held the gate before us
                record = self._cache.get(user_id)
                if record is not None:
                    reconciliation_operations_counter.labels(operation="check", outcome="cache_hit").inc()
                    return record
            record = await self._resolve_from_provider(user_id)

        operation = "refresh" if force_refresh else "check"
        reconciliation_operations_counter.labels(operation=operation, outcome="resolved").inc()
        return record

    async def refresh(self, user_id: str) -> SubscriptionRecord:
        return await self.check_status(user_id, force_refresh=True)

    # ------------------------------------------------------------------
    # cancellation
    # ------------------------------------------------------------------

    async def cancel(self, user_id: str) -> CancelResult:
        """Cancel the user's live subscription upstream, then record it locally.

        1. The cached record must be subscribed, else NotSubscribed (no provider call).
        2. The live handle is found by scan; if none, the cache is healed to
           Inactive and NotFoundUpstream is raised.
        3. Canceled is committed only after the provider confirms. A provider
           failure or timeout propagates as ProviderUnavailable with state untouched.
        """
        async with self._gate.hold(user_id):
            current = self._cache.get(user_id)
            if current is None or not current.subscribed:
                reconciliation_operations_counter.labels(operation="cancel", outcome="not_subscribed").inc()
                logger.info(f"Cancel rejected for user {user_id}: not subscribed locally")
                raise NotSubscribed("No active subscription found for this user")

            scan = await self._billing.list_subscriptions()
            handle = self._find_live_handle(scan, user_id)
            now = utcnow()

            if handle is None:
                logger.warning(
                    f"User {user_id} cached as {current.status.value} but no live subscription exists upstream, "
                    f"marking inactive"
                )
                await self._commit(current.model_copy(update={
                    "status": SubscriptionStatus.INACTIVE,
                    "external_subscription_id": None,
                    "last_checked_at": now,
                    "source": RecordSource.CANCELLATION,
                    "updated_at": now,
                }))
                reconciliation_operations_counter.labels(operation="cancel", outcome="not_found_upstream").inc()
                raise NotFoundUpstream("No active subscription found in Stripe for this user")

            logger.info(f"Canceling subscription {handle.id} for user {user_id} (status: {handle.status})")
            try:
                canceled = await self._billing.cancel_subscription(handle.id)
            except Exception:
                reconciliation_operations_counter.labels(operation="cancel", outcome="provider_error").inc()
                raise

            subscription_id = canceled.id or handle.id
            now = utcnow()
            record = await self._commit(current.model_copy(update={
                "status": SubscriptionStatus.CANCELED,
                "external_subscription_id": subscription_id,
                "last_checked_at": now,
                "source": RecordSource.CANCELLATION,
                "updated_at": now,
            }))

        reconciliation_operations_counter.labels(operation="cancel", outcome="canceled").inc()
        logger.info(f"Subscription canceled for user {user_id}: {subscription_id}")
        return CancelResult(subscription_id=subscription_id, record=record)

    # ------------------------------------------------------------------
    # diagnostics
    # ------------------------------------------------------------------

    async def set_manual(self, user_id: str, subscribed: bool) -> SubscriptionRecord:
        """Write the cache directly, bypassing the provider (diagnostics only)."""
        async with self._gate.hold(user_id):
            now = utcnow()
            record = await self._commit(self._base_record(user_id).model_copy(update={
                "status": SubscriptionStatus.ACTIVE if subscribed else SubscriptionStatus.INACTIVE,
                "source": RecordSource.MANUAL,
                "updated_at": now,
            }))
        reconciliation_operations_counter.labels(operation="manual_override", outcome="applied").inc()
        logger.info(f"Manually set subscription for {user_id}: {subscribed}")
        return record

    async def list_user_subscriptions(self, user_id: str) -> UserSubscriptions:
        scan = await self._billing.list_subscriptions()
        tagged = [s for s in scan.subscriptions if s.tagged_user(self._metadata_key) == user_id]
        logger.info(f"Found {len(tagged)} subscriptions for user {user_id} among {len(scan.subscriptions)}")
        return UserSubscriptions(
            user_id=user_id,
            scanned=len(scan.subscriptions),
            truncated=scan.truncated,
            subscriptions=tagged,
        )

    async def load_stored(self, user_id: str) -> Optional[SubscriptionRecord]:
        """Read the durable mirror. Failures yield None."""
        if self._persistence is None:
            return None
        try:
            return await self._persistence.load(user_id)
        except PersistenceFailure as e:
            logger.warning(f"Durable read failed for user {user_id}: {e}")
            return None

    async def repair_metadata(self, user_id: str) -> Optional[ProviderSubscription]:
        """Tag the newest untagged active subscription with ``user_id`` and mark the user Active.

        Only ``active`` subscriptions are listed, so canceled ones never fill
        the bounded scan. Returns the tagged handle, or None when every active
        subscription already carries a user tag.
        """
        async with self._gate.hold(user_id):
            scan = await self._billing.list_subscriptions(status="active")
            untagged = [
                s for s in scan.subscriptions
                if s.status == "active" and not s.tagged_user(self._metadata_key)
            ]
            if not untagged:
                logger.info(f"No untagged live subscriptions to assign to user {user_id}")
                return None

            latest = max(untagged, key=lambda s: s.created.timestamp() if s.created else 0)
            metadata = dict(latest.metadata)
            metadata[self._metadata_key] = user_id
            tagged = await self._billing.update_subscription_metadata(latest.id, metadata)
            logger.info(f"Tagged subscription {latest.id} with user {user_id}")

            now = utcnow()
            await self._commit(self._base_record(user_id).model_copy(update={
                "status": SubscriptionStatus.ACTIVE,
                "external_subscription_id": latest.id,
                "last_checked_at": now,
                "source": RecordSource.MANUAL,
                "updated_at": now,
            }))
        reconciliation_operations_counter.labels(operation="repair_metadata", outcome="tagged").inc()
        return tagged
