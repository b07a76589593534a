"""Reconciliation service tests (check, refresh, cancel, apply_event, diagnostics)"""
from datetime import datetime, timedelta, timezone

import pytest

from reconciler.core.exceptions import NotFoundUpstream, NotSubscribed, PersistenceFailure, ProviderUnavailable
from reconciler.schemas.subscriptions import RecordSource, SubscriptionRecord, SubscriptionStatus
from reconciler.services.reconciliation_service import ReconciliationService, status_from_provider

from conftest import RecordingStore


def seed(cache, user_id, status, subscription_id=None):
    return cache.set(SubscriptionRecord(
        user_id=user_id, status=status, external_subscription_id=subscription_id
    ))


@pytest.mark.critical
class TestCheckStatus:
    """Cached reads and forced refresh"""

    @pytest.mark.asyncio
    async def test_cached_read_makes_no_provider_calls(self, service, billing, cache):
        """Once cached, check_status returns the cached value even if the provider changed"""
        seed(cache, "u1", SubscriptionStatus.ACTIVE)
        billing.add("sub_1", status="canceled", user_id="u1")

        record = await service.check_status("u1")

        assert record.subscribed is True
        assert billing.count() == 0

    @pytest.mark.asyncio
    async def test_forced_refresh_converges_to_provider(self, service, billing, cache):
        """A single active tagged handle makes the user subscribed and populates the cache"""
        billing.add("sub_1", status="active", user_id="u1")

        record = await service.check_status("u1", force_refresh=True)

        assert record.subscribed is True
        cached = cache.get("u1")
        assert cached.status == SubscriptionStatus.ACTIVE
        assert cached.external_subscription_id == "sub_1"
        assert cached.source == RecordSource.FORCED_REFRESH
        assert cached.last_checked_at is not None
        assert billing.count("list") == 1

    @pytest.mark.asyncio
    async def test_forced_refresh_bypasses_cache(self, service, billing, cache):
        """force_refresh consults the provider even with a cache entry"""
        seed(cache, "u1", SubscriptionStatus.ACTIVE, "sub_old")

        record = await service.refresh("u1")

        assert record.subscribed is False
        assert record.status == SubscriptionStatus.INACTIVE
        assert record.external_subscription_id is None
        assert billing.count("list") == 1

    @pytest.mark.asyncio
    async def test_cache_miss_resolves_and_caches(self, service, billing, cache):
        """Unknown users are resolved lazily; a second read is served from cache"""
        first = await service.check_status("u1")
        second = await service.check_status("u1")

        assert first.status == SubscriptionStatus.INACTIVE
        assert second is first
        assert billing.count("list") == 1

    @pytest.mark.asyncio
    async def test_trialing_counts_as_subscribed(self, service, billing):
        billing.add("sub_1", status="trialing", user_id="u1")

        record = await service.refresh("u1")

        assert record.status == SubscriptionStatus.TRIALING
        assert record.subscribed is True

    @pytest.mark.asyncio
    async def test_non_live_handles_are_not_matches(self, service, billing):
        """past_due, canceled and other users' handles do not grant entitlement"""
        billing.add("sub_1", status="past_due", user_id="u1")
        billing.add("sub_2", status="canceled", user_id="u1")
        billing.add("sub_3", status="active", user_id="someone_else")
        billing.add("sub_4", status="active")

        record = await service.refresh("u1")

        assert record.subscribed is False

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_cache_untouched(self, service, billing, cache):
        """A failed scan raises and never caches an Unknown/Inactive record"""
        billing.failures["list"] = ProviderUnavailable("Stripe list timed out after 10.0s", "list")

        with pytest.raises(ProviderUnavailable):
            await service.check_status("u1")
        assert cache.get("u1") is None

        seed(cache, "u2", SubscriptionStatus.ACTIVE, "sub_2")
        with pytest.raises(ProviderUnavailable):
            await service.refresh("u2")
        assert cache.get("u2").status == SubscriptionStatus.ACTIVE


@pytest.mark.critical
class TestApplyEvent:
    """Webhook-driven state transitions"""

    @pytest.mark.asyncio
    async def test_apply_event_is_idempotent(self, service):
        """Applying the same event twice yields the same record"""
        ignored = {"last_event_at", "updated_at"}
        first = await service.apply_event("u1", SubscriptionStatus.ACTIVE, "sub_1")
        second = await service.apply_event("u1", SubscriptionStatus.ACTIVE, "sub_1")

        assert first.model_dump(exclude=ignored) == second.model_dump(exclude=ignored)
        assert second.source == RecordSource.WEBHOOK
        assert second.last_event_at is not None

    @pytest.mark.asyncio
    async def test_apply_event_creates_record(self, service, billing, cache):
        """Events for unseen users create the record without consulting the provider"""
        await service.apply_event("u1", SubscriptionStatus.PAST_DUE, "sub_1")

        assert cache.get("u1").status == SubscriptionStatus.PAST_DUE
        assert cache.get("u1").subscribed is False
        assert billing.count() == 0

    @pytest.mark.asyncio
    async def test_apply_event_keeps_subscription_id_when_omitted(self, service, cache):
        await service.apply_event("u1", SubscriptionStatus.ACTIVE, "sub_1")
        await service.apply_event("u1", SubscriptionStatus.CANCELED)

        record = cache.get("u1")
        assert record.status == SubscriptionStatus.CANCELED
        assert record.external_subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_older_event_overwrites_without_guard(self, service, cache):
        """Without the ordering guard, the last applied event wins regardless of provider time"""
        now = datetime.now(timezone.utc)
        await service.apply_event("u1", SubscriptionStatus.ACTIVE, "sub_1", provider_event_at=now)
        record = await service.apply_event(
            "u1", SubscriptionStatus.PAST_DUE, "sub_1", provider_event_at=now - timedelta(minutes=5)
        )

        assert record is not None
        assert cache.get("u1").status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_ordering_guard_skips_stale_event(self, billing, cache, gate):
        """With the guard on, an event older than the applied one is skipped"""
        service = ReconciliationService(billing, cache, gate, ordering_guard=True)
        now = datetime.now(timezone.utc)
        await service.apply_event("u1", SubscriptionStatus.ACTIVE, "sub_1", provider_event_at=now)

        stale = await service.apply_event(
            "u1", SubscriptionStatus.PAST_DUE, "sub_1", provider_event_at=now - timedelta(minutes=5)
        )
        newer = await service.apply_event(
            "u1", SubscriptionStatus.CANCELED, "sub_1", provider_event_at=now + timedelta(minutes=5)
        )

        assert stale is None
        assert newer.status == SubscriptionStatus.CANCELED
        assert cache.get("u1").provider_event_at == now + timedelta(minutes=5)


@pytest.mark.critical
class TestCancel:
    """Cancellation preconditions and provider confirmation"""

    @pytest.mark.asyncio
    async def test_cancel_not_subscribed_makes_no_provider_calls(self, service, billing, cache):
        """Inactive or missing cache entries are rejected before any provider call"""
        seed(cache, "u1", SubscriptionStatus.INACTIVE)
        billing.add("sub_1", status="active", user_id="u1")

        with pytest.raises(NotSubscribed):
            await service.cancel("u1")
        with pytest.raises(NotSubscribed):
            await service.cancel("u2")

        assert billing.count() == 0
        assert cache.get("u1").status == SubscriptionStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_cancel_heals_when_nothing_upstream(self, service, billing, cache):
        """Cached as subscribed but no live handle: cache becomes Inactive, NotFoundUpstream raised"""
        seed(cache, "u1", SubscriptionStatus.ACTIVE, "sub_gone")
        billing.add("sub_gone", status="canceled", user_id="u1")

        with pytest.raises(NotFoundUpstream):
            await service.cancel("u1")

        record = cache.get("u1")
        assert record.status == SubscriptionStatus.INACTIVE
        assert record.external_subscription_id is None
        assert billing.count("cancel") == 0

    @pytest.mark.asyncio
    async def test_cancel_failure_leaves_state_untouched(self, service, billing, cache):
        """No false cancellation: a failed provider cancel keeps the user subscribed"""
        seed(cache, "u1", SubscriptionStatus.ACTIVE, "sub_1")
        billing.add("sub_1", status="active", user_id="u1")
        billing.failures["cancel"] = ProviderUnavailable("Request timed out", "cancel")

        with pytest.raises(ProviderUnavailable) as exc_info:
            await service.cancel("u1")

        assert str(exc_info.value) == "Request timed out"
        assert cache.get("u1").status == SubscriptionStatus.ACTIVE
        assert cache.get("u1").subscribed is True

    @pytest.mark.asyncio
    async def test_cancel_success_marks_canceled(self, service, billing, cache):
        seed(cache, "u1", SubscriptionStatus.TRIALING)
        billing.add("sub_1", status="trialing", user_id="u1")

        result = await service.cancel("u1")

        assert result.subscription_id == "sub_1"
        assert result.record.status == SubscriptionStatus.CANCELED
        assert result.record.source == RecordSource.CANCELLATION
        assert cache.get("u1").subscribed is False
        assert billing.count("cancel") == 1

    @pytest.mark.asyncio
    async def test_check_cancel_check_scenario(self, service, billing, cache):
        """Forced check, cancel, then a cached check reporting unsubscribed"""
        billing.add("sub_1", status="active", user_id="u1")

        checked = await service.check_status("u1", force_refresh=True)
        assert checked.subscribed is True
        assert cache.get("u1").status == SubscriptionStatus.ACTIVE

        result = await service.cancel("u1")
        assert result.subscription_id == "sub_1"
        assert cache.get("u1").status == SubscriptionStatus.CANCELED

        calls_before = billing.count()
        final = await service.check_status("u1")
        assert final.subscribed is False
        assert billing.count() == calls_before


@pytest.mark.critical
class TestPersistenceIsolation:
    """Durable store failures never fail the caller"""

    @pytest.mark.asyncio
    async def test_writes_are_mirrored(self, persisted_service, store, cache):
        await persisted_service.apply_event("u1", SubscriptionStatus.ACTIVE, "sub_1")
        await persisted_service.apply_event("u1", SubscriptionStatus.PAST_DUE, "sub_1")

        assert len(store.saved) == 2
        assert store.last_for("u1") == cache.get("u1")

    @pytest.mark.asyncio
    async def test_failed_writes_do_not_fail_operations(self, billing, cache, gate):
        service = ReconciliationService(billing, cache, gate, persistence=RecordingStore(fail=True))
        billing.add("sub_1", status="active", user_id="u1")

        checked = await service.check_status("u1", force_refresh=True)
        result = await service.cancel("u1")

        assert checked.subscribed is True
        assert result.subscription_id == "sub_1"
        assert cache.get("u1").status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_unexpected_store_errors_are_absorbed(self, billing, cache, gate):
        class BrokenStore:
            name = "broken"

            async def save(self, record):
                raise RuntimeError("driver exploded")

            async def load(self, user_id):
                raise PersistenceFailure("unreachable")

        service = ReconciliationService(billing, cache, gate, persistence=BrokenStore())

        record = await service.apply_event("u1", SubscriptionStatus.ACTIVE)

        assert record.subscribed is True
        assert cache.get("u1") is record
        assert await service.load_stored("u1") is None

    @pytest.mark.asyncio
    async def test_no_store_configured(self, service):
        assert service.persistence_name == "none"
        assert await service.load_stored("u1") is None


@pytest.mark.high
class TestDiagnostics:
    """Manual override, listing and metadata repair"""

    @pytest.mark.asyncio
    async def test_set_manual(self, service, billing, cache):
        record = await service.set_manual("u1", True)
        assert record.subscribed is True
        assert record.source == RecordSource.MANUAL

        record = await service.set_manual("u1", False)
        assert cache.get("u1").status == SubscriptionStatus.INACTIVE
        assert billing.count() == 0

    @pytest.mark.asyncio
    async def test_list_user_subscriptions(self, service, billing):
        billing.add("sub_1", status="active", user_id="u1")
        billing.add("sub_2", status="canceled", user_id="u1")
        billing.add("sub_3", status="active", user_id="u2")
        billing.truncated = True

        found = await service.list_user_subscriptions("u1")

        assert found.scanned == 3
        assert found.truncated is True
        assert sorted(s.id for s in found.subscriptions) == ["sub_1", "sub_2"]

    @pytest.mark.asyncio
    async def test_repair_metadata_tags_newest_untagged(self, service, billing, cache):
        billing.add("sub_old", status="active", created=datetime(2024, 1, 1, tzinfo=timezone.utc))
        billing.add("sub_new", status="active", created=datetime(2024, 6, 1, tzinfo=timezone.utc))
        billing.add("sub_dead", status="canceled", created=datetime(2024, 9, 1, tzinfo=timezone.utc))
        billing.add("sub_other", status="active", user_id="u2", created=datetime(2024, 9, 1, tzinfo=timezone.utc))

        tagged = await service.repair_metadata("u1")

        assert tagged.id == "sub_new"
        assert billing.subscriptions["sub_new"].metadata["user_id"] == "u1"
        record = cache.get("u1")
        assert record.subscribed is True
        assert record.external_subscription_id == "sub_new"
        assert record.source == RecordSource.MANUAL

    @pytest.mark.asyncio
    async def test_repair_metadata_noop(self, service, billing, cache):
        billing.add("sub_1", status="active", user_id="u2")

        assert await service.repair_metadata("u1") is None
        assert billing.count("update_metadata") == 0
        assert cache.get("u1") is None

    @pytest.mark.asyncio
    async def test_repair_metadata_scans_active_only(self, service, billing, cache):
        """Only active subscriptions are candidates, and the user is recorded Active"""
        billing.add("sub_trial", status="trialing", created=datetime(2024, 9, 1, tzinfo=timezone.utc))
        billing.add("sub_live", status="active", created=datetime(2024, 1, 1, tzinfo=timezone.utc))

        tagged = await service.repair_metadata("u1")

        assert tagged.id == "sub_live"
        assert ("list", "active") in billing.calls
        assert "user_id" not in billing.subscriptions["sub_trial"].metadata
        assert cache.get("u1").status == SubscriptionStatus.ACTIVE


@pytest.mark.high
class TestStatusMapping:
    def test_status_from_provider(self):
        assert status_from_provider("active") == SubscriptionStatus.ACTIVE
        assert status_from_provider("trialing") == SubscriptionStatus.TRIALING
        for status in ("past_due", "canceled", "incomplete", "unpaid", ""):
            assert status_from_provider(status) == SubscriptionStatus.INACTIVE
