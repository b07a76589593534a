"""StatusCache and SubscriptionRecord tests"""
import pytest
from pydantic import ValidationError

from reconciler.schemas.subscriptions import SubscriptionRecord, SubscriptionStatus
from reconciler.services.status_cache import StatusCache


@pytest.mark.high
class TestStatusCache:

    def test_set_and_get(self):
        cache = StatusCache()
        record = SubscriptionRecord(user_id="u1", status=SubscriptionStatus.ACTIVE)

        assert cache.set(record) is record
        assert cache.get("u1") is record
        assert cache.has("u1")
        assert cache.get("u2") is None
        assert len(cache) == 1

    def test_set_replaces_record(self):
        cache = StatusCache()
        first = cache.set(SubscriptionRecord(user_id="u1", status=SubscriptionStatus.ACTIVE))
        second = cache.set(first.model_copy(update={"status": SubscriptionStatus.CANCELED}))

        assert cache.get("u1") is second
        assert first.status == SubscriptionStatus.ACTIVE
        assert len(cache) == 1


@pytest.mark.high
class TestSubscriptionRecord:

    def test_unknown_record(self):
        record = SubscriptionRecord.unknown("u1")
        assert record.status == SubscriptionStatus.UNKNOWN
        assert record.subscribed is False
        assert record.source is None

    @pytest.mark.parametrize("status,subscribed", [
        (SubscriptionStatus.ACTIVE, True),
        (SubscriptionStatus.TRIALING, True),
        (SubscriptionStatus.PAST_DUE, False),
        (SubscriptionStatus.CANCELED, False),
        (SubscriptionStatus.INACTIVE, False),
    ])
    def test_subscribed_follows_status(self, status, subscribed):
        assert SubscriptionRecord(user_id="u1", status=status).subscribed is subscribed

    def test_records_are_immutable(self):
        record = SubscriptionRecord(user_id="u1")
        with pytest.raises(ValidationError):
            record.status = SubscriptionStatus.ACTIVE
