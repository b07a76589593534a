"""Shared pytest fixtures for test suite"""
import asyncio
import json
from datetime import datetime, timezone
from typing import Dict, Generator, List, Optional
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient

from reconciler.core.exceptions import PersistenceFailure, ProviderUnavailable, SignatureInvalid
from reconciler.db.session import build_engine, init_db
from reconciler.main import app, build_services, install_services
from reconciler.schemas.subscriptions import SubscriptionRecord
from reconciler.services.reconciliation_service import ReconciliationService
from reconciler.services.request_gate import RequestGate
from reconciler.services.status_cache import StatusCache
from reconciler.services.stripe_service import ProviderSubscription, SubscriptionScan
from reconciler.services.webhook_service import WebhookIngestor

# Signature accepted by FakeBillingClient.construct_event
VALID_SIGNATURE = "t=1,v1=valid"

SERVICE_STATE_ATTRS = ("billing", "cache", "gate", "persistence", "reconciliation", "webhook_ingestor")


class FakeBillingClient:
    """In-memory BillingClient that records every call.

    ``failures`` maps an operation name (list, retrieve, cancel, update_metadata,
    checkout) to the exception that operation raises.
    """

    def __init__(self):
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.truncated = False

    def add(
        self,
        subscription_id: str,
        status: str = "active",
        user_id: Optional[str] = None,
        created: Optional[datetime] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderSubscription:
        metadata = dict(metadata or {})
        if user_id is not None:
            metadata["user_id"] = user_id
        sub = ProviderSubscription(
            id=subscription_id,
            status=status,
            metadata=metadata,
            created=created or datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        self.subscriptions[subscription_id] = sub
        return sub

    def count(self, operation: Optional[str] = None) -> int:
        return len([c for c in self.calls if operation is None or c[0] == operation])

    def _record(self, operation: str, *args):
        self.calls.append((operation,) + args)
        if operation in self.failures:
            raise self.failures[operation]

    async def _call(self, operation: str, *args):
        # Suspend like a real network call would
        await asyncio.sleep(0)
        self._record(operation, *args)

    async def list_subscriptions(self, status: str = "all") -> SubscriptionScan:
        await self._call("list", status)
        subscriptions = [s for s in self.subscriptions.values() if status == "all" or s.status == status]
        return SubscriptionScan(subscriptions=subscriptions, truncated=self.truncated)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        await self._call("retrieve", subscription_id)
        if subscription_id not in self.subscriptions:
            raise ProviderUnavailable(f"No such subscription: '{subscription_id}'", "retrieve")
        return self.subscriptions[subscription_id]

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        await self._call("cancel", subscription_id)
        sub = self.subscriptions[subscription_id]
        canceled = ProviderSubscription(
            id=sub.id, status="canceled", metadata=sub.metadata, created=sub.created
        )
        self.subscriptions[subscription_id] = canceled
        return canceled

    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> ProviderSubscription:
        await self._call("update_metadata", subscription_id, dict(metadata))
        sub = self.subscriptions[subscription_id]
        updated = ProviderSubscription(
            id=sub.id, status=sub.status, metadata=dict(metadata), created=sub.created
        )
        self.subscriptions[subscription_id] = updated
        return updated

    async def create_checkout_session(self, user_id: str, email: Optional[str]) -> str:
        await self._call("checkout", user_id, email)
        return f"https://checkout.stripe.test/c/{user_id}"

    def construct_event(self, payload: bytes, signature: str):
        self._record("construct_event")
        if signature != VALID_SIGNATURE:
            raise SignatureInvalid("Invalid signature")
        return json.loads(payload)


class RecordingStore:
    """PersistenceAdapter that keeps every saved record in order"""
    name = "recording"

    def __init__(self, fail: bool = False):
        self.saved: List[SubscriptionRecord] = []
        self.fail = fail

    async def save(self, record: SubscriptionRecord) -> None:
        if self.fail:
            raise PersistenceFailure("recording save failed")
        self.saved.append(record)

    async def load(self, user_id: str) -> Optional[SubscriptionRecord]:
        if self.fail:
            raise PersistenceFailure("recording load failed")
        for record in reversed(self.saved):
            if record.user_id == user_id:
                return record
        return None

    def last_for(self, user_id: str) -> Optional[SubscriptionRecord]:
        for record in reversed(self.saved):
            if record.user_id == user_id:
                return record
        return None


def make_event(event_type: str, obj: dict, event_id: str = "evt_test", created: Optional[int] = None) -> bytes:
    """Serialized Stripe event envelope"""
    event = {"id": event_id, "type": event_type, "data": {"object": obj}}
    if created is not None:
        event["created"] = created
    return json.dumps(event).encode()


@pytest.fixture(scope="function")
def billing() -> FakeBillingClient:
    return FakeBillingClient()


@pytest.fixture(scope="function")
def cache() -> StatusCache:
    return StatusCache()


@pytest.fixture(scope="function")
def gate() -> RequestGate:
    return RequestGate()


@pytest.fixture(scope="function")
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture(scope="function")
def service(billing, cache, gate) -> ReconciliationService:
    """Reconciliation service without a durable store"""
    return ReconciliationService(billing, cache, gate)


@pytest.fixture(scope="function")
def persisted_service(billing, cache, gate, store) -> ReconciliationService:
    """Reconciliation service mirroring to a RecordingStore"""
    return ReconciliationService(billing, cache, gate, persistence=store)


@pytest.fixture(scope="function")
def ingestor(billing, service) -> WebhookIngestor:
    return WebhookIngestor(billing, service)


@pytest.fixture(scope="function")
def fake_redis():
    """Redis client backed by fakeredis"""
    client = fakeredis.FakeStrictRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture(scope="function")
def sql_engine():
    """SQLite in-memory engine with the schema created"""
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def services(billing):
    return build_services(billing=billing)


@pytest.fixture(scope="function")
def client(services) -> Generator[TestClient, None, None]:
    """FastAPI test client with the fake billing client installed"""
    install_services(app, services)
    try:
        # Disable OpenTelemetry export in tests
        with patch('reconciler.main.initialize_otel', return_value=False):
            with TestClient(app, raise_server_exceptions=False) as test_client:
                yield test_client
    finally:
        for name in SERVICE_STATE_ATTRS:
            if hasattr(app.state, name):
                delattr(app.state, name)
