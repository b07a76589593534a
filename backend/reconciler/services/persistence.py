"""Durable record store adapters (optional, best-effort mirror of the cache)"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from reconciler.core.config import settings
from reconciler.core.exceptions import PersistenceFailure
from reconciler.db.redis import get_redis_client, subscription_key
from reconciler.db.session import build_engine, build_session_factory, init_db
from reconciler.models.subscription_record import SubscriptionRecordRow
from reconciler.schemas.subscriptions import RecordSource, SubscriptionRecord, SubscriptionStatus

logger = logging.getLogger(__name__)


class PersistenceAdapter(Protocol):
    name: str

    async def save(self, record: SubscriptionRecord) -> None:
        ...

    async def load(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return _as_utc(datetime.fromisoformat(value)) if value else None


def record_to_fields(record: SubscriptionRecord) -> Dict[str, str]:
    """Flatten a record into string fields. Empty string means 'not set'."""
    return {
        "user_id": record.user_id,
        "status": record.status.value,
        "subscribed": "1" if record.subscribed else "0",
        "external_subscription_id": record.external_subscription_id or "",
        "source": record.source.value if record.source else "",
        "last_checked_at": _iso(record.last_checked_at),
        "last_event_at": _iso(record.last_event_at),
        "provider_event_at": _iso(record.provider_event_at),
        "updated_at": _iso(record.updated_at),
    }


def record_from_fields(fields: Dict[str, str]) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=fields["user_id"],
        status=SubscriptionStatus(fields.get("status") or SubscriptionStatus.UNKNOWN.value),
        external_subscription_id=fields.get("external_subscription_id") or None,
        source=RecordSource(fields["source"]) if fields.get("source") else None,
        last_checked_at=_parse_iso(fields.get("last_checked_at")),
        last_event_at=_parse_iso(fields.get("last_event_at")),
        provider_event_at=_parse_iso(fields.get("provider_event_at")),
        updated_at=_parse_iso(fields.get("updated_at")) or datetime.now(timezone.utc),
    )


class _ThreadedStore:
    """Runs a blocking client call in a worker thread, bounded by a timeout"""
    name = "base"
    storage_errors: tuple = ()

    def __init__(self, timeout: float):
        self._timeout = timeout

    async def _run(self, operation: str, func, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise PersistenceFailure(f"{self.name} {operation} timed out after {self._timeout}s") from None
        except self.storage_errors as e:
            raise PersistenceFailure(f"{self.name} {operation} failed: {e}") from e


class RedisRecordStore(_ThreadedStore):
    """One Redis hash per user, merge-written with HSET"""
    name = "redis"
    storage_errors = (RedisError, OSError)

    def __init__(self, client=None, timeout: float = 3.0):
        super().__init__(timeout)
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    def _save(self, record: SubscriptionRecord) -> None:
        self.client.hset(subscription_key(record.user_id), mapping=record_to_fields(record))

    def _load(self, user_id: str) -> Optional[SubscriptionRecord]:
        fields = self.client.hgetall(subscription_key(user_id))
        if not fields:
            return None
        return record_from_fields(fields)

    async def save(self, record: SubscriptionRecord) -> None:
        await self._run("save", self._save, record)

    async def load(self, user_id: str) -> Optional[SubscriptionRecord]:
        return await self._run("load", self._load, user_id)


class SqlRecordStore(_ThreadedStore):
    """Upserts into subscription_records keyed by user id"""
    name = "sql"
    storage_errors = (SQLAlchemyError,)

    def __init__(self, engine, timeout: float = 3.0):
        super().__init__(timeout)
        self._engine = engine
        self._session_factory = build_session_factory(engine)

    @property
    def engine(self):
        return self._engine

    def _save(self, record: SubscriptionRecord) -> None:
        db = self._session_factory()
        try:
            db.merge(SubscriptionRecordRow(
                user_id=record.user_id,
                status=record.status.value,
                external_subscription_id=record.external_subscription_id,
                source=record.source.value if record.source else None,
                last_checked_at=record.last_checked_at,
                last_event_at=record.last_event_at,
                provider_event_at=record.provider_event_at,
                updated_at=record.updated_at,
            ))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _load(self, user_id: str) -> Optional[SubscriptionRecord]:
        db = self._session_factory()
        try:
            row = db.get(SubscriptionRecordRow, user_id)
            if row is None:
                return None
            return SubscriptionRecord(
                user_id=row.user_id,
                status=SubscriptionStatus(row.status),
                external_subscription_id=row.external_subscription_id,
                source=RecordSource(row.source) if row.source else None,
                last_checked_at=_as_utc(row.last_checked_at),
                last_event_at=_as_utc(row.last_event_at),
                provider_event_at=_as_utc(row.provider_event_at),
                updated_at=_as_utc(row.updated_at),
            )
        finally:
            db.close()

    async def save(self, record: SubscriptionRecord) -> None:
        await self._run("save", self._save, record)

    async def load(self, user_id: str) -> Optional[SubscriptionRecord]:
        return await self._run("load", self._load, user_id)


def build_persistence_adapter(backend: Optional[str] = None) -> Optional[PersistenceAdapter]:
    """Wire the configured durable store, or None when PERSISTENCE_BACKEND=none"""
    backend = backend or settings.PERSISTENCE_BACKEND
    timeout = settings.PERSISTENCE_TIMEOUT_SECONDS
    if backend == "redis":
        logger.info("Durable record store: redis")
        return RedisRecordStore(timeout=timeout)
    if backend == "sql":
        try:
            engine = build_engine()
            init_db(engine)
        except SQLAlchemyError as e:
            logger.warning(f"SQL record store unavailable, running with in-memory cache only: {e}")
            return None
        logger.info("Durable record store: sql")
        return SqlRecordStore(engine, timeout=timeout)
    logger.info("Durable record store disabled, running with in-memory cache only")
    return None
