"""Pydantic schemas for subscription records and API payloads"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class SubscriptionStatus(str, Enum):
    UNKNOWN = "unknown"
    INACTIVE = "inactive"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class RecordSource(str, Enum):
    """Provenance of the last mutation of a record"""
    WEBHOOK = "webhook"
    FORCED_REFRESH = "forced_refresh"
    CANCELLATION = "cancellation"
    MANUAL = "manual"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionRecord(BaseModel):
    """Last known entitlement state for one user.

    Records are immutable; every mutation builds a new record with
    ``model_copy(update=...)`` and replaces the previous one. ``subscribed`` is
    computed from ``status`` and cannot be set directly.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    status: SubscriptionStatus = SubscriptionStatus.UNKNOWN
    external_subscription_id: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    provider_event_at: Optional[datetime] = None
    source: Optional[RecordSource] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def subscribed(self) -> bool:
        return self.status in ENTITLED_STATUSES

    @classmethod
    def unknown(cls, user_id: str) -> "SubscriptionRecord":
        return cls(user_id=user_id)


# ============================================================================
# API PAYLOADS
# ============================================================================

class CheckSubscriptionResponse(BaseModel):
    subscribed: bool


class RefreshSubscriptionResponse(BaseModel):
    success: bool
    subscribed: bool


class CancelSubscriptionResponse(BaseModel):
    success: bool
    subscriptionId: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class SetSubscriptionRequest(BaseModel):
    subscribed: bool


class SetSubscriptionResponse(BaseModel):
    success: bool
    subscribed: bool


class CheckoutSessionRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    email: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    url: str


class ProviderSubscriptionView(BaseModel):
    id: str
    status: str
    created: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DebugSubscriptionsResponse(BaseModel):
    uid: str
    totalSubscriptions: int
    userSubscriptions: int
    subscriptions: List[ProviderSubscriptionView]
    truncated: bool = False
    cached: Optional[SubscriptionRecord] = None
    stored: Optional[SubscriptionRecord] = None


class FixMetadataResponse(BaseModel):
    success: bool
    subscriptionId: Optional[str] = None
    message: str
