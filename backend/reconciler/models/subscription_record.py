"""Durable mirror of the per-user subscription record"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime
from reconciler.models.base import Base


class SubscriptionRecordRow(Base):
    """One row per user id; written best-effort, never read on the request path"""
    __tablename__ = "subscription_records"

    user_id = Column(String(255), primary_key=True)
    status = Column(String(50), nullable=False)  # 'unknown', 'inactive', 'active', 'trialing', 'past_due', 'canceled'
    external_subscription_id = Column(String(255), nullable=True, index=True)
    source = Column(String(50), nullable=True)  # 'webhook', 'forced_refresh', 'cancellation', 'manual'
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    provider_event_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
