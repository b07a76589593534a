"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from reconciler.models.base import Base
from reconciler.models.subscription_record import SubscriptionRecordRow

__all__ = ["Base", "SubscriptionRecordRow"]
