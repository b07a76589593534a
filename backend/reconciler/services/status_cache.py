"""In-process cache of the last known subscription record per user"""
from typing import Dict, Optional

from reconciler.schemas.subscriptions import SubscriptionRecord


class StatusCache:
    """Mapping of user id -> SubscriptionRecord.

    No eviction: cardinality is bounded by the number of users, not requests.
    Mutation is only done by ReconciliationService while holding the user's
    RequestGate key, so there is exactly one record per user at any time.
    """

    def __init__(self):
        self._records: Dict[str, SubscriptionRecord] = {}

    def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        return self._records.get(user_id)

    def set(self, record: SubscriptionRecord) -> SubscriptionRecord:
        self._records[record.user_id] = record
        return record

    def has(self, user_id: str) -> bool:
        return user_id in self._records

    def __len__(self) -> int:
        return len(self._records)
