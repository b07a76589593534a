"""Error taxonomy for subscription reconciliation"""
from typing import Optional


class ReconciliationError(Exception):
    """Base class for reconciliation failures"""


class SignatureInvalid(ReconciliationError):
    """Webhook payload failed signature verification (or could not be verified)"""


class ProviderUnavailable(ReconciliationError):
    """The billing provider call failed or timed out.

    The message is the provider's own error text so callers can surface it verbatim.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class NotSubscribed(ReconciliationError):
    """Cancel requested for a user whose cached record is not subscribed"""


class NotFoundUpstream(ReconciliationError):
    """Cache claims a live subscription but the provider has none for the user"""


class PersistenceFailure(ReconciliationError):
    """Durable store write/read failed. Never propagated past the reconciliation service."""
