from __future__ import annotations

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation failures.

    ``retryable`` tells the webhook caller whether the provider should
    redeliver (5xx) or give up (4xx).
    """

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details or {}


class Unauthenticated(ReconciliationError):
    """Missing or invalid webhook signature, or unreadable payload."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="unauthenticated", status_code=400, retryable=False, details=details)


class MalformedEvent(ReconciliationError):
    """The event is authentic but lacks what its category requires."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="malformed_event", status_code=400, retryable=False, details=details)


class OwnerNotFound(ReconciliationError):
    """No owner could be resolved yet; redelivery may succeed later."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="owner_not_found", status_code=500, retryable=True, details=details)


class ProviderUnavailable(ReconciliationError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="provider_unavailable", status_code=503, retryable=True, details=details)


class StoreConflict(ReconciliationError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="store_conflict", status_code=503, retryable=True, details=details)


class Forbidden(ReconciliationError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="forbidden", status_code=403, retryable=False, details=details)


class SubscriptionNotFound(ReconciliationError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="subscription_not_found", status_code=404, retryable=False, details=details)
