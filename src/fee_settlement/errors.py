"""Exceptions raised by the fee settlement core."""


class FeeSettlementError(Exception):
    """Base exception for fee settlement operations."""
    pass


class NotFoundError(FeeSettlementError):
    """Raised when an order, fee or student does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ValidationError(FeeSettlementError):
    """Raised when a request is outside the allowed bounds."""
    pass


class ConflictError(FeeSettlementError):
    """Raised when creating a record whose unique key already exists."""
    pass


class GatewayError(FeeSettlementError):
    """Raised when a call to the payment gateway fails.

    Gateway failures never mutate local state, so callers may retry.
    """

    retryable = True

    def __init__(self, message: str, provider: str = None, status_code: int = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(FeeSettlementError):
    """Raised when the storage layer fails.

    Fatal to the current call. Safe to retry later because the ledger is
    recomputed rather than incremented.
    """
    pass


class NotificationError(FeeSettlementError):
    """Raised when the notification delivery service rejects a message."""
    pass
