"""
Exception hierarchy for broker and ledger failures.
"""
from typing import Optional


class BrokerError(Exception):
    """Base class for broker API failures."""


class BrokerTransientError(BrokerError):
    """Timeout, refused connection, rate limiting or 5xx. Safe to retry."""


class BrokerClientError(BrokerError):
    """Non-retryable 4xx response (anything but 429)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BrokerNotConfiguredError(BrokerError):
    """Credentials or account number are missing."""


class BrokerAuthError(BrokerError):
    """Access token could not be obtained."""


class PositionError(Exception):
    """Rejected ledger mutation: over-exit, closed position, TP out of order."""


class InvalidStateTransition(Exception):
    """Watch record move that is not part of the detection graph."""
